"""Request bodies for the dashboard account and project endpoints."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Credentials(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def password_complexity(cls, v: str) -> str:
        if not any(ch.isupper() for ch in v):
            raise ValueError("Password must contain an uppercase letter")
        if not any(ch.islower() for ch in v):
            raise ValueError("Password must contain a lowercase letter")
        if not any(ch.isdigit() for ch in v):
            raise ValueError("Password must contain a digit")
        return v


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class ProjectCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=100)
