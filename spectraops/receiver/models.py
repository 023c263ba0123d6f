"""Payload models for the error ingestion API."""

from typing import Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator

from ..storage.models import Environment, Severity


class ErrorPayload(BaseModel):
    """
    One error event as sent by an SDK.

    ``message`` is required; everything else is optional. Unknown keys are
    ignored so newer SDKs can add context without breaking older servers.
    """

    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    message: str = Field(min_length=1, max_length=10_000)
    stack: Optional[str] = Field(default=None, max_length=50_000)
    source_url: Optional[str] = Field(default=None, max_length=2048)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    environment: Environment = Environment.PRODUCTION
    severity: Severity = Severity.ERROR
    timestamp: Optional[AwareDatetime] = None

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v

