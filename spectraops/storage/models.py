"""ORM models for users, projects, sessions and stored error events."""

import enum
import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from .database import Base


class Severity(str, enum.Enum):
    """Error event severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


class Environment(str, enum.Enum):
    """Deployment environment an event was captured in."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_api_key() -> str:
    return secrets.token_hex(24)


def generate_session_token() -> str:
    # 32 random bytes = 256 bits of entropy
    return secrets.token_hex(32)


def _enum_check(column: str, values: type) -> str:
    allowed = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({allowed})"


class User(Base):
    """Dashboard account."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False,
    )


class Project(Base):
    """Scoping unit that owns an API key and a set of error events."""

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    api_key: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False, default=generate_api_key,
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False,
    )


class AuthSession(Base):
    """DB-backed dashboard session. Valid while now < expires_at."""

    __tablename__ = "sessions"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False,
    )


class ErrorEvent(Base):
    """One captured failure reported by an SDK."""

    __tablename__ = "errors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    project_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True,
    )

    message: Mapped[str] = mapped_column(Text, nullable=False)
    stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    environment: Mapped[str] = mapped_column(
        String(20), default=Environment.PRODUCTION.value, nullable=False,
    )
    severity: Mapped[str] = mapped_column(
        String(20), default=Severity.ERROR.value, nullable=False,
    )

    client_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False,
    )

    __table_args__ = (
        CheckConstraint(_enum_check("severity", Severity), name="ck_errors_severity"),
        CheckConstraint(_enum_check("environment", Environment), name="ck_errors_environment"),
        Index("ix_errors_project_created", "project_id", "created_at"),
        Index("ix_errors_created_at", "created_at"),
    )

    @validates("project_id")
    def _validate_project_id(self, key: str, value: Optional[int]) -> Optional[int]:
        if self.project_id is not None and value != self.project_id:
            raise ValueError("project_id cannot change once set")
        return value

    def to_dict(self) -> dict:
        client_ts = as_utc(self.client_timestamp)
        return {
            "id": self.id,
            "project_id": self.project_id,
            "message": self.message,
            "stack": self.stack,
            "source_url": self.source_url,
            "user_agent": self.user_agent,
            "environment": self.environment,
            "severity": self.severity,
            "client_timestamp": client_ts.isoformat() if client_ts else None,
            "created_at": as_utc(self.created_at).isoformat(),
        }
