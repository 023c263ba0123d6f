"""Validation, sanitization and persistence of incoming error events."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from prometheus_client import Counter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AuthorizationScopeError, StorageError, ValidationError
from ..receiver.auth import ProjectScope, Scope
from ..receiver.models import ErrorPayload
from ..receiver.sanitizer import sanitize
from .models import ErrorEvent, utcnow

logger = structlog.get_logger(__name__)

EVENTS_INGESTED = Counter(
    "spectraops_events_ingested_total",
    "Error events persisted",
    ["path"],
)

DEFAULT_MAX_BATCH_SIZE = 100


def _detail(field: str, message: str, index: Optional[int]) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"field": field, "message": message}
    if index is not None:
        entry["index"] = index
    return entry


def _format_errors(exc: PydanticValidationError, index: Optional[int] = None) -> List[Dict[str, Any]]:
    return [
        _detail(".".join(str(part) for part in err["loc"]), err["msg"], index)
        for err in exc.errors()
    ]


def _project_id(scope: Scope) -> int:
    if not isinstance(scope, ProjectScope):
        raise AuthorizationScopeError("Project scope required: authenticate with x-api-key")
    return scope.project_id


class BatchIngestService:
    """
    Turns raw SDK payloads into persisted ErrorEvent rows.

    Every item is validated and sanitized before anything touches the
    database, so a single bad item rejects the whole batch.
    """

    def __init__(self, db: AsyncSession, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE):
        self.db = db
        self.max_batch_size = max_batch_size

    def prepare(
        self,
        raw: Any,
        project_id: int,
        received_at: datetime,
        index: Optional[int] = None,
    ) -> ErrorEvent:
        """
        Validate and sanitize one raw payload into an unsaved row.

        Raises:
            ValidationError: If the payload is malformed or its message is
                empty once markup is stripped
        """
        where = f"Item {index}: " if index is not None else ""

        if not isinstance(raw, Mapping):
            raise ValidationError(
                f"{where}error payload must be an object",
                details=[_detail("", "Expected an object", index)],
            )

        try:
            payload = ErrorPayload.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(f"{where}invalid error payload", details=_format_errors(e, index)) from e

        message = sanitize(payload.message)
        if not message:
            raise ValidationError(
                f"{where}message is empty after sanitization",
                details=[_detail("message", "Empty after sanitization", index)],
            )

        client_ts = payload.timestamp.astimezone(timezone.utc) if payload.timestamp else None

        return ErrorEvent(
            project_id=project_id,
            message=message,
            stack=sanitize(payload.stack) or None,
            source_url=payload.source_url,
            user_agent=payload.user_agent,
            environment=payload.environment,
            severity=payload.severity,
            client_timestamp=client_ts,
            created_at=received_at,
        )

    async def ingest_one(self, raw: Any, scope: Scope) -> ErrorEvent:
        """Validate, sanitize and persist a single event."""
        project_id = _project_id(scope)
        event = self.prepare(raw, project_id, utcnow())

        try:
            self.db.add(event)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("error_ingest_failed", project_id=project_id, error=str(e))
            raise StorageError("Failed to store error") from e

        EVENTS_INGESTED.labels(path="single").inc()
        logger.info("error_ingested", project_id=project_id, error_id=event.id)
        return event

    async def ingest_batch(self, raw_items: Any, scope: Scope) -> int:
        """
        Validate, sanitize and persist a batch atomically.

        Args:
            raw_items: List of raw error payloads (1..max_batch_size)
            scope: Resolved caller scope; must be project-scoped

        Returns:
            Number of accepted events

        Raises:
            ValidationError: Empty/oversized batch or any invalid item
            StorageError: The transaction failed and was rolled back
        """
        project_id = _project_id(scope)

        if not isinstance(raw_items, Sequence) or isinstance(raw_items, (str, bytes)):
            raise ValidationError("errors must be an array")
        if not raw_items:
            raise ValidationError("errors must contain at least 1 item")
        if len(raw_items) > self.max_batch_size:
            raise ValidationError(f"errors must contain at most {self.max_batch_size} items")

        received_at = utcnow()
        events = [
            self.prepare(raw, project_id, received_at, index=i)
            for i, raw in enumerate(raw_items)
        ]

        # One transaction for the whole batch: all rows commit or none do.
        try:
            self.db.add_all(events)
            await self.db.flush()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "error_batch_ingest_failed",
                project_id=project_id,
                batch_size=len(events),
                error=str(e),
            )
            raise StorageError("Failed to store error batch") from e

        EVENTS_INGESTED.labels(path="batch").inc(len(events))
        logger.info("error_batch_ingested", project_id=project_id, accepted=len(events))
        return len(events)

