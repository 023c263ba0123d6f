"""FastAPI endpoints for receiving and listing SDK error events."""

from typing import Any, Optional

import orjson
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from ..storage.database import get_db
from ..storage.ingest import BatchIngestService
from ..storage.query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, ErrorQueryService
from .auth import Scope, require_scope

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/errors")


async def validate_request_size(request: Request) -> bytes:
    """
    Validate and read request body with size limit.

    Args:
        request: FastAPI request object

    Returns:
        Request body bytes

    Raises:
        HTTPException: If body exceeds max_request_size
    """
    max_size = request.app.state.settings.max_request_size
    content_length = request.headers.get("content-length")

    if content_length:
        try:
            if int(content_length) > max_size:
                raise HTTPException(
                    status_code=413,
                    detail=f"Request body too large. Maximum size: {max_size} bytes",
                )
        except ValueError:
            pass

    body = await request.body()

    if len(body) > max_size:
        raise HTTPException(
            status_code=413,
            detail=f"Request body too large. Maximum size: {max_size} bytes",
        )

    return body


async def read_json(request: Request) -> Any:
    """Read the size-checked body and decode it as JSON."""
    body = await validate_request_size(request)
    if not body.strip():
        raise ValidationError("Request body is required")

    try:
        return orjson.loads(body)
    except orjson.JSONDecodeError as e:
        logger.warning("invalid_json_body", error=str(e))
        raise ValidationError("Request body is not valid JSON") from e


@router.post("")
async def ingest_error(
    request: Request,
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Ingest a single error event."""
    payload = await read_json(request)

    service = BatchIngestService(db)
    event = await service.ingest_one(payload, scope)

    return JSONResponse(status_code=201, content={"status": "ok", "data": event.to_dict()})


@router.post("/batch")
async def ingest_error_batch(
    request: Request,
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """
    Ingest a batch of error events.

    Body: ``{"errors": [...]}`` with 1..max_batch_size items. The batch is
    accepted or rejected as a whole.
    """
    payload = await read_json(request)
    if not isinstance(payload, dict) or "errors" not in payload:
        raise ValidationError("Body must be an object with an 'errors' array")

    service = BatchIngestService(db, max_batch_size=request.app.state.settings.max_batch_size)
    accepted = await service.ingest_batch(payload["errors"], scope)

    return JSONResponse(status_code=201, content={"status": "ok", "accepted": accepted})


@router.get("")
async def list_errors(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    project_id: Optional[int] = Query(None, ge=1),
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """List events visible to the caller, newest first."""
    result = await ErrorQueryService(db).list_errors(
        scope, page=page, limit=limit, project_id=project_id,
    )

    return {
        "status": "ok",
        "data": [event.to_dict() for event in result.items],
        "pagination": result.pagination(),
    }
