"""Paginated, scope-aware reads of stored error events."""

import math
from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import StorageError, ValidationError
from ..receiver.auth import ProjectScope, Scope, UserScope
from .models import ErrorEvent, Project

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


@dataclass
class ErrorPageResult:
    """One page of events plus the numbers needed to render pagination."""

    items: List[ErrorEvent]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
        }


class ErrorQueryService:
    """Newest-first listing of events visible to the caller's scope."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _scope_filter(self, scope: Scope, project_id: Optional[int]):
        # project_id narrows whatever the scope allows; it never widens it.
        if isinstance(scope, ProjectScope):
            condition = ErrorEvent.project_id == scope.project_id
            if project_id is not None and project_id != scope.project_id:
                condition = and_(condition, ErrorEvent.project_id == project_id)
            return condition

        if isinstance(scope, UserScope):
            owned = select(Project.id).where(Project.user_id == scope.user_id)
            if project_id is not None:
                owned = owned.where(Project.id == project_id)
            return ErrorEvent.project_id.in_(owned.scalar_subquery())

        raise TypeError(f"Unsupported scope: {scope!r}")

    async def list_errors(
        self,
        scope: Scope,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        project_id: Optional[int] = None,
    ) -> ErrorPageResult:
        """
        Fetch one page of events.

        Args:
            scope: Project scope (one project) or user scope (all owned projects)
            page: 1-based page number
            limit: Page size, 1..100
            project_id: Narrow a user scope to one of the user's projects

        Returns:
            ErrorPageResult; pages past the end are empty
        """
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        condition = self._scope_filter(scope, project_id)

        try:
            total = await self.db.scalar(
                select(func.count()).select_from(ErrorEvent).where(condition)
            )
            result = await self.db.execute(
                select(ErrorEvent)
                .where(condition)
                .order_by(ErrorEvent.created_at.desc(), ErrorEvent.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        except SQLAlchemyError as e:
            logger.error("error_query_failed", error=str(e))
            raise StorageError("Failed to fetch errors") from e

        return ErrorPageResult(
            items=list(result.scalars().all()),
            page=page,
            limit=limit,
            total=total or 0,
        )
