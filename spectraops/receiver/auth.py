"""Request authentication: SDK API keys and dashboard sessions."""

from dataclasses import dataclass
from typing import Optional, Union

import structlog
from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AuthenticationError, StorageError
from ..storage.database import get_db
from ..storage.models import AuthSession, Project, User, utcnow

logger = structlog.get_logger(__name__)

API_KEY_HEADER = "x-api-key"


@dataclass(frozen=True)
class ProjectScope:
    """Caller authenticated with a project API key (SDK)."""

    project_id: int


@dataclass(frozen=True)
class UserScope:
    """Caller authenticated with a dashboard session."""

    user_id: int
    email: str
    token: str


Scope = Union[ProjectScope, UserScope]


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Return the token of a ``Bearer`` Authorization header.

    Returns None when the header is absent or uses another scheme, and an
    empty string for ``Bearer`` without a token.
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip()


class ApiKeyStrategy:
    """Resolve a ProjectScope from the ``x-api-key`` header."""

    async def resolve(self, request: Request, db: AsyncSession) -> ProjectScope:
        api_key = request.headers.get(API_KEY_HEADER)
        if not api_key:
            raise AuthenticationError("Missing x-api-key header", status_code=401)

        try:
            result = await db.execute(select(Project.id).where(Project.api_key == api_key))
        except SQLAlchemyError as e:
            logger.error("api_key_lookup_failed", error=str(e))
            raise StorageError("Auth lookup failed") from e

        project_id = result.scalar_one_or_none()
        if project_id is None:
            raise AuthenticationError("Invalid API key", status_code=403)
        return ProjectScope(project_id=project_id)


class SessionStrategy:
    """Resolve a UserScope from an ``Authorization: Bearer`` session token."""

    async def resolve(self, request: Request, db: AsyncSession) -> UserScope:
        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            raise AuthenticationError("Authentication required", status_code=401)

        try:
            result = await db.execute(
                select(AuthSession.user_id, User.email)
                .join(User, AuthSession.user_id == User.id)
                .where(AuthSession.token == token, AuthSession.expires_at > utcnow())
            )
        except SQLAlchemyError as e:
            logger.error("session_lookup_failed", error=str(e))
            raise StorageError("Session validation failed") from e

        row = result.first()
        if row is None:
            raise AuthenticationError("Session expired or invalid", status_code=401)
        return UserScope(user_id=row.user_id, email=row.email, token=token)


class AuthResolver:
    """
    Pick the strategy from the credentials on the request.

    A Bearer Authorization header selects the session strategy; anything
    else falls through to the API-key strategy, which reports a missing key
    when no credential is present at all.
    """

    def __init__(
        self,
        api_key_strategy: Optional[ApiKeyStrategy] = None,
        session_strategy: Optional[SessionStrategy] = None,
    ):
        self.api_key_strategy = api_key_strategy or ApiKeyStrategy()
        self.session_strategy = session_strategy or SessionStrategy()

    async def resolve(self, request: Request, db: AsyncSession) -> Scope:
        if extract_bearer_token(request.headers.get("authorization")) is not None:
            scope: Scope = await self.session_strategy.resolve(request, db)
        else:
            scope = await self.api_key_strategy.resolve(request, db)
        logger.debug("request_authenticated", scope=type(scope).__name__)
        return scope


auth_resolver = AuthResolver()


async def require_scope(request: Request, db: AsyncSession = Depends(get_db)) -> Scope:
    """Dependency for routes shared by SDKs and the dashboard."""
    return await auth_resolver.resolve(request, db)


async def require_session(request: Request, db: AsyncSession = Depends(get_db)) -> UserScope:
    """Dependency for dashboard-only routes."""
    return await auth_resolver.session_strategy.resolve(request, db)
