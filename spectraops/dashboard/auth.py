"""Dashboard account endpoints: register, login, logout, me."""

from datetime import timedelta

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..receiver.auth import UserScope, require_session
from ..storage.database import get_db
from ..storage.models import AuthSession, User
from .models import Credentials, LoginRequest
from .service import AuthService

router = APIRouter(prefix="/api/auth")


def get_auth_service(request: Request, db: AsyncSession = Depends(get_db)) -> AuthService:
    settings = request.app.state.settings
    return AuthService(
        db,
        session_ttl=timedelta(hours=settings.session_ttl_hours),
        hash_rounds=settings.password_hash_rounds,
    )


def _session_body(user: User, session: AuthSession) -> dict:
    return {
        "status": "ok",
        "token": session.token,
        "expires_at": session.expires_at.isoformat(),
        "user": {"id": user.id, "email": user.email},
    }


@router.post("/register")
async def register(body: Credentials, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Create an account and open a session for it."""
    user, session = await service.register(body.email, body.password)
    return JSONResponse(status_code=201, content=_session_body(user, session))


@router.post("/login")
async def login(body: LoginRequest, service: AuthService = Depends(get_auth_service)) -> dict:
    user, session = await service.login(body.email, body.password)
    return _session_body(user, session)


@router.post("/logout")
async def logout(
    scope: UserScope = Depends(require_session),
    service: AuthService = Depends(get_auth_service),
) -> dict:
    """Revoke the session that authenticated this request."""
    await service.logout(scope.token)
    return {"status": "ok"}


@router.get("/me")
async def me(scope: UserScope = Depends(require_session)) -> dict:
    return {"status": "ok", "user": {"id": scope.user_id, "email": scope.email}}
