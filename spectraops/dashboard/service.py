"""Dashboard accounts, DB-backed sessions and project key management."""

import asyncio
from datetime import timedelta
from functools import partial
from typing import List, Optional, Tuple

import bcrypt
import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AuthenticationError, ConflictError, NotFoundError, StorageError, ValidationError
from ..receiver.sanitizer import sanitize
from ..storage.models import (
    AuthSession,
    Project,
    User,
    generate_api_key,
    generate_session_token,
    utcnow,
)

logger = structlog.get_logger(__name__)


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class AuthService:
    """Registration, login and session lifecycle."""

    def __init__(self, db: AsyncSession, session_ttl: timedelta = timedelta(hours=24), hash_rounds: int = 12):
        self.db = db
        self.session_ttl = session_ttl
        self.hash_rounds = hash_rounds

    async def create_session(self, user_id: int) -> AuthSession:
        session = AuthSession(
            token=generate_session_token(),
            user_id=user_id,
            expires_at=utcnow() + self.session_ttl,
        )
        self.db.add(session)
        await self.db.commit()
        return session

    async def register(self, email: str, password: str) -> Tuple[User, AuthSession]:
        email = email.strip().lower()
        existing = await self.db.scalar(select(User.id).where(User.email == email))
        if existing is not None:
            raise ConflictError("User already exists")

        loop = asyncio.get_running_loop()
        password_hash = await loop.run_in_executor(None, partial(hash_password, password, self.hash_rounds))
        user = User(email=email, password_hash=password_hash)
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError("User already exists") from e

        session = await self.create_session(user.id)
        logger.info("user_registered", user_id=user.id)
        return user, session

    async def login(self, email: str, password: str) -> Tuple[User, AuthSession]:
        user = await self.db.scalar(select(User).where(User.email == email.strip().lower()))
        if user is None:
            raise AuthenticationError("Invalid credentials", status_code=401)

        loop = asyncio.get_running_loop()
        if not await loop.run_in_executor(None, partial(verify_password, password, user.password_hash)):
            raise AuthenticationError("Invalid credentials", status_code=401)

        session = await self.create_session(user.id)
        logger.info("user_logged_in", user_id=user.id)
        return user, session

    async def logout(self, token: str) -> None:
        await self.db.execute(delete(AuthSession).where(AuthSession.token == token))
        await self.db.commit()


class ProjectService:
    """
    Owner-scoped project operations.

    Mutations filter on owner id in the same statement, so acting on a
    project the caller does not own affects no rows and reads as not found.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_projects(self, user_id: int) -> List[Project]:
        result = await self.db.execute(
            select(Project).where(Project.user_id == user_id).order_by(Project.created_at.desc(), Project.id.desc())
        )
        return list(result.scalars().all())

    async def create_project(self, user_id: int, name: str) -> Project:
        clean_name = (sanitize(name) or "")[:100]
        if not clean_name:
            raise ValidationError("Project name is required")

        project = Project(name=clean_name, user_id=user_id, api_key=generate_api_key())
        self.db.add(project)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("project_create_failed", user_id=user_id, error=str(e))
            raise StorageError("Failed to create project") from e

        logger.info("project_created", project_id=project.id)
        return project

    async def delete_project(self, user_id: int, project_id: int) -> None:
        result = await self.db.execute(
            delete(Project)
            .where(Project.id == project_id, Project.user_id == user_id)
            .returning(Project.id)
        )
        deleted: Optional[int] = result.scalar_one_or_none()
        await self.db.commit()
        if deleted is None:
            raise NotFoundError("Project not found")
        logger.info("project_deleted", project_id=project_id)

    async def rotate_key(self, user_id: int, project_id: int) -> Project:
        """Replace the API key; the old key stops working in the same statement."""
        result = await self.db.execute(
            update(Project)
            .where(Project.id == project_id, Project.user_id == user_id)
            .values(api_key=generate_api_key())
            .returning(Project)
        )
        project = result.scalar_one_or_none()
        await self.db.commit()
        if project is None:
            raise NotFoundError("Project not found")
        logger.info("api_key_rotated", project_id=project_id)
        return project
