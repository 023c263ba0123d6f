"""Shared fixtures: an isolated app on a throwaway SQLite database."""

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from spectraops.config import Settings
from spectraops.main import create_app
from spectraops.storage.database import create_engine_from_settings, create_session_factory, create_tables
from spectraops.storage.models import Project, User

PASSWORD = "Correct-horse-battery9"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "spectraops-test.db"


@pytest.fixture
def settings(db_path):
    """Settings pointing at a per-test SQLite file with cheap password hashing."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        password_hash_rounds=4,
        rate_limit_requests=1000,
        allowed_cors_origins=[],
    )


@pytest.fixture
def client(settings):
    """Test client with lifespan run, so tables exist."""
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sync_engine(client, db_path):
    """Plain sqlite3 engine on the same file, for arranging rows directly."""
    engine = create_engine(f"sqlite:///{db_path}")
    yield engine
    engine.dispose()


def register(client, email="owner@example.com", password=PASSWORD):
    response = client.post("/api/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def create_project(client, token, name="Web frontend"):
    response = client.post("/api/projects", json={"name": name}, headers=bearer(token))
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture
def session_token(client):
    return register(client)


@pytest.fixture
def project(client, session_token):
    return create_project(client, session_token)


@pytest.fixture
def api_headers(project):
    return {"x-api-key": project["api_key"]}


@pytest_asyncio.fixture
async def session_factory(settings):
    """Async session factory on a fresh schema, for service-level tests."""
    engine = create_engine_from_settings(settings)
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def owned_project(session_factory):
    """A user with one project, inserted directly. Returns (user_id, project_id)."""
    async with session_factory() as db:
        user = User(email="svc@example.com", password_hash="x")
        db.add(user)
        await db.flush()
        project = Project(name="svc", user_id=user.id)
        db.add(project)
        await db.commit()
        return user.id, project.id
