"""Tests for BatchIngestService and ErrorQueryService against a real database."""

import pytest
from sqlalchemy import func, select

from spectraops.errors import AuthorizationScopeError, StorageError, ValidationError
from spectraops.receiver.auth import ProjectScope, UserScope
from spectraops.storage.ingest import BatchIngestService
from spectraops.storage.models import ErrorEvent
from spectraops.storage.query import ErrorQueryService


async def count_errors(session_factory):
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(ErrorEvent))


class TestBatchIngestService:
    """Test cases for BatchIngestService."""

    @pytest.mark.asyncio
    async def test_batch_shares_received_at(self, session_factory, owned_project):
        _, project_id = owned_project
        async with session_factory() as db:
            accepted = await BatchIngestService(db).ingest_batch(
                [{"message": "a"}, {"message": "b"}, {"message": "c"}],
                ProjectScope(project_id=project_id),
            )
        assert accepted == 3

        async with session_factory() as db:
            stamps = (await db.execute(select(ErrorEvent.created_at))).scalars().all()
        assert len(set(stamps)) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back(self, session_factory):
        """Test that a constraint violation is a StorageError and nothing persists."""
        async with session_factory() as db:
            with pytest.raises(StorageError):
                await BatchIngestService(db).ingest_batch(
                    [{"message": "a"}, {"message": "b"}],
                    ProjectScope(project_id=424242),
                )
        assert await count_errors(session_factory) == 0

    @pytest.mark.asyncio
    async def test_user_scope_rejected(self, session_factory, owned_project):
        user_id, _ = owned_project
        async with session_factory() as db:
            with pytest.raises(AuthorizationScopeError):
                await BatchIngestService(db).ingest_batch(
                    [{"message": "a"}],
                    UserScope(user_id=user_id, email="svc@example.com", token="t"),
                )

    @pytest.mark.asyncio
    async def test_custom_max_batch_size(self, session_factory, owned_project):
        _, project_id = owned_project
        async with session_factory() as db:
            with pytest.raises(ValidationError):
                await BatchIngestService(db, max_batch_size=2).ingest_batch(
                    [{"message": "a"}] * 3, ProjectScope(project_id=project_id),
                )

    @pytest.mark.asyncio
    async def test_ingest_one_sanitizes_stack(self, session_factory, owned_project):
        _, project_id = owned_project
        async with session_factory() as db:
            event = await BatchIngestService(db).ingest_one(
                {"message": "boom", "stack": "<div>at render</div>"},
                ProjectScope(project_id=project_id),
            )
        assert event.stack == "at render"
        assert event.project_id == project_id

    def test_project_id_immutable(self):
        event = ErrorEvent(project_id=1, message="x")
        with pytest.raises(ValueError):
            event.project_id = 2


class TestErrorQueryService:
    """Test cases for ErrorQueryService."""

    @pytest.mark.asyncio
    async def test_total_pages(self, session_factory, owned_project):
        _, project_id = owned_project
        scope = ProjectScope(project_id=project_id)
        async with session_factory() as db:
            await BatchIngestService(db).ingest_batch([{"message": f"e{i}"} for i in range(10)], scope)

        async with session_factory() as db:
            result = await ErrorQueryService(db).list_errors(scope, page=1, limit=4)
        assert result.total == 10
        assert result.total_pages == 3
        assert len(result.items) == 4

    @pytest.mark.asyncio
    async def test_batch_order_newest_id_first(self, session_factory, owned_project):
        _, project_id = owned_project
        scope = ProjectScope(project_id=project_id)
        async with session_factory() as db:
            await BatchIngestService(db).ingest_batch([{"message": "one"}, {"message": "two"}], scope)

        async with session_factory() as db:
            result = await ErrorQueryService(db).list_errors(scope)
        assert [e.message for e in result.items] == ["two", "one"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
    async def test_invalid_paging(self, session_factory, owned_project, page, limit):
        _, project_id = owned_project
        async with session_factory() as db:
            with pytest.raises(ValidationError):
                await ErrorQueryService(db).list_errors(ProjectScope(project_id=project_id), page=page, limit=limit)

    @pytest.mark.asyncio
    async def test_empty_result(self, session_factory, owned_project):
        user_id, _ = owned_project
        async with session_factory() as db:
            result = await ErrorQueryService(db).list_errors(
                UserScope(user_id=user_id, email="svc@example.com", token="t"),
            )
        assert result.items == []
        assert result.total == 0
        assert result.total_pages == 0
