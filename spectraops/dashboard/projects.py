"""Owner-scoped project endpoints for the dashboard."""

from fastapi import APIRouter, Depends, Path
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..receiver.auth import UserScope, require_session
from ..storage.database import get_db
from ..storage.models import Project, as_utc
from .models import ProjectCreate
from .service import ProjectService

router = APIRouter(prefix="/api/projects")


def project_to_dict(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "api_key": project.api_key,
        "created_at": as_utc(project.created_at).isoformat() if project.created_at else None,
    }


@router.get("")
async def list_projects(
    scope: UserScope = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    projects = await ProjectService(db).list_projects(scope.user_id)
    return {"status": "ok", "data": [project_to_dict(p) for p in projects]}


@router.post("")
async def create_project(
    body: ProjectCreate,
    scope: UserScope = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Create a project with a freshly generated API key."""
    project = await ProjectService(db).create_project(scope.user_id, body.name)
    return JSONResponse(status_code=201, content={"status": "ok", "data": project_to_dict(project)})


@router.delete("/{project_id}")
async def delete_project(
    project_id: int = Path(ge=1),
    scope: UserScope = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Delete a project and, through the FK cascade, all of its events."""
    await ProjectService(db).delete_project(scope.user_id, project_id)
    return {"status": "ok"}


@router.post("/{project_id}/rotate-key")
async def rotate_key(
    project_id: int = Path(ge=1),
    scope: UserScope = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await ProjectService(db).rotate_key(scope.user_id, project_id)
    return {"status": "ok", "data": project_to_dict(project)}
