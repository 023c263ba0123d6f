"""Celery beat variant of the retention and session sweeps."""

import asyncio
from typing import Any, Dict

import structlog
from celery import Celery

from ..config import settings
from ..storage.database import create_engine_from_settings, create_session_factory
from .sweeper import PeriodicSweeper, RetentionSweeper, SessionSweeper

logger = structlog.get_logger(__name__)

# Create Celery app
celery_app = Celery(
    "spectraops",
    broker=f"redis://{settings.redis_host}:{settings.redis_port}/{settings.redis_db}",
    backend=f"redis://{settings.redis_host}:{settings.redis_port}/{settings.redis_db}",
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "prune_errors": {"queue": "maintenance"},
        "prune_sessions": {"queue": "maintenance"},
    },
    task_default_queue="maintenance",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)


async def _run_sweep(sweeper_cls: type, **kwargs: Any) -> int:
    engine = create_engine_from_settings(settings)
    try:
        sweeper: PeriodicSweeper = sweeper_cls(create_session_factory(engine), **kwargs)
        return await sweeper.sweep_once()
    finally:
        await engine.dispose()


@celery_app.task(name="prune_errors")
def prune_errors_task(retention_days: int = 90) -> Dict[str, Any]:
    """
    Delete error events older than the retention horizon.

    Args:
        retention_days: Number of days to keep

    Returns:
        Result dict with status and pruned row count
    """
    logger.info(f"Starting error retention sweep, keeping {retention_days} days")

    try:
        pruned = asyncio.run(_run_sweep(RetentionSweeper, retention_days=retention_days))
        return {"status": "success", "count": pruned}

    except Exception as e:
        logger.error(f"Error retention sweep failed: {e}")
        return {"status": "failed", "error": str(e)}


@celery_app.task(name="prune_sessions")
def prune_sessions_task() -> Dict[str, Any]:
    """Delete expired dashboard sessions."""
    try:
        pruned = asyncio.run(_run_sweep(SessionSweeper))
        return {"status": "success", "count": pruned}

    except Exception as e:
        logger.error(f"Session sweep failed: {e}")
        return {"status": "failed", "error": str(e)}


# Periodic task schedule (Celery Beat)
celery_app.conf.beat_schedule = {
    "prune-old-errors": {
        "task": "prune_errors",
        "schedule": float(settings.retention_sweep_interval),
        "args": (settings.error_retention_days,),
    },
    "prune-expired-sessions": {
        "task": "prune_sessions",
        "schedule": float(settings.session_sweep_interval),
    },
}
