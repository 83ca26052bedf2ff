"""
Celery tasks for Square catalog synchronization
"""
from datetime import datetime
from typing import Optional
import asyncio
import uuid

import logging

from app.celery_app import celery_app

logger = logging.getLogger(__name__)
from app.database import SessionLocal
from app.models.sync_run import CatalogSyncRun, SyncStatus, SyncTrigger
from app.services.catalog_sync import SyncOrchestrator
from app.services.square_service import SquareService


def get_celery_db():
    """Get database session for Celery tasks (direct, not a generator)"""
    return SessionLocal()


def run_catalog_sync(trigger: SyncTrigger, task_id: Optional[str] = None, run_id: Optional[str] = None) -> dict:
    """
    Run one catalog sync to completion on a fresh event loop

    Args:
        trigger: What started the run
        task_id: Celery task id for the run history
        run_id: CatalogSyncRun UUID created by the API, if any

    Returns:
        Summary dict
    """
    # Fresh client per run: the rate limiter must not outlive its event loop
    orchestrator = SyncOrchestrator(session_factory=SessionLocal, square_client=SquareService())
    summary = asyncio.run(orchestrator.run(trigger=trigger, task_id=task_id, run_id=uuid.UUID(run_id) if run_id else None))
    return summary.to_dict()


@celery_app.task(bind=True, max_retries=3, time_limit=60 * 60, soft_time_limit=55 * 60)
def sync_square_catalog(self, run_id: Optional[str] = None, trigger: str = SyncTrigger.MANUAL.value):
    """
    Sync the Square catalog into the local store

    Args:
        run_id: Optional CatalogSyncRun UUID to update with results
        trigger: manual | webhook | scheduled
    """
    try:
        result = run_catalog_sync(SyncTrigger(trigger), task_id=self.request.id, run_id=run_id)
    except Exception as e:
        # The orchestrator reports its own failures; this is an unexpected crash
        logger.error("Catalog sync task crashed: %s", e, exc_info=True)
        if run_id:
            db = get_celery_db()
            try:
                run = db.query(CatalogSyncRun).filter(CatalogSyncRun.id == uuid.UUID(run_id)).first()
                if run:
                    run.status = SyncStatus.FAILED
                    run.error_message = str(e)
                    run.completed_at = datetime.utcnow()
                    db.commit()
            except Exception as record_error:
                logger.warning("Failed to mark sync run %s as failed: %s", run_id, record_error)
                db.rollback()
            finally:
                db.close()
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    if not result["success"]:
        logger.warning("Catalog sync finished unsuccessfully: %s", result["message"])
    return result


@celery_app.task
def sync_catalog_periodic():
    """
    Periodic catalog sync
    Scheduled via Celery Beat every CATALOG_SYNC_INTERVAL_MINUTES
    """
    task = sync_square_catalog.delay(trigger=SyncTrigger.SCHEDULED.value)
    return {
        "status": "success",
        "message": "Catalog sync queued",
        "task_id": task.id,
        "timestamp": datetime.utcnow().isoformat(),
    }
