"""
Square API Endpoints
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging

from app.database import get_db
from app.models.sync_run import CatalogSyncRun, SyncStatus, SyncTrigger
from app.services.webhook_service import SIGNATURE_HEADER, WebhookHandler
from app.schemas.square import (
    SyncRequest,
    SyncResponse,
    SyncRunResponse,
    SyncRunList,
    WebhookResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/square", tags=["square"])


def get_webhook_handler() -> WebhookHandler:
    """Webhook handler dependency (overridden in tests)"""
    return WebhookHandler()


def _run_response(run: CatalogSyncRun) -> SyncRunResponse:
    return SyncRunResponse(
        id=str(run.id),
        trigger=run.trigger.value,
        status=run.status.value,
        total_items=run.total_items or 0,
        synced_items=run.synced_items or 0,
        archived_items=run.archived_items or 0,
        error_count=run.error_count or 0,
        errors=run.errors,
        error_message=run.error_message,
        task_id=run.task_id,
        started_at=run.started_at,
        completed_at=run.completed_at,
        created_at=run.created_at,
    )


@router.post("/webhooks", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
):
    """
    Receive a Square webhook

    The signature is computed over the raw body, so the body is read as bytes
    and only parsed after verification.
    """
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    result = await handler.handle(body, signature)

    if result.rejected == "signature":
        status_code = status.HTTP_401_UNAUTHORIZED
    elif result.rejected == "payload":
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        # Handler errors still answer 200 so Square does not redeliver a poison event forever
        status_code = status.HTTP_200_OK

    return JSONResponse(
        status_code=status_code,
        content=WebhookResponse(success=result.success, message=result.message).model_dump(),
    )


@router.post("/sync-catalog", response_model=SyncResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_catalog_sync(
    sync_request: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
):
    """
    Queue a full catalog sync on the worker
    """
    run = CatalogSyncRun(trigger=SyncTrigger.MANUAL, status=SyncStatus.PENDING)
    db.add(run)
    db.commit()
    db.refresh(run)

    if sync_request and sync_request.reason:
        logger.info("Manual catalog sync requested: %s", sync_request.reason)

    from app.tasks.sync_square_data import sync_square_catalog
    task = sync_square_catalog.delay(str(run.id), SyncTrigger.MANUAL.value)

    run.task_id = task.id
    db.commit()

    return SyncResponse(
        message="Catalog sync started",
        task_id=task.id,
        run_id=str(run.id),
    )


@router.get("/sync-runs", response_model=SyncRunList)
async def list_sync_runs(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """
    List recent catalog sync runs, newest first
    """
    runs = db.query(CatalogSyncRun).order_by(CatalogSyncRun.created_at.desc()).limit(limit).all()
    total = db.query(CatalogSyncRun).count()

    return SyncRunList(runs=[_run_response(run) for run in runs], total=total)
