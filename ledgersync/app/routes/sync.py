"""
QuickBooks Sync Routes

Job control surface: start a sync for a statement file, poll its status,
retry failures, cancel, and list recent jobs.
"""

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from ledgersync.database import get_db
from ledgersync.app import models, schemas
from ledgersync.app.auth import get_current_active_user
from ledgersync.app.models import SyncJobStatus
from ledgersync.app.quickbooks.errors import QuickBooksError
from ledgersync.app.quickbooks.sync_service import SyncService, run_sync_job
from .quickbooks import raise_http_error

router = APIRouter(prefix="/quickbooks/sync", tags=["quickbooks-sync"])


@router.post("/start", response_model=schemas.SyncJob)
async def start_sync(
    request: schemas.SyncJobCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Create a sync job for a statement file and process it in the background.

    Example:
        POST /quickbooks/sync/start
        {
            "file_id": 7,
            "settings": {"bank_account_id": "35", "min_confidence": 70}
        }
    """
    service = SyncService(db)
    try:
        job = await service.create_sync_job(current_user.id, request.file_id, request.settings)
    except (QuickBooksError, httpx.HTTPError, ValueError) as e:
        raise_http_error(e)

    if job.status == SyncJobStatus.PENDING:
        background_tasks.add_task(run_sync_job, job.id, current_user.id)

    return job


@router.get("/status/{job_id}", response_model=schemas.SyncJobStatusResponse)
def sync_status(
    job_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    try:
        return SyncService(db).get_sync_job_status(job_id, current_user.id)
    except ValueError as e:
        raise_http_error(e)


@router.post("/{job_id}/retry", response_model=schemas.SyncResponse)
async def retry_sync(
    job_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Re-run the failed and unposted transactions of a finished job."""
    try:
        return await SyncService(db).retry_failed_transactions(job_id, current_user.id)
    except (QuickBooksError, httpx.HTTPError, ValueError) as e:
        raise_http_error(e)


@router.post("/{job_id}/cancel", response_model=schemas.SyncJob)
def cancel_sync(
    job_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    try:
        return SyncService(db).cancel_sync_job(job_id, current_user.id)
    except ValueError as e:
        raise_http_error(e)


@router.get("/history", response_model=List[schemas.SyncJob])
def sync_history(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return SyncService(db).get_sync_job_history(current_user.id, limit=limit)
