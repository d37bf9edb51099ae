"""Retry queue routes: operator views and the processing trigger."""
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from syncrecovery.api.routes.recovery import get_worker_client
from syncrecovery.db.engine import get_session
from syncrecovery.models.sync import RetryQueueItem
from syncrecovery.recovery.worker_client import WorkerClient
from syncrecovery.sync.retry_queue import RetryQueue

router = APIRouter()


@router.get("/failed", response_model=List[RetryQueueItem])
def failed_items(session: Session = Depends(get_session)):
    """Items that exhausted their retries and need an operator."""
    return RetryQueue(session.get_bind()).list_failed()


@router.get("/pending", response_model=List[RetryQueueItem])
def pending_items(data_source_id: Optional[str] = None, session: Session = Depends(get_session)):
    return RetryQueue(session.get_bind()).list_pending(data_source_id)


@router.post("/process")
async def process_queue(
    session: Session = Depends(get_session),
    worker: WorkerClient = Depends(get_worker_client),
):
    """Retry the due items now instead of waiting for the scheduler tick."""
    results = await RetryQueue(session.get_bind()).process_due(worker)
    return {"success": True, "results": results}
