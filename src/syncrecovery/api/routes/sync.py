"""Sync state and progress routes (read by the dashboard poller)."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from syncrecovery.config import get_settings
from syncrecovery.db.engine import get_session
from syncrecovery.models.sync import RecoveryAttempt, SyncState
from syncrecovery.sync.progress import ProgressLedger
from syncrecovery.sync.retry_queue import RetryQueue

router = APIRouter()


class SyncStateResponse(BaseModel):
    data_source_id: str
    platform: str
    status: str
    last_sync_at: Optional[datetime]
    last_sync_error: Optional[str]
    updated_at: datetime
    heartbeat: Optional[datetime]
    can_retry: bool


class ProgressResponse(BaseModel):
    status: str
    engagement_id: Optional[str] = None
    total_units: int = 0
    processed_units: int = 0
    current_phase_label: Optional[str] = None
    records_synced: int = 0
    errors: List[str] = []
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ResetStaleRequest(BaseModel):
    data_source_id: Optional[str] = None
    stale_threshold_minutes: Optional[int] = None


def _state_response(state: SyncState) -> SyncStateResponse:
    return SyncStateResponse(
        data_source_id=state.data_source_id,
        platform=state.source_type,
        status=state.status,
        last_sync_at=state.last_sync_at,
        last_sync_error=state.last_sync_error,
        updated_at=state.updated_at,
        heartbeat=state.heartbeat(),
        can_retry=bool(state.load_config().get("can_retry", False)),
    )


@router.get("/states", response_model=List[SyncStateResponse])
def list_states(session: Session = Depends(get_session)):
    """Every integration's current sync status."""
    states = session.exec(select(SyncState).order_by(SyncState.id)).all()
    return [_state_response(s) for s in states]


@router.get("/progress/{data_source_id}", response_model=ProgressResponse)
def latest_progress(data_source_id: str, session: Session = Depends(get_session)):
    """Return the most recent run's progress for a data source."""
    record = ProgressLedger(session.get_bind()).latest_run(data_source_id)
    if not record:
        return ProgressResponse(status="never_run")
    return ProgressResponse(
        status=record.status,
        engagement_id=record.engagement_id,
        total_units=record.total_units,
        processed_units=record.processed_units,
        current_phase_label=record.current_phase_label,
        records_synced=record.records_synced,
        errors=record.load_errors(),
        started_at=record.started_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
    )


@router.get("/states/{data_source_id}/attempts", response_model=List[RecoveryAttempt])
def recovery_attempts(data_source_id: str, session: Session = Depends(get_session)):
    """The most recent recovery attempts for a data source, newest first."""
    state = session.exec(
        select(SyncState).where(SyncState.data_source_id == data_source_id)
    ).first()
    if not state:
        raise HTTPException(status_code=404, detail="Unknown data source")
    return ProgressLedger(session.get_bind()).attempt_history(state.id)


@router.post("/reset-stale")
def reset_stale(request: ResetStaleRequest, session: Session = Depends(get_session)):
    """
    Fail running progress records that stopped updating, and cancel the
    pending retries of their data sources.
    """
    engine = session.get_bind()
    minutes = request.stale_threshold_minutes or get_settings().stale_progress_minutes
    stale = ProgressLedger(engine).fail_stale_runs(minutes, data_source_id=request.data_source_id)

    queue = RetryQueue(engine)
    data_source_ids = sorted({r.data_source_id for r in stale})
    cancelled = sum(queue.cancel_pending(ds) for ds in data_source_ids)

    return {
        "success": True,
        "reset_count": len(stale),
        "cancelled_retries": cancelled,
        "reset_syncs": [
            {
                "id": r.id,
                "data_source_id": r.data_source_id,
                "processed": r.processed_units,
                "total": r.total_units,
                "last_updated": r.updated_at,
            }
            for r in stale
        ],
    }
