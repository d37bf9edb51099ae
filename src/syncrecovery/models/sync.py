"""Sync lifecycle models: integration state, run progress, recovery log, retry queue."""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel

# SyncState.status values
SYNC_IDLE = "idle"
SYNC_SYNCING = "syncing"
SYNC_PARTIAL = "partial"
SYNC_COMPLETED = "completed"
SYNC_ERROR = "error"
ACTIVE_STATUSES = (SYNC_SYNCING, SYNC_PARTIAL)

# ProgressRecord.status values
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_PARTIAL = "partial"

# RecoveryAttempt.action values
ACTION_RESUME = "resume"
ACTION_RESET = "reset"

# RetryQueueItem.status values
RETRY_PENDING = "pending"
RETRY_PROCESSING = "processing"
RETRY_COMPLETED = "completed"
RETRY_FAILED = "failed"
RETRY_CANCELLED = "cancelled"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp stored in JSON into a naive UTC datetime.

    Returns None for missing or unparseable values.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class SyncState(SQLModel, table=True):
    """One row per integration instance (a connected platform account)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    data_source_id: str = Field(unique=True, index=True)
    source_type: str = Field(index=True)  # "smartlead", "replyio", "nocodb", ...
    status: str = Field(default=SYNC_IDLE, index=True)
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    # Set by recovery when it takes a resume in hand; never touched by the worker
    recovery_claimed_at: Optional[datetime] = None

    # Worker-owned continuation state: heartbeat, phase, offsets, can_retry
    config_json: str = "{}"

    def load_config(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.config_json or "{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def heartbeat(self) -> Optional[datetime]:
        return parse_timestamp(self.load_config().get("heartbeat"))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class RecoveryAttempt(SQLModel, table=True):
    """Append-only log of resume/reset actions taken on a stuck sync."""

    id: Optional[int] = Field(default=None, primary_key=True)
    sync_state_id: int = Field(foreign_key="syncstate.id", index=True)
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)
    action: str  # "resume" or "reset"
    success: bool = False
    message: str = ""


class ProgressRecord(SQLModel, table=True):
    """Progress counters for a single sync run, polled by the dashboard."""

    id: Optional[int] = Field(default=None, primary_key=True)
    data_source_id: str = Field(index=True)
    engagement_id: Optional[str] = Field(default=None, index=True)
    status: str = RUN_RUNNING  # "running", "completed", "failed", "partial"

    total_units: int = 0
    processed_units: int = 0
    current_phase_label: Optional[str] = None
    records_synced: int = 0
    errors_json: str = "[]"  # bounded list of error strings, oldest first

    started_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    def load_errors(self) -> List[str]:
        try:
            data = json.loads(self.errors_json or "[]")
        except ValueError:
            return []
        return [str(e) for e in data] if isinstance(data, list) else []


class RetryQueueItem(SQLModel, table=True):
    """A single failed unit of work waiting for a scheduled retry."""

    id: Optional[int] = Field(default=None, primary_key=True)
    data_source_id: str = Field(index=True)
    engagement_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    next_retry_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    status: str = Field(default=RETRY_PENDING, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
