"""
SyncStateStore: persisted sync status, heartbeat and continuation state.

Two writers share these rows: the platform worker (heartbeats, offsets,
status transitions) and the recovery orchestrator (claims and resets). Every
worker write bumps updated_at, so the orchestrator can use it as a version
stamp and commit only when the row is unchanged since detection.

A resume is claimed by stamping recovery_claimed_at instead of updated_at:
the claim fences off overlapping recovery passes without looking like worker
activity to the detector.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from syncrecovery.models.sync import (
    ACTIVE_STATUSES,
    SYNC_COMPLETED,
    SYNC_IDLE,
    SyncState,
)


class SyncStateStore:
    """Reads and writes SyncState rows."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    def create(
        self,
        data_source_id: str,
        source_type: str,
        *,
        status: str = SYNC_IDLE,
        config: Optional[Dict[str, Any]] = None,
    ) -> SyncState:
        state = SyncState(
            data_source_id=data_source_id,
            source_type=source_type,
            status=status,
            config_json=json.dumps(config or {}),
        )
        with Session(self.engine) as s:
            s.add(state)
            s.commit()
            s.refresh(state)
        return state

    def get(self, data_source_id: str) -> Optional[SyncState]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncState).where(SyncState.data_source_id == data_source_id)
            ).first()

    def list_all(self) -> List[SyncState]:
        with Session(self.engine) as s:
            return list(s.exec(select(SyncState).order_by(SyncState.id)).all())

    def list_active(self) -> List[SyncState]:
        """Return every state whose status is syncing or partial.

        Store errors propagate; the detector decides what to do with them.
        """
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncState)
                    .where(SyncState.status.in_(ACTIVE_STATUSES))
                    .order_by(SyncState.id)
                ).all()
            )

    # ─── Worker-side writes ───────────────────────────────────────────────────

    def record_heartbeat(self, data_source_id: str, **config_updates: Any) -> SyncState:
        """Stamp a fresh heartbeat and merge continuation fields into config."""
        now = datetime.utcnow()
        with Session(self.engine) as s:
            state = self._get_required(s, data_source_id)
            config = state.load_config()
            config.update(config_updates)
            config["heartbeat"] = now.isoformat()
            state.config_json = json.dumps(config)
            state.updated_at = now
            s.add(state)
            s.commit()
            s.refresh(state)
            return state

    def set_status(
        self,
        data_source_id: str,
        status: str,
        *,
        error: Optional[str] = None,
    ) -> SyncState:
        now = datetime.utcnow()
        with Session(self.engine) as s:
            state = self._get_required(s, data_source_id)
            state.status = status
            state.last_sync_error = error
            if status == SYNC_COMPLETED:
                state.last_sync_at = now
            state.updated_at = now
            s.add(state)
            s.commit()
            s.refresh(state)
            return state

    # ─── Optimistic concurrency ───────────────────────────────────────────────

    @staticmethod
    def _guarded_update(
        state_id: int,
        expected_updated_at: datetime,
        expected_claimed_at: Optional[datetime],
    ):
        claim = (
            SyncState.recovery_claimed_at.is_(None)
            if expected_claimed_at is None
            else SyncState.recovery_claimed_at == expected_claimed_at
        )
        return (
            update(SyncState)
            .where(SyncState.id == state_id)
            .where(SyncState.updated_at == expected_updated_at)
            .where(claim)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def claim(
        session: Session,
        state_id: int,
        expected_updated_at: datetime,
        expected_claimed_at: Optional[datetime],
        claimed_at: datetime,
    ) -> bool:
        """Stamp recovery_claimed_at if nobody wrote the row since detection.

        updated_at is left alone, so the worker's liveness signal is not
        forged. Returns False when another writer or another recovery pass
        got there first.
        """
        result = session.exec(
            SyncStateStore._guarded_update(state_id, expected_updated_at, expected_claimed_at)
            .values(recovery_claimed_at=claimed_at)
        )
        return result.rowcount == 1

    @staticmethod
    def compare_and_set(
        session: Session,
        state_id: int,
        expected_updated_at: datetime,
        expected_claimed_at: Optional[datetime] = None,
        **values: Any,
    ) -> bool:
        """Conditionally update a row inside the caller's transaction.

        The update applies only if updated_at and recovery_claimed_at still
        hold the expected values. updated_at is always bumped. Returns False
        when another writer got there first; nothing is changed in that case.
        """
        values.setdefault("updated_at", datetime.utcnow())
        result = session.exec(
            SyncStateStore._guarded_update(state_id, expected_updated_at, expected_claimed_at)
            .values(**values)
        )
        return result.rowcount == 1

    @staticmethod
    def _get_required(session: Session, data_source_id: str) -> SyncState:
        state = session.exec(
            select(SyncState).where(SyncState.data_source_id == data_source_id)
        ).first()
        if state is None:
            raise KeyError(f"No sync state for data source {data_source_id!r}")
        return state
