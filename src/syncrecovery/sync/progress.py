"""
ProgressLedger: per-run progress counters and the recovery-attempt log.

ProgressRecord rows are written by the platform worker while a run is in
flight and polled by the dashboard every couple of seconds. The ledger also
owns the RecoveryAttempt table: an append-only log whose reads are bounded
(most recent N per sync state, or the trailing hour for rate limiting).

Error lists on a run are capped; the oldest entries are dropped first so a
chronically failing run cannot grow its row without bound.
"""
import json
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, select

from syncrecovery.config import get_settings
from syncrecovery.models.sync import (
    RUN_FAILED,
    RUN_RUNNING,
    ProgressRecord,
    RecoveryAttempt,
)

ATTEMPT_WINDOW = timedelta(hours=1)


def append_capped(errors: List[str], message: str, cap: int) -> List[str]:
    """Append message and keep only the newest `cap` entries."""
    errors = list(errors) + [message]
    if cap > 0 and len(errors) > cap:
        errors = errors[-cap:]
    return errors


class ProgressLedger:
    """Reads and writes ProgressRecord and RecoveryAttempt rows."""

    def __init__(self, engine, *, error_cap: Optional[int] = None):
        self.engine = engine
        self.error_cap = error_cap if error_cap is not None else get_settings().progress_error_cap

    # ─── Run progress ─────────────────────────────────────────────────────────

    def start_run(
        self,
        data_source_id: str,
        *,
        engagement_id: Optional[str] = None,
        total_units: int = 0,
        phase_label: Optional[str] = None,
    ) -> ProgressRecord:
        record = ProgressRecord(
            data_source_id=data_source_id,
            engagement_id=engagement_id,
            total_units=total_units,
            current_phase_label=phase_label,
        )
        with Session(self.engine) as s:
            s.add(record)
            s.commit()
            s.refresh(record)
        return record

    def update_progress(
        self,
        record_id: int,
        *,
        processed_units: Optional[int] = None,
        records_synced: Optional[int] = None,
        total_units: Optional[int] = None,
        phase_label: Optional[str] = None,
    ) -> ProgressRecord:
        with Session(self.engine) as s:
            record = self._get_required(s, record_id)
            if processed_units is not None:
                record.processed_units = processed_units
            if records_synced is not None:
                record.records_synced = records_synced
            if total_units is not None:
                record.total_units = total_units
            if phase_label is not None:
                record.current_phase_label = phase_label
            record.updated_at = datetime.utcnow()
            s.add(record)
            s.commit()
            s.refresh(record)
            return record

    def append_error(self, record_id: int, message: str) -> ProgressRecord:
        with Session(self.engine) as s:
            record = self._get_required(s, record_id)
            errors = append_capped(record.load_errors(), message, self.error_cap)
            record.errors_json = json.dumps(errors)
            record.updated_at = datetime.utcnow()
            s.add(record)
            s.commit()
            s.refresh(record)
            return record

    def finish_run(self, record_id: int, status: str) -> ProgressRecord:
        now = datetime.utcnow()
        with Session(self.engine) as s:
            record = self._get_required(s, record_id)
            record.status = status
            record.updated_at = now
            record.completed_at = now
            s.add(record)
            s.commit()
            s.refresh(record)
            return record

    def latest_run(self, data_source_id: str) -> Optional[ProgressRecord]:
        with Session(self.engine) as s:
            return s.exec(
                select(ProgressRecord)
                .where(ProgressRecord.data_source_id == data_source_id)
                .order_by(ProgressRecord.started_at.desc(), ProgressRecord.id.desc())
            ).first()

    def fail_running_runs(
        self,
        session: Session,
        data_source_id: str,
        reason: str,
    ) -> int:
        """Mark every running record for a data source as failed.

        Runs inside the caller's transaction. Returns the number of records changed.
        """
        now = datetime.utcnow()
        running = session.exec(
            select(ProgressRecord)
            .where(ProgressRecord.data_source_id == data_source_id)
            .where(ProgressRecord.status == RUN_RUNNING)
        ).all()
        for record in running:
            record.status = RUN_FAILED
            record.completed_at = now
            record.updated_at = now
            record.errors_json = json.dumps(
                append_capped(record.load_errors(), reason, self.error_cap)
            )
            session.add(record)
        return len(running)

    def fail_stale_runs(
        self,
        stale_minutes: int,
        *,
        data_source_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ProgressRecord]:
        """Fail running records that have not been updated for `stale_minutes`."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=stale_minutes)
        reason = f"Marked as stale - no updates for {stale_minutes} minutes"
        with Session(self.engine) as s:
            query = (
                select(ProgressRecord)
                .where(ProgressRecord.status == RUN_RUNNING)
                .where(ProgressRecord.updated_at < cutoff)
            )
            if data_source_id:
                query = query.where(ProgressRecord.data_source_id == data_source_id)
            stale = s.exec(query).all()
            for record in stale:
                record.status = RUN_FAILED
                record.completed_at = now
                record.errors_json = json.dumps(
                    append_capped(record.load_errors(), reason, self.error_cap)
                )
                s.add(record)
            s.commit()
            for record in stale:
                s.refresh(record)
            return list(stale)

    # ─── Recovery-attempt log ─────────────────────────────────────────────────

    @staticmethod
    def record_attempt(
        session: Session,
        sync_state_id: int,
        action: str,
        *,
        success: bool,
        message: str,
    ) -> RecoveryAttempt:
        """Append an attempt inside the caller's transaction."""
        attempt = RecoveryAttempt(
            sync_state_id=sync_state_id,
            action=action,
            success=success,
            message=message,
        )
        session.add(attempt)
        return attempt

    @staticmethod
    def settle_attempt(
        session: Session,
        attempt_id: int,
        *,
        success: bool,
        message: str,
        action: Optional[str] = None,
    ) -> RecoveryAttempt:
        """Record the outcome of an attempt logged before its action ran."""
        attempt = session.get(RecoveryAttempt, attempt_id)
        if attempt is None:
            raise KeyError(f"No recovery attempt {attempt_id}")
        if action is not None:
            attempt.action = action
        attempt.success = success
        attempt.message = message
        session.add(attempt)
        return attempt

    def attempt_history(
        self,
        sync_state_id: int,
        limit: Optional[int] = None,
    ) -> List[RecoveryAttempt]:
        """Return the most recent attempts, newest first."""
        limit = limit if limit is not None else get_settings().attempt_history_limit
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(RecoveryAttempt)
                    .where(RecoveryAttempt.sync_state_id == sync_state_id)
                    .order_by(RecoveryAttempt.timestamp.desc(), RecoveryAttempt.id.desc())
                    .limit(limit)
                ).all()
            )

    def recent_attempts(
        self,
        sync_state_ids: Iterable[int],
        *,
        now: Optional[datetime] = None,
    ) -> Dict[int, List[RecoveryAttempt]]:
        """Attempts within the trailing hour, grouped by sync state, oldest first.

        Each group is bounded to the history limit.
        """
        ids = list(sync_state_ids)
        grouped: Dict[int, List[RecoveryAttempt]] = defaultdict(list)
        if not ids:
            return grouped
        now = now or datetime.utcnow()
        limit = get_settings().attempt_history_limit
        with Session(self.engine) as s:
            rows = s.exec(
                select(RecoveryAttempt)
                .where(RecoveryAttempt.sync_state_id.in_(ids))
                .where(RecoveryAttempt.timestamp >= now - ATTEMPT_WINDOW)
                .order_by(RecoveryAttempt.timestamp, RecoveryAttempt.id)
            ).all()
        for row in rows:
            grouped[row.sync_state_id].append(row)
        for state_id in grouped:
            grouped[state_id] = grouped[state_id][-limit:]
        return grouped

    @staticmethod
    def _get_required(session: Session, record_id: int) -> ProgressRecord:
        record = session.get(ProgressRecord, record_id)
        if record is None:
            raise KeyError(f"No progress record {record_id}")
        return record
