"""
RecoveryOrchestrator: decides resume vs. reset for each stuck sync.

Decision order for one stuck sync:
  1. action == "reset"                    → reset
  2. action == "resume" or force_resume   → resume, reset if the worker call fails
  3. auto:
       stuck longer than the hard ceiling (30 min)      → reset
       ≥ 3 resume attempts within the trailing hour      → reset
       otherwise                                         → resume, reset on failure

A resume with no stored position marker resets instead (no guessing).

Writes are conditioned on the updated_at and recovery_claimed_at values read
at detection time. If the worker wrote in between, the job un-stalled by
itself and recovery for it is a silent no-op ("skipped"); the same happens to
a pass that loses the claim to an overlapping pass. A reset commits the state
change, the failed run, the cancelled retries and its RecoveryAttempt in one
transaction.

A resume first claims the row and logs an in-flight RecoveryAttempt in one
transaction, then calls the worker, then settles that attempt: success, or
rewritten as the fallback reset row. updated_at is never touched by a
resume: the worker owns the state again.

Stuck syncs are processed concurrently; one job failing yields a
success=False result and never aborts the others.
"""
import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import Session

from syncrecovery.config import get_settings
from syncrecovery.models.sync import ACTION_RESET, ACTION_RESUME, SYNC_ERROR
from syncrecovery.recovery.continuation import NoResumePointError, build_continuation
from syncrecovery.recovery.detector import StuckDetector, StuckSync
from syncrecovery.recovery.worker_client import WorkerCallError
from syncrecovery.sync.progress import ProgressLedger
from syncrecovery.sync.retry_queue import RetryQueue
from syncrecovery.sync.state_store import SyncStateStore

logger = logging.getLogger(__name__)

ACTIONS = ("auto", "detect", "resume", "reset")

# Result actions reported per job
RESULT_RESUME = "resume"
RESULT_RESET = "reset"
RESULT_RESET_AFTER_FAILED_RESUME = "reset_after_failed_resume"
RESULT_SKIPPED = "skipped"


@dataclass
class Decision:
    action: str  # ACTION_RESUME or ACTION_RESET
    reason: str


@dataclass
class RecoveryResult:
    platform: str
    data_source_id: str
    action: str
    stuck_duration_minutes: float
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RecoveryReport:
    stuck_count: int
    results: List[RecoveryResult]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "stuck_count": self.stuck_count,
            "results": [r.to_dict() for r in self.results],
        }


def decide(
    stuck: StuckSync,
    action: str = "auto",
    force_resume: bool = False,
    *,
    max_stuck_minutes: Optional[int] = None,
    max_resume_attempts: Optional[int] = None,
) -> Decision:
    """Pick resume or reset for one stuck sync. No side effects."""
    settings = get_settings()
    if max_stuck_minutes is None:
        max_stuck_minutes = settings.max_stuck_minutes
    if max_resume_attempts is None:
        max_resume_attempts = settings.max_resume_attempts_per_hour

    minutes = stuck.stuck_duration_minutes
    if action == "reset":
        return Decision(ACTION_RESET, f"Reset requested after {minutes:.0f} minutes stuck")
    if action == "resume" or force_resume:
        return Decision(ACTION_RESUME, "Resume requested")

    if minutes > max_stuck_minutes:
        return Decision(
            ACTION_RESET,
            f"Sync stuck for {minutes:.0f} minutes with no progress "
            f"(limit {max_stuck_minutes})",
        )
    resumes = stuck.recent_resume_count
    if resumes >= max_resume_attempts:
        return Decision(
            ACTION_RESET,
            f"Sync still stuck after {resumes} resume attempts in the last hour",
        )
    return Decision(ACTION_RESUME, f"Stuck for {minutes:.0f} minutes, resuming")


def describe_stuck(stuck: StuckSync) -> Dict[str, Any]:
    """Detection-mode view of a stuck sync."""
    return {
        "platform": stuck.platform,
        "data_source_id": stuck.state.data_source_id,
        "status": stuck.state.status,
        "stuck_minutes": round(stuck.stuck_duration_minutes, 1),
        "last_heartbeat": stuck.last_heartbeat.isoformat() if stuck.last_heartbeat else None,
        "last_updated": stuck.state.updated_at.isoformat(),
        "recovery_attempts": len(stuck.recent_attempts),
    }


class RecoveryOrchestrator:
    """Runs detection and applies resume/reset decisions."""

    def __init__(
        self,
        engine,
        worker,
        *,
        detector: Optional[StuckDetector] = None,
        resume_timeout: Optional[float] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            worker: WorkerClient (or AsyncMock in tests).
            detector: StuckDetector override; built from the engine by default.
            resume_timeout: seconds before a hanging resume counts as failed.
        """
        self.engine = engine
        self.worker = worker
        self.state_store = SyncStateStore(engine)
        self.ledger = ProgressLedger(engine)
        self.retry_queue = RetryQueue(engine)
        self.detector = detector or StuckDetector(self.state_store, self.ledger)
        self.resume_timeout = (
            resume_timeout if resume_timeout is not None else get_settings().resume_timeout_seconds
        )

    def detect(
        self,
        *,
        platform: Optional[str] = None,
        data_source_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Read-only: describe stuck syncs without touching them."""
        stuck = self.detector.detect(platform=platform, data_source_id=data_source_id, now=now)
        return [describe_stuck(s) for s in stuck]

    async def run(
        self,
        action: str = "auto",
        *,
        platform: Optional[str] = None,
        data_source_id: Optional[str] = None,
        force_resume: bool = False,
        now: Optional[datetime] = None,
    ) -> RecoveryReport:
        """Detect stuck syncs and recover each one.

        Args:
            action: "auto", "resume" or "reset".
            platform: only recover syncs of this platform.
            data_source_id: only recover this data source.
            force_resume: resume even if the auto guards would reset.
            now: evaluation time (defaults to utcnow).
        """
        if action not in ACTIONS or action == "detect":
            raise ValueError(f"Unsupported recovery action {action!r}")

        logger.info("Starting recovery - action: %s, platform: %s", action, platform or "all")
        stuck = self.detector.detect(platform=platform, data_source_id=data_source_id, now=now)

        results = await asyncio.gather(
            *(self._recover_isolated(s, action, force_resume) for s in stuck)
        )
        logger.info("Recovery complete: %d syncs processed", len(results))
        return RecoveryReport(stuck_count=len(stuck), results=list(results))

    # ─── Per-job recovery ─────────────────────────────────────────────────────

    async def _recover_isolated(self, stuck: StuckSync, action: str, force_resume: bool) -> RecoveryResult:
        decision = decide(stuck, action, force_resume)
        try:
            if decision.action == ACTION_RESET:
                return self._reset(stuck, decision.reason)
            return await self._resume(stuck)
        except Exception as exc:
            logger.exception("Recovery of %s %s failed", stuck.platform, stuck.state.data_source_id)
            return self._result(stuck, decision.action, False, f"Recovery failed: {exc}")

    async def _resume(self, stuck: StuckSync) -> RecoveryResult:
        state = stuck.state
        try:
            payload = build_continuation(state.source_type, state.data_source_id, state.load_config())
        except NoResumePointError as exc:
            logger.warning("No safe resume point for %s %s: %s", state.source_type, state.data_source_id, exc)
            return self._reset(stuck, f"No safe resume point: {exc}")

        claimed_at = datetime.utcnow()
        with Session(self.engine) as s:
            claimed = self.state_store.claim(
                s, state.id, stuck.observed_updated_at, stuck.observed_claimed_at, claimed_at
            )
            if not claimed:
                s.rollback()
                return self._skipped(stuck)
            # In-flight until the worker answers
            attempt = self.ledger.record_attempt(
                s, state.id, ACTION_RESUME, success=False, message="Resume in flight"
            )
            s.commit()
            attempt_id = attempt.id

        logger.info("Attempting to resume %s sync for %s", state.source_type, state.data_source_id)
        try:
            await asyncio.wait_for(
                self.worker.trigger(state.source_type, payload),
                timeout=self.resume_timeout,
            )
        except asyncio.TimeoutError:
            failure = f"timed out after {self.resume_timeout}s"
        except WorkerCallError as exc:
            failure = str(exc)
        else:
            failure = None

        if failure is not None:
            return self._reset(
                stuck,
                f"Resume failed, reset instead: {failure}",
                result_action=RESULT_RESET_AFTER_FAILED_RESUME,
                claimed_at=claimed_at,
                attempt_id=attempt_id,
            )

        message = f"Successfully resumed {state.source_type} sync"
        with Session(self.engine) as s:
            self.ledger.settle_attempt(s, attempt_id, success=True, message=message)
            s.commit()
        logger.info("resume %s: %s", state.source_type, message)
        return self._result(stuck, RESULT_RESUME, True, message)

    def _reset(
        self,
        stuck: StuckSync,
        reason: str,
        *,
        result_action: str = RESULT_RESET,
        claimed_at: Optional[datetime] = None,
        attempt_id: Optional[int] = None,
    ) -> RecoveryResult:
        """Mark the sync failed and retryable, in one conditional transaction.

        After a failed resume, claimed_at is the stamp that resume wrote and
        attempt_id its in-flight attempt row, which becomes the reset row.
        """
        state = stuck.state
        now = datetime.utcnow()
        config = state.load_config()
        config.update(
            can_retry=True,
            failed_at=now.isoformat(),
            failure_reason=reason,
        )

        with Session(self.engine) as s:
            applied = self.state_store.compare_and_set(
                s,
                state.id,
                stuck.observed_updated_at,
                claimed_at if attempt_id is not None else stuck.observed_claimed_at,
                status=SYNC_ERROR,
                last_sync_error=reason,
                config_json=json.dumps(config),
                updated_at=now,
            )
            if not applied:
                s.rollback()
                if attempt_id is not None:
                    self.ledger.settle_attempt(
                        s, attempt_id, success=False,
                        message="Resume failed; sync showed new activity before reset",
                    )
                    s.commit()
                return self._skipped(stuck)
            self.ledger.fail_running_runs(s, state.data_source_id, reason)
            self.retry_queue.cancel_pending(state.data_source_id, session=s)
            if attempt_id is not None:
                self.ledger.settle_attempt(
                    s, attempt_id, action=ACTION_RESET, success=True, message=reason
                )
            else:
                self.ledger.record_attempt(s, state.id, ACTION_RESET, success=True, message=reason)
            s.commit()

        logger.warning("%s %s: %s", result_action, state.source_type, reason)
        return self._result(stuck, result_action, True, reason)

    def _skipped(self, stuck: StuckSync) -> RecoveryResult:
        logger.warning(
            "%s %s changed since detection, leaving it to the worker",
            stuck.platform,
            stuck.state.data_source_id,
        )
        return self._result(stuck, RESULT_SKIPPED, True, "Sync showed new activity; no action taken")

    @staticmethod
    def _result(stuck: StuckSync, action: str, success: bool, message: str) -> RecoveryResult:
        return RecoveryResult(
            platform=stuck.platform,
            data_source_id=stuck.state.data_source_id,
            action=action,
            stuck_duration_minutes=round(stuck.stuck_duration_minutes, 1),
            success=success,
            message=message,
        )
