"""
StuckDetector: finds active syncs whose activity has gone silent.

Rules for one active SyncState, evaluated at `now`:
  1. last_activity = max(config.heartbeat, updated_at)
  2. updated_at less than 2 minutes ago ⇒ alive (debounce), never stuck
     recovery_claimed_at less than 2 minutes ago ⇒ a resume is in flight, skip
  3. threshold: syncing → 5 min, partial → 10 min
  4. stuck iff now - last_activity > threshold

The scan never writes. A store failure aborts the whole pass and yields an
empty result so nothing acts on a partially evaluated set.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from syncrecovery.config import get_settings
from syncrecovery.models.sync import (
    ACTION_RESUME,
    SYNC_PARTIAL,
    SYNC_SYNCING,
    RecoveryAttempt,
    SyncState,
)

logger = logging.getLogger(__name__)


@dataclass
class StuckSync:
    """An active sync that has exceeded its inactivity threshold."""

    state: SyncState
    last_activity: datetime
    last_heartbeat: Optional[datetime]
    stuck_duration_minutes: float
    recent_attempts: List[RecoveryAttempt] = field(default_factory=list)

    @property
    def platform(self) -> str:
        return self.state.source_type

    @property
    def observed_updated_at(self) -> datetime:
        """The version stamp every recovery write is conditioned on."""
        return self.state.updated_at

    @property
    def observed_claimed_at(self) -> Optional[datetime]:
        return self.state.recovery_claimed_at

    @property
    def recent_resume_count(self) -> int:
        return sum(1 for a in self.recent_attempts if a.action == ACTION_RESUME)


@dataclass
class Thresholds:
    syncing: timedelta
    partial: timedelta
    debounce: timedelta
    claim: timedelta = timedelta(minutes=2)

    @classmethod
    def from_settings(cls) -> "Thresholds":
        settings = get_settings()
        return cls(
            syncing=timedelta(minutes=settings.syncing_stuck_minutes),
            partial=timedelta(minutes=settings.partial_stuck_minutes),
            debounce=timedelta(minutes=settings.debounce_minutes),
            claim=timedelta(minutes=settings.recovery_claim_minutes),
        )

    def for_status(self, status: str) -> Optional[timedelta]:
        if status == SYNC_SYNCING:
            return self.syncing
        if status == SYNC_PARTIAL:
            return self.partial
        return None


def find_stuck(
    states: Iterable[SyncState],
    attempts: Dict[int, List[RecoveryAttempt]],
    now: datetime,
    thresholds: Optional[Thresholds] = None,
) -> List[StuckSync]:
    """Pure scan over already-loaded rows. See module docstring for the rules."""
    thresholds = thresholds or Thresholds.from_settings()
    stuck = []
    for state in states:
        threshold = thresholds.for_status(state.status)
        if threshold is None:
            continue
        if now - state.updated_at < thresholds.debounce:
            continue
        claimed_at = state.recovery_claimed_at
        if claimed_at and now - claimed_at < thresholds.claim:
            continue

        heartbeat = state.heartbeat()
        last_activity = max(heartbeat, state.updated_at) if heartbeat else state.updated_at
        silent_for = now - last_activity
        if silent_for <= threshold:
            continue

        stuck.append(
            StuckSync(
                state=state,
                last_activity=last_activity,
                last_heartbeat=heartbeat,
                stuck_duration_minutes=silent_for.total_seconds() / 60,
                recent_attempts=list(attempts.get(state.id, [])),
            )
        )
    return stuck


class StuckDetector:
    """Loads active states and recent attempts, then applies find_stuck()."""

    def __init__(self, state_store, ledger, thresholds: Optional[Thresholds] = None):
        """
        Args:
            state_store: SyncStateStore.
            ledger: ProgressLedger (source of the recovery-attempt log).
            thresholds: override for the settings-derived thresholds.
        """
        self.state_store = state_store
        self.ledger = ledger
        self.thresholds = thresholds

    def detect(
        self,
        *,
        platform: Optional[str] = None,
        data_source_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[StuckSync]:
        now = now or datetime.utcnow()
        try:
            states = self.state_store.list_active()
            attempts = self.ledger.recent_attempts([s.id for s in states], now=now)
        except SQLAlchemyError as exc:
            logger.error("Stuck detection aborted, store unavailable: %s", exc)
            return []

        if platform:
            states = [s for s in states if s.source_type == platform]
        if data_source_id:
            states = [s for s in states if s.data_source_id == data_source_id]

        stuck = find_stuck(states, attempts, now, self.thresholds)
        logger.info("Found %d stuck syncs among %d active", len(stuck), len(states))
        return stuck
