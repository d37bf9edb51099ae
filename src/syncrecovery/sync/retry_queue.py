"""
RetryQueue: durable queue of individually failed units of work.

Separate from whole-job recovery: one failed record batch is enqueued here
with its own retry budget. Lifecycle of an item:

  pending ──claim──▶ processing ──ok──▶ completed
     ▲                    │
     └──── backoff ◀──────┤ error, retries left
                          └──── error, budget spent ──▶ failed

Claiming is a conditional pending→processing update, so two schedulers
ticking at once can never both own the same item. Items that reach
max_retries stay `failed` for operators and are never scheduled again.
Items left in `processing` by a processor that died before settling them go
back to `pending` once retry_processing_timeout_minutes has passed.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from syncrecovery.config import get_settings
from syncrecovery.models.sync import (
    RETRY_CANCELLED,
    RETRY_COMPLETED,
    RETRY_FAILED,
    RETRY_PENDING,
    RETRY_PROCESSING,
    RetryQueueItem,
    SyncState,
)

logger = logging.getLogger(__name__)

BACKOFF_BASE_MINUTES = 10


def backoff_delay(retry_count: int) -> timedelta:
    """Delay before the next attempt: 10 min × 3^retry_count."""
    return timedelta(minutes=BACKOFF_BASE_MINUTES * 3 ** retry_count)


class RetryQueue:
    """Enqueue, claim and settle RetryQueueItem rows."""

    def __init__(self, engine):
        self.engine = engine

    def enqueue(
        self,
        data_source_id: str,
        *,
        engagement_id: Optional[str] = None,
        error: Optional[str] = None,
        max_retries: int = 3,
        delay: Optional[timedelta] = None,
    ) -> RetryQueueItem:
        now = datetime.utcnow()
        item = RetryQueueItem(
            data_source_id=data_source_id,
            engagement_id=engagement_id,
            max_retries=max_retries,
            last_error=error,
            next_retry_at=now + (delay if delay is not None else backoff_delay(0)),
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as s:
            s.add(item)
            s.commit()
            s.refresh(item)
        return item

    def claim_due(
        self,
        limit: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[RetryQueueItem]:
        """Move due pending items to processing and return the ones we won."""
        now = now or datetime.utcnow()
        limit = limit if limit is not None else get_settings().retry_batch_size
        claimed = []
        with Session(self.engine) as s:
            due = s.exec(
                select(RetryQueueItem)
                .where(RetryQueueItem.status == RETRY_PENDING)
                .where(RetryQueueItem.next_retry_at <= now)
                .order_by(RetryQueueItem.next_retry_at)
                .limit(limit)
            ).all()
            due_ids = [item.id for item in due]
            for item_id in due_ids:
                result = s.exec(
                    update(RetryQueueItem)
                    .where(RetryQueueItem.id == item_id)
                    .where(RetryQueueItem.status == RETRY_PENDING)
                    .values(status=RETRY_PROCESSING, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(item_id)
            s.commit()
            return [s.get(RetryQueueItem, item_id) for item_id in claimed]

    def mark_completed(self, item_id: int) -> RetryQueueItem:
        with Session(self.engine) as s:
            item = self._get_required(s, item_id)
            item.status = RETRY_COMPLETED
            item.updated_at = datetime.utcnow()
            s.add(item)
            s.commit()
            s.refresh(item)
            return item

    def mark_failed(self, item_id: int, error: str) -> RetryQueueItem:
        """Record a failed retry: reschedule with backoff or give up."""
        now = datetime.utcnow()
        with Session(self.engine) as s:
            item = self._get_required(s, item_id)
            item.retry_count = min(item.retry_count + 1, item.max_retries)
            item.last_error = error
            item.updated_at = now
            if item.retry_count >= item.max_retries:
                item.status = RETRY_FAILED
                logger.warning(
                    "Retry %s permanently failed after %d attempts", item.id, item.retry_count
                )
            else:
                item.status = RETRY_PENDING
                item.next_retry_at = now + backoff_delay(item.retry_count)
                logger.info("Retry %s rescheduled for %s", item.id, item.next_retry_at.isoformat())
            s.add(item)
            s.commit()
            s.refresh(item)
            return item

    def cancel_pending(self, data_source_id: str, session: Optional[Session] = None) -> int:
        """Cancel pending items for a data source. Returns the count cancelled.

        With a session, runs inside the caller's transaction without committing.
        """
        stmt = (
            update(RetryQueueItem)
            .where(RetryQueueItem.data_source_id == data_source_id)
            .where(RetryQueueItem.status == RETRY_PENDING)
            .values(status=RETRY_CANCELLED, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if session is not None:
            return session.exec(stmt).rowcount
        with Session(self.engine) as s:
            count = s.exec(stmt).rowcount
            s.commit()
            return count

    def list_failed(self) -> List[RetryQueueItem]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(RetryQueueItem)
                    .where(RetryQueueItem.status == RETRY_FAILED)
                    .order_by(RetryQueueItem.updated_at.desc())
                ).all()
            )

    def list_pending(self, data_source_id: Optional[str] = None) -> List[RetryQueueItem]:
        with Session(self.engine) as s:
            query = select(RetryQueueItem).where(RetryQueueItem.status == RETRY_PENDING)
            if data_source_id:
                query = query.where(RetryQueueItem.data_source_id == data_source_id)
            return list(s.exec(query.order_by(RetryQueueItem.next_retry_at)).all())

    def release_stale_claims(
        self,
        timeout_minutes: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Return items stuck in processing past the timeout to pending.

        Covers a processor that died between claiming and settling. Returns
        the number of items released.
        """
        now = now or datetime.utcnow()
        if timeout_minutes is None:
            timeout_minutes = get_settings().retry_processing_timeout_minutes
        with Session(self.engine) as s:
            count = s.exec(
                update(RetryQueueItem)
                .where(RetryQueueItem.status == RETRY_PROCESSING)
                .where(RetryQueueItem.updated_at < now - timedelta(minutes=timeout_minutes))
                .values(status=RETRY_PENDING, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            s.commit()
        if count:
            logger.warning("Released %d retry items stuck in processing", count)
        return count

    async def process_due(self, worker, *, limit: Optional[int] = None) -> Dict[str, Any]:
        """Claim due items and re-invoke the owning platform worker for each.

        Args:
            worker: WorkerClient (or AsyncMock in tests).
            limit: max items to process this tick (defaults to retry_batch_size).

        Returns:
            Summary dict: processed, succeeded, failed, errors.
        """
        results: Dict[str, Any] = {"processed": 0, "succeeded": 0, "failed": 0, "errors": []}
        self.release_stale_claims()
        for item in self.claim_due(limit):
            results["processed"] += 1
            try:
                platform = self._platform_for(item.data_source_id)
                logger.info(
                    "Retrying %s sync for %s (attempt %d/%d)",
                    platform,
                    item.data_source_id,
                    item.retry_count + 1,
                    item.max_retries,
                )
                await worker.trigger(
                    platform,
                    {
                        "data_source_id": item.data_source_id,
                        "engagement_id": item.engagement_id,
                        "is_retry": True,
                    },
                )
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                logger.warning("Retry %s failed: %s", item.id, message)
                results["failed"] += 1
                results["errors"].append(message)
                self._settle(self.mark_failed, item.id, message)
            else:
                results["succeeded"] += 1
                self._settle(self.mark_completed, item.id)
        return results

    @staticmethod
    def _settle(settle, item_id: int, *args: Any) -> None:
        try:
            settle(item_id, *args)
        except SQLAlchemyError:
            # Left in processing; release_stale_claims() returns it to pending
            logger.exception("Could not settle retry %s", item_id)

    def _platform_for(self, data_source_id: str) -> str:
        with Session(self.engine) as s:
            state = s.exec(
                select(SyncState).where(SyncState.data_source_id == data_source_id)
            ).first()
        if state is None:
            raise LookupError(f"Data source not found: {data_source_id}")
        return state.source_type

    @staticmethod
    def _get_required(session: Session, item_id: int) -> RetryQueueItem:
        item = session.get(RetryQueueItem, item_id)
        if item is None:
            raise KeyError(f"No retry queue item {item_id}")
        return item
