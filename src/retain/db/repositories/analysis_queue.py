"""
Analysis queue repository.

A job ledger for analysis work stored in the local database. Claiming is a
select-then-conditional-update executed inside the caller's single write
transaction; with ``BEGIN IMMEDIATE`` transactions (see
``retain.db.connection``) concurrent claimers serialize on the writer lock
and can never both win the same item.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from retain.config import settings
from retain.db.repositories.base import BaseRepository
from retain.exceptions import (
    AttemptsExhaustedError,
    ConflictError,
    NotClaimedError,
    ValidationError,
)
from retain.models.db import (
    ACTIVE_QUEUE_STATUSES,
    TERMINAL_QUEUE_STATUSES,
    AnalysisQueueItem,
    AnalysisType,
    QueueStatus,
)
from retain.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

VALID_ANALYSIS_TYPES = {t.value for t in AnalysisType}


@dataclass
class QueueStats:
    """Statistics about the analysis queue."""

    pending: int = 0
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    unapplied: int = 0  # Completed, results not yet merged

    @property
    def active(self) -> int:
        """Items that are pending or claimed."""
        return self.pending + self.claimed


class AnalysisQueueRepository(BaseRepository[AnalysisQueueItem]):
    """
    Repository for the analysis job queue.

    State machine: pending -> claimed -> completed | failed. Methods flush but
    never commit; run each mutating call in its own transaction.
    """

    def __init__(self, session: Session, clock: Clock = utcnow):
        super().__init__(AnalysisQueueItem, session)
        self.clock = clock

    def enqueue(
        self,
        conversation_id: uuid.UUID,
        analysis_type: str,
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> AnalysisQueueItem:
        """
        Add a pending item for a conversation.

        Args:
            conversation_id: Conversation to analyze
            analysis_type: workflow, learning or summary
            priority: Higher values are claimed first
            max_attempts: Claim limit (defaults to ``settings.queue_max_attempts``)

        Returns:
            The new queue item

        Raises:
            ConflictError: An item for this conversation and type is already
                pending or claimed
            ValidationError: Unknown analysis type, or ``dedupe`` (which runs
                over learnings rather than one conversation)
        """
        if analysis_type not in VALID_ANALYSIS_TYPES:
            raise ValidationError(f"Unknown analysis type: {analysis_type}")
        if analysis_type == AnalysisType.DEDUPE.value:
            raise ValidationError("dedupe analysis cannot be queued per conversation")

        item = AnalysisQueueItem(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            analysis_type=analysis_type,
            status=QueueStatus.PENDING.value,
            priority=priority,
            attempt_count=0,
            max_attempts=max_attempts or settings.queue_max_attempts,
            created_at=self.clock(),
        )

        try:
            with self.session.begin_nested():
                self.session.add(item)
                self.session.flush()
        except IntegrityError as e:
            if self.get_active(conversation_id, analysis_type) is not None:
                raise ConflictError(conversation_id, analysis_type) from e
            raise

        logger.debug(
            f"Enqueued {analysis_type} item {item.id} for conversation {conversation_id}"
        )
        return item

    def get_active(
        self, conversation_id: uuid.UUID, analysis_type: str
    ) -> Optional[AnalysisQueueItem]:
        stmt = select(AnalysisQueueItem).where(
            AnalysisQueueItem.conversation_id == conversation_id,
            AnalysisQueueItem.analysis_type == analysis_type,
            AnalysisQueueItem.status.in_(ACTIVE_QUEUE_STATUSES),
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def claim_pending_items(
        self, count: int, worker_id: str
    ) -> list[AnalysisQueueItem]:
        """
        Atomically claim up to ``count`` pending items for ``worker_id``.

        Candidates are pending items under their attempt limit, highest
        priority first, oldest first within a priority. Only candidates that
        are still pending at update time are transitioned, and only those are
        returned.

        Must run inside one write transaction; the caller commits.
        """
        if count <= 0:
            return []

        now = self.clock()
        candidate_ids = (
            self.session.execute(
                select(AnalysisQueueItem.id)
                .where(
                    AnalysisQueueItem.status == QueueStatus.PENDING.value,
                    AnalysisQueueItem.attempt_count < AnalysisQueueItem.max_attempts,
                )
                .order_by(
                    AnalysisQueueItem.priority.desc(),
                    AnalysisQueueItem.created_at.asc(),
                )
                .limit(count)
            )
            .scalars()
            .all()
        )
        if not candidate_ids:
            return []

        self.session.execute(
            update(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.id.in_(candidate_ids),
                AnalysisQueueItem.status == QueueStatus.PENDING.value,
            )
            .values(
                status=QueueStatus.CLAIMED.value,
                claimed_by=worker_id,
                claimed_at=now,
                attempt_count=AnalysisQueueItem.attempt_count + 1,
            )
            .execution_options(synchronize_session=False)
        )

        claimed = (
            self.session.execute(
                select(AnalysisQueueItem)
                .where(
                    AnalysisQueueItem.id.in_(candidate_ids),
                    AnalysisQueueItem.status == QueueStatus.CLAIMED.value,
                    AnalysisQueueItem.claimed_by == worker_id,
                    AnalysisQueueItem.claimed_at == now,
                )
                .order_by(
                    AnalysisQueueItem.priority.desc(),
                    AnalysisQueueItem.created_at.asc(),
                )
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )

        if claimed:
            logger.debug(f"Worker {worker_id} claimed {len(claimed)} queue items")
        return list(claimed)

    def _current_status(self, item_id: uuid.UUID) -> Optional[str]:
        return self.session.execute(
            select(AnalysisQueueItem.status).where(AnalysisQueueItem.id == item_id)
        ).scalar_one_or_none()

    def _transition_claimed(self, item_id: uuid.UUID, **values) -> None:
        result = self.session.execute(
            update(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.id == item_id,
                AnalysisQueueItem.status == QueueStatus.CLAIMED.value,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise NotClaimedError(item_id, self._current_status(item_id))

    def mark_completed(
        self,
        item_id: uuid.UUID,
        result_json: str,
        backend: Optional[str] = None,
        model: Optional[str] = None,
        analysis_version: Optional[str] = None,
    ) -> None:
        """
        Record a backend result for a claimed item.

        Raises:
            NotClaimedError: If the item is not currently claimed
        """
        self._transition_claimed(
            item_id,
            status=QueueStatus.COMPLETED.value,
            result_json=result_json,
            backend=backend,
            model=model,
            analysis_version=analysis_version,
            completed_at=self.clock(),
            error_message=None,
        )

    def mark_failed(self, item_id: uuid.UUID, error: str) -> None:
        """
        Fail a claimed item. The attempt was already counted at claim time.

        Raises:
            NotClaimedError: If the item is not currently claimed
        """
        self._transition_claimed(
            item_id,
            status=QueueStatus.FAILED.value,
            error_message=error,
            completed_at=self.clock(),
        )
        logger.warning(f"Analysis item {item_id} failed: {error}")

    def mark_results_applied(self, item_id: uuid.UUID) -> bool:
        """Set the idempotency gate. Returns False if it was already set."""
        result = self.session.execute(
            update(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.id == item_id,
                AnalysisQueueItem.results_applied_at.is_(None),
            )
            .values(results_applied_at=self.clock())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    def mark_result_application_failed(self, item_id: uuid.UUID, error: str) -> bool:
        """
        Permanently fail an item whose result cannot be applied.

        Sets status=failed and ``results_applied_at`` together so the result is
        never picked up for reprocessing again.
        """
        now = self.clock()
        result = self.session.execute(
            update(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.id == item_id,
                AnalysisQueueItem.results_applied_at.is_(None),
            )
            .values(
                status=QueueStatus.FAILED.value,
                error_message=error,
                results_applied_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            logger.warning(f"Result for analysis item {item_id} not applicable: {error}")
        return result.rowcount > 0

    def release_stale_claims(self, older_than: timedelta) -> int:
        """
        Return long-running claims to pending so another worker can retry.

        Items already at their attempt limit stay claimed; see
        ``fail_exhausted_claims``.

        Returns:
            Number of items released
        """
        cutoff = self.clock() - older_than
        result = self.session.execute(
            update(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.status == QueueStatus.CLAIMED.value,
                AnalysisQueueItem.claimed_at < cutoff,
                AnalysisQueueItem.attempt_count < AnalysisQueueItem.max_attempts,
            )
            .values(
                status=QueueStatus.PENDING.value,
                claimed_by=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session="fetch")
        )

        if result.rowcount > 0:
            logger.warning(f"Released {result.rowcount} stale analysis claims")

        return result.rowcount

    def list_exhausted_claims(self, older_than: timedelta) -> Sequence[AnalysisQueueItem]:
        """Stale claims that cannot be retried because attempts are used up."""
        cutoff = self.clock() - older_than
        stmt = (
            select(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.status == QueueStatus.CLAIMED.value,
                AnalysisQueueItem.claimed_at < cutoff,
                AnalysisQueueItem.attempt_count >= AnalysisQueueItem.max_attempts,
            )
            .order_by(AnalysisQueueItem.claimed_at.asc())
        )
        return self.session.execute(stmt).scalars().all()

    def fail_exhausted_claims(self, older_than: timedelta) -> int:
        """
        Explicitly fail stale claims stuck at their attempt limit.

        Returns:
            Number of items failed
        """
        failed = 0
        for item in self.list_exhausted_claims(older_than):
            error = AttemptsExhaustedError(item.id, item.attempt_count)
            self.mark_failed(item.id, str(error))
            failed += 1
        return failed

    def delete_old_items(self, older_than: timedelta) -> int:
        """
        Purge terminal items whose results have been applied.

        Work whose effects are not durably applied is never deleted.
        """
        cutoff = self.clock() - older_than
        result = self.session.execute(
            delete(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.status.in_(TERMINAL_QUEUE_STATUSES),
                AnalysisQueueItem.completed_at < cutoff,
                AnalysisQueueItem.results_applied_at.is_not(None),
            )
            .execution_options(synchronize_session="fetch")
        )

        if result.rowcount > 0:
            logger.info(f"Purged {result.rowcount} analysis items older than {older_than}")

        return result.rowcount

    def list_pending(self, limit: Optional[int] = None) -> Sequence[AnalysisQueueItem]:
        stmt = (
            select(AnalysisQueueItem)
            .where(AnalysisQueueItem.status == QueueStatus.PENDING.value)
            .order_by(
                AnalysisQueueItem.priority.desc(), AnalysisQueueItem.created_at.asc()
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.execute(stmt).scalars().all()

    def list_unprocessed_completed(self) -> Sequence[AnalysisQueueItem]:
        """Completed items whose results have not been merged yet."""
        stmt = (
            select(AnalysisQueueItem)
            .where(
                AnalysisQueueItem.status == QueueStatus.COMPLETED.value,
                AnalysisQueueItem.results_applied_at.is_(None),
            )
            .order_by(AnalysisQueueItem.completed_at.asc())
        )
        return self.session.execute(stmt).scalars().all()

    def get_stats(self) -> QueueStats:
        results = self.session.execute(
            select(AnalysisQueueItem.status, func.count(AnalysisQueueItem.id)).group_by(
                AnalysisQueueItem.status
            )
        ).all()

        stats = QueueStats()
        for status, count in results:
            if status == QueueStatus.PENDING.value:
                stats.pending = count
            elif status == QueueStatus.CLAIMED.value:
                stats.claimed = count
            elif status == QueueStatus.COMPLETED.value:
                stats.completed = count
            elif status == QueueStatus.FAILED.value:
                stats.failed = count
            stats.total += count

        stats.unapplied = len(self.list_unprocessed_completed())
        return stats
