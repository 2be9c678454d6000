"""
Learning repository.

Stores learnings under the logical key (normalized_rule, learning_type) and
merges repeated detections into the existing row instead of duplicating it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from retain.db.repositories.base import BaseRepository
from retain.learning import normalizer
from retain.models.db import (
    Conversation,
    Learning,
    LearningScope,
    LearningType,
    Message,
    ReviewStatus,
)
from retain.utils.hashing import rule_hash
from retain.utils.time import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class LearningCandidate:
    """A detected learning on its way into storage."""

    rule: str
    learning_type: str
    confidence: float
    conversation_id: uuid.UUID
    detected_at: datetime
    message_id: Optional[uuid.UUID] = None
    pattern: str = ""
    context: Optional[str] = None
    evidence: Optional[str] = None
    source: Optional[str] = None
    detector_version: Optional[str] = None
    source_queue_id: Optional[uuid.UUID] = None


@dataclass
class RecordResult:
    """What ``record_detection`` did with a candidate."""

    outcome: str  # inserted, merged, stale, reviewed, duplicate, rejected
    learning: Optional[Learning] = field(default=None, repr=False)

    @property
    def stored(self) -> bool:
        return self.outcome in ("inserted", "merged")


class LearningRepository(BaseRepository[Learning]):
    """Repository for Learning."""

    def __init__(self, session: Session, clock: Clock = utcnow):
        super().__init__(Learning, session)
        self.clock = clock

    # ===== Detection upsert =====

    def find_mergeable(
        self,
        normalized_rule: str,
        learning_type: str,
        extracted_rule: Optional[str] = None,
    ) -> Optional[Learning]:
        """The stored learning a detection of this rule would merge into."""
        match = Learning.normalized_rule == normalized_rule
        if extracted_rule is not None:
            match = or_(match, Learning.extracted_rule == extracted_rule)
        stmt = (
            select(Learning)
            .where(
                match,
                Learning.learning_type == learning_type,
            )
            .order_by(Learning.created_at.asc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def resolve_scope(
        self,
        conversation_id: uuid.UUID,
        normalized_rule: str,
        extracted_rule: str,
        learning_type: str,
    ) -> str:
        """
        Global if the rule was seen across >= 2 projects or >= 2 providers.

        Combines the conversations of existing learnings for the same rule
        with the conversation of the current detection.
        """
        current = self.session.execute(
            select(Conversation.project_path, Conversation.provider).where(
                Conversation.id == conversation_id
            )
        ).first()
        if current is None:
            return LearningScope.PROJECT.value

        rows = self.session.execute(
            select(Conversation.project_path, Conversation.provider)
            .join(Learning, Learning.conversation_id == Conversation.id)
            .where(
                or_(
                    Learning.normalized_rule == normalized_rule,
                    Learning.extracted_rule == extracted_rule,
                ),
                Learning.learning_type == learning_type,
            )
        ).all()

        projects: set[str] = set()
        providers: set[str] = set()
        for project_path, provider in [*rows, current]:
            if project_path:
                projects.add(project_path)
            if provider:
                providers.add(provider)

        if len(projects) >= 2 or len(providers) >= 2:
            return LearningScope.GLOBAL.value
        return LearningScope.PROJECT.value

    def record_detection(self, candidate: LearningCandidate) -> RecordResult:
        """
        Insert a new learning or merge a repeated detection into an existing one.

        Rules:
        - Candidates failing ``normalizer.should_store`` are rejected.
        - Existing learnings that were reviewed (approved/rejected) are left alone.
        - A detection from the same queue item is a replay and changes nothing.
        - A detection no newer than ``last_detected_at`` is stale and changes
          nothing, so re-scanning already recorded conversations is a no-op.
        - A newer detection merges: confidence = max, evidence_count + 1,
          last_detected_at/context/message/conversation move to the detection.
        - Scope only widens from project to global.
        """
        if not normalizer.should_store(
            candidate.rule, candidate.learning_type, candidate.confidence
        ):
            return RecordResult("rejected")

        detected_at = ensure_utc(candidate.detected_at)
        normalized = normalizer.normalize(candidate.rule)
        if normalizer.is_task_specific(candidate.rule):
            scope = LearningScope.PROJECT.value
        else:
            scope = self.resolve_scope(
                candidate.conversation_id,
                normalized,
                candidate.rule,
                candidate.learning_type,
            )

        existing = self.find_mergeable(
            normalized, candidate.learning_type, candidate.rule
        )
        if existing is None:
            return RecordResult("inserted", self._insert(candidate, normalized, scope))

        if existing.status != ReviewStatus.PENDING.value:
            return RecordResult("reviewed", existing)
        if (
            candidate.source_queue_id is not None
            and existing.source_queue_id == candidate.source_queue_id
        ):
            return RecordResult("duplicate", existing)
        if detected_at <= existing.last_detected_at:
            return RecordResult("stale", existing)

        existing.confidence = max(existing.confidence, candidate.confidence)
        existing.evidence_count += 1
        if existing.scope == LearningScope.PROJECT.value and scope == LearningScope.GLOBAL.value:
            existing.scope = LearningScope.GLOBAL.value
        if existing.evidence is None and candidate.evidence:
            existing.evidence = candidate.evidence
        if existing.source is None:
            existing.source = candidate.source
        if existing.detector_version is None:
            existing.detector_version = candidate.detector_version

        existing.last_detected_at = detected_at
        if candidate.context is not None:
            existing.context = candidate.context
        existing.message_id = candidate.message_id
        existing.conversation_id = candidate.conversation_id
        self.session.flush()
        logger.debug(
            f"Merged detection into learning {existing.id} "
            f"(evidence_count={existing.evidence_count})"
        )
        return RecordResult("merged", existing)

    def _insert(
        self, candidate: LearningCandidate, normalized: str, scope: str
    ) -> Learning:
        learning = Learning(
            id=uuid.uuid4(),
            conversation_id=candidate.conversation_id,
            message_id=candidate.message_id,
            learning_type=candidate.learning_type,
            pattern=candidate.pattern or "",
            extracted_rule=candidate.rule,
            normalized_rule=normalized,
            confidence=candidate.confidence,
            context=candidate.context,
            evidence=candidate.evidence,
            evidence_count=1,
            status=ReviewStatus.PENDING.value,
            scope=scope,
            source=candidate.source,
            detector_version=candidate.detector_version,
            source_queue_id=candidate.source_queue_id,
            rule_hash=rule_hash(candidate.rule),
            created_at=self.clock(),
            last_detected_at=ensure_utc(candidate.detected_at),
        )
        self.session.add(learning)
        self.session.flush()
        logger.info(f"Created learning {learning.id}: {candidate.rule!r}")
        return learning

    def exists_for_queue(self, queue_id: uuid.UUID, hash_value: str) -> bool:
        stmt = select(Learning.id).where(
            Learning.source_queue_id == queue_id, Learning.rule_hash == hash_value
        )
        return self.session.execute(stmt).first() is not None

    # ===== Review =====

    def list_pending(
        self, include_implicit: bool = False, limit: Optional[int] = None
    ) -> Sequence[Learning]:
        """
        Learnings awaiting review, most recently detected first.

        Positive/implicit learnings are hidden unless requested, and even then
        only once they have been seen at least twice.
        """
        stmt = select(Learning).where(Learning.status == ReviewStatus.PENDING.value)
        if include_implicit:
            stmt = stmt.where(
                or_(
                    Learning.learning_type == LearningType.CORRECTION.value,
                    Learning.evidence_count >= 2,
                )
            )
        else:
            stmt = stmt.where(Learning.learning_type == LearningType.CORRECTION.value)
        stmt = stmt.order_by(Learning.last_detected_at.desc(), Learning.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.execute(stmt).scalars().all()

    def list_approved(self, scope: Optional[str] = None) -> Sequence[Learning]:
        stmt = select(Learning).where(Learning.status == ReviewStatus.APPROVED.value)
        if scope:
            stmt = stmt.where(Learning.scope == scope)
        stmt = stmt.order_by(Learning.evidence_count.desc(), Learning.created_at.asc())
        return self.session.execute(stmt).scalars().all()

    def approve(
        self,
        learning_id: uuid.UUID,
        scope: Optional[str] = None,
        edited_rule: Optional[str] = None,
    ) -> Optional[Learning]:
        learning = self.get(learning_id)
        if learning is None:
            return None
        learning.status = ReviewStatus.APPROVED.value
        learning.reviewed_at = self.clock()
        if scope:
            learning.scope = scope
        if edited_rule and edited_rule.strip():
            learning.extracted_rule = edited_rule.strip()
        self.session.flush()
        return learning

    def reject(self, learning_id: uuid.UUID) -> Optional[Learning]:
        learning = self.get(learning_id)
        if learning is None:
            return None
        learning.status = ReviewStatus.REJECTED.value
        learning.reviewed_at = self.clock()
        self.session.flush()
        return learning

    def approve_all_pending(self) -> int:
        pending = self.list_pending(include_implicit=True)
        now = self.clock()
        for learning in pending:
            learning.status = ReviewStatus.APPROVED.value
            learning.reviewed_at = now
        self.session.flush()
        return len(pending)

    def delete_rejected(self) -> int:
        result = self.session.execute(
            delete(Learning)
            .where(Learning.status == ReviewStatus.REJECTED.value)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def delete_all(self) -> int:
        result = self.session.execute(
            delete(Learning).execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def count_by_status(self) -> dict[str, int]:
        rows = self.session.execute(
            select(Learning.status, func.count(Learning.id)).group_by(Learning.status)
        ).all()
        counts = {status.value: 0 for status in ReviewStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def search(self, query: str, limit: int = 50) -> Sequence[Learning]:
        pattern = f"%{query.strip().lower()}%"
        stmt = (
            select(Learning)
            .where(
                or_(
                    Learning.normalized_rule.like(pattern),
                    func.lower(Learning.extracted_rule).like(pattern),
                )
            )
            .order_by(Learning.last_detected_at.desc())
            .limit(limit)
        )
        return self.session.execute(stmt).scalars().all()

    def detach_missing_messages(self) -> int:
        """
        Null out message references whose message no longer exists.

        Learnings outlive their source message; this keeps the reference
        honest even where the database did not enforce ON DELETE SET NULL.
        """
        result = self.session.execute(
            update(Learning)
            .where(
                Learning.message_id.is_not(None),
                Learning.message_id.not_in(select(Message.id)),
            )
            .values(message_id=None)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            logger.info(f"Detached {result.rowcount} learnings from deleted messages")
        return result.rowcount
