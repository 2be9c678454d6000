"""
Analysis suggestion repository.

Suggestions are staged proposals awaiting human review; applying an
approved suggestion is done by ``retain.analysis.processor``.
"""

import json
import logging
import uuid
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from retain.db.repositories.base import BaseRepository
from retain.models.db import AnalysisSuggestion, ReviewStatus, SuggestionType
from retain.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


def encode_source_ids(source_ids: list[str]) -> str:
    """Canonical JSON encoding of merge sources, used as part of the dedup key."""
    return json.dumps(list(source_ids))


class SuggestionRepository(BaseRepository[AnalysisSuggestion]):
    """Repository for AnalysisSuggestion."""

    def __init__(self, session: Session, clock: Clock = utcnow):
        super().__init__(AnalysisSuggestion, session)
        self.clock = clock

    def create_suggestion(
        self,
        queue_id: uuid.UUID,
        suggestion_type: str,
        suggested_value: str,
        target_id: Optional[str] = None,
        original_value: Optional[str] = None,
        confidence: Optional[float] = None,
        reasoning: Optional[str] = None,
        merge_source_ids: Optional[list[str]] = None,
    ) -> AnalysisSuggestion:
        suggestion = AnalysisSuggestion(
            id=uuid.uuid4(),
            queue_id=queue_id,
            suggestion_type=suggestion_type,
            target_id=target_id,
            suggested_value=suggested_value,
            original_value=original_value,
            confidence=confidence,
            reasoning=reasoning,
            merge_source_ids=(
                encode_source_ids(merge_source_ids) if merge_source_ids else None
            ),
            status=ReviewStatus.PENDING.value,
            created_at=self.clock(),
        )
        self.session.add(suggestion)
        self.session.flush()
        logger.info(f"Created {suggestion_type} suggestion {suggestion.id}")
        return suggestion

    def exists_for(
        self, queue_id: uuid.UUID, suggestion_type: str, target_id: Optional[str]
    ) -> bool:
        stmt = select(AnalysisSuggestion.id).where(
            AnalysisSuggestion.queue_id == queue_id,
            AnalysisSuggestion.suggestion_type == suggestion_type,
            AnalysisSuggestion.target_id == target_id,
        )
        return self.session.execute(stmt).first() is not None

    def exists_merge(self, queue_id: uuid.UUID, source_ids: list[str]) -> bool:
        stmt = select(AnalysisSuggestion.id).where(
            AnalysisSuggestion.queue_id == queue_id,
            AnalysisSuggestion.suggestion_type == SuggestionType.MERGE_LEARNINGS.value,
            AnalysisSuggestion.merge_source_ids == encode_source_ids(source_ids),
        )
        return self.session.execute(stmt).first() is not None

    def list_pending(self, limit: Optional[int] = None) -> Sequence[AnalysisSuggestion]:
        stmt = (
            select(AnalysisSuggestion)
            .where(AnalysisSuggestion.status == ReviewStatus.PENDING.value)
            .order_by(AnalysisSuggestion.created_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.execute(stmt).scalars().all()

    def set_status(
        self,
        suggestion_id: uuid.UUID,
        status: str,
        reject_reason: Optional[str] = None,
    ) -> bool:
        result = self.session.execute(
            update(AnalysisSuggestion)
            .where(AnalysisSuggestion.id == suggestion_id)
            .values(status=status, reviewed_at=self.clock(), reject_reason=reject_reason)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    def approve(self, suggestion_id: uuid.UUID) -> bool:
        return self.set_status(suggestion_id, ReviewStatus.APPROVED.value)

    def reject(self, suggestion_id: uuid.UUID, reason: Optional[str] = None) -> bool:
        return self.set_status(suggestion_id, ReviewStatus.REJECTED.value, reason)
