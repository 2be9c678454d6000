"""Deterministic learning scan over stored conversations."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from retain.db.repositories.conversation import ConversationRepository
from retain.db.repositories.learning import LearningCandidate, LearningRepository
from retain.learning.content_filter import is_meta_conversation
from retain.learning.detector import (
    DETECTOR_SOURCE,
    DETECTOR_VERSION,
    CorrectionDetector,
)
from retain.models.db import Conversation
from retain.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class LearningScanStats:
    conversations_scanned: int = 0
    messages_scanned: int = 0
    detections: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def learnings_stored(self) -> int:
        return sum(
            count
            for outcome, count in self.outcomes.items()
            if outcome in ("inserted", "merged")
        )


class LearningScanService:
    """Runs the correction detector and records what it finds."""

    def __init__(
        self,
        session: Session,
        detector: Optional[CorrectionDetector] = None,
        clock: Clock = utcnow,
        cancel_check_every: int = 25,
    ):
        self.session = session
        self.detector = detector or CorrectionDetector()
        self.conversations = ConversationRepository(session, clock=clock)
        self.learnings = LearningRepository(session, clock=clock)
        self.cancel_check_every = max(1, cancel_check_every)

    def scan_conversation(
        self, conversation: Conversation, stats: Optional[LearningScanStats] = None
    ) -> LearningScanStats:
        stats = stats or LearningScanStats()
        messages = self.conversations.get_messages(conversation.id)
        stats.conversations_scanned += 1
        stats.messages_scanned += len(messages)

        if is_meta_conversation(conversation, messages):
            logger.debug(f"Skipping meta conversation {conversation.id}")
            return stats

        for detection in self.detector.analyze(conversation.id, messages):
            stats.detections += 1
            result = self.learnings.record_detection(
                LearningCandidate(
                    rule=detection.rule,
                    learning_type=detection.learning_type,
                    confidence=detection.confidence,
                    conversation_id=conversation.id,
                    detected_at=detection.timestamp,
                    message_id=detection.message_id,
                    pattern=detection.pattern,
                    context=detection.context,
                    evidence=detection.evidence,
                    source=DETECTOR_SOURCE,
                    detector_version=DETECTOR_VERSION,
                )
            )
            stats.outcomes[result.outcome] = stats.outcomes.get(result.outcome, 0) + 1
        return stats

    def scan_conversation_id(self, conversation_id: uuid.UUID) -> LearningScanStats:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ValueError(f"Conversation {conversation_id} not found")
        return self.scan_conversation(conversation)

    def scan_all(
        self, cancel_event: Optional[threading.Event] = None
    ) -> LearningScanStats:
        """
        Scan every non-deleted conversation, oldest first.

        Detections no newer than what a learning already recorded are stale,
        so a repeated scan leaves evidence counts unchanged.
        """
        stats = LearningScanStats()
        conversations = list(reversed(self.conversations.list_conversations()))
        for index, conversation in enumerate(conversations):
            if (
                cancel_event is not None
                and index % self.cancel_check_every == 0
                and cancel_event.is_set()
            ):
                stats.cancelled = True
                logger.info(f"Learning scan cancelled after {index} conversations")
                break
            self.scan_conversation(conversation, stats)

        logger.info(
            f"Learning scan: {stats.conversations_scanned} conversations, "
            f"{stats.detections} detections, {stats.learnings_stored} stored"
        )
        return stats
