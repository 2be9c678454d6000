"""Workflow signature scanning and cluster reporting."""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from retain.db.repositories.conversation import ConversationRepository
from retain.db.repositories.workflow_signature import (
    WorkflowCluster,
    WorkflowSignatureRepository,
)
from retain.learning.content_filter import is_meta_conversation
from retain.models.db import Conversation, WorkflowSignature
from retain.utils.time import Clock, utcnow
from retain.workflow import refiner
from retain.workflow.extractor import WorkflowCandidate, WorkflowSignatureExtractor

logger = logging.getLogger(__name__)

EXCLUDED_CLUSTER_ACTIONS = ("prime", "other")
EXCLUDED_CLUSTER_ARTIFACTS = ("none", "", "unknown")
MINIMUM_CLUSTER_COUNT = 3


@dataclass
class ScanProgress:
    """Progress of a bulk scan: processed/total and an ETA estimate."""

    total: int
    processed: int = 0
    stored: int = 0
    cancelled: bool = False
    started_at: float = field(default_factory=time.monotonic)

    @property
    def eta_seconds(self) -> Optional[float]:
        if self.processed == 0 or self.total == 0:
            return None
        elapsed = time.monotonic() - self.started_at
        remaining = max(0, self.total - self.processed)
        return elapsed / self.processed * remaining


ProgressCallback = Callable[[ScanProgress], None]


def build_context(conversation: Conversation, snippet: Optional[str]) -> str:
    parts = [conversation.title, conversation.summary, conversation.preview_text, snippet]
    return " ".join(p.strip() for p in parts if p and p.strip())


class WorkflowSignatureService:
    """
    Runs the deterministic extractor over stored conversations.

    Bulk scans check ``cancel_event`` every ``cancel_check_every`` items. With
    ``commit_progress`` set, the session is committed at the same cadence so an
    interrupted scan can be resumed with ``scan_missing_signatures``.
    """

    def __init__(
        self,
        session: Session,
        extractor: Optional[WorkflowSignatureExtractor] = None,
        clock: Clock = utcnow,
        cancel_check_every: int = 25,
        commit_progress: bool = False,
    ):
        self.session = session
        self.extractor = extractor or WorkflowSignatureExtractor()
        self.conversations = ConversationRepository(session, clock=clock)
        self.signatures = WorkflowSignatureRepository(session, clock=clock)
        self.cancel_check_every = max(1, cancel_check_every)
        self.commit_progress = commit_progress

    def scan_conversation(self, conversation: Conversation) -> Optional[WorkflowSignature]:
        messages = self.conversations.get_messages(conversation.id)
        if is_meta_conversation(conversation, messages):
            logger.debug(f"Skipping meta conversation {conversation.id}")
            return None

        candidate = self.extractor.extract(conversation, messages)
        if candidate is None:
            return None
        return self._store(conversation, candidate)

    def _store(
        self, conversation: Conversation, candidate: WorkflowCandidate
    ) -> Optional[WorkflowSignature]:
        context = build_context(conversation, candidate.snippet)
        if refiner.should_exclude(
            candidate.action, candidate.artifact, candidate.snippet, context
        ):
            logger.debug(f"Excluded {candidate.signature} for {conversation.id}")
            return None

        artifact = refiner.refine_artifact(
            candidate.action, candidate.artifact, candidate.domains, context
        )
        return self.signatures.upsert(
            conversation.id,
            action=candidate.action,
            artifact=artifact if artifact is not None else candidate.artifact,
            domains=candidate.domains,
            snippet=candidate.snippet,
            confidence=candidate.confidence,
            is_priming=candidate.is_priming,
            source=candidate.source,
            detector_version=candidate.detector_version,
            version=candidate.version,
        )

    def scan_conversations(
        self,
        ids: Iterable[uuid.UUID],
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScanProgress:
        ids = list(ids)
        progress = ScanProgress(total=len(ids))

        for index, conversation_id in enumerate(ids):
            if index and index % self.cancel_check_every == 0:
                if self.commit_progress:
                    self.session.commit()
                if cancel_event is not None and cancel_event.is_set():
                    progress.cancelled = True
                    logger.info(f"Workflow scan cancelled at {index}/{progress.total}")
                    break

            conversation = self.conversations.get(conversation_id)
            if conversation is not None and not conversation.is_deleted:
                if self.scan_conversation(conversation) is not None:
                    progress.stored += 1
            progress.processed += 1
            if progress_callback:
                progress_callback(progress)

        if self.commit_progress:
            self.session.commit()
        logger.info(
            f"Workflow scan: {progress.processed}/{progress.total} conversations, "
            f"{progress.stored} signatures"
        )
        return progress

    def scan_all(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScanProgress:
        ids = [c.id for c in self.conversations.list_conversations()]
        return self.scan_conversations(ids, progress_callback, cancel_event)

    def reset_and_scan_all(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScanProgress:
        self.signatures.delete_all()
        return self.scan_all(progress_callback, cancel_event)

    def scan_missing_signatures(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScanProgress:
        """Scan only conversations that have no signature yet."""
        ids = self.signatures.fetch_conversation_ids_missing_signature()
        return self.scan_conversations(ids, progress_callback, cancel_event)

    def top_clusters(self, limit: int = 10) -> list[WorkflowCluster]:
        return self.signatures.fetch_top_clusters(
            limit=limit,
            excluded_actions=EXCLUDED_CLUSTER_ACTIONS,
            excluded_artifacts=EXCLUDED_CLUSTER_ARTIFACTS,
            minimum_count=MINIMUM_CLUSTER_COUNT,
        )

    def priming_clusters(self, limit: int = 10) -> list[WorkflowCluster]:
        return self.signatures.fetch_clusters("prime", limit=limit)
