"""
Analysis orchestration: queue conversations, run claimed batches through the
configured backend, record per-item results and apply them.

No database transaction is held open while the backend runs; claiming,
completing and failing each happen in their own short transaction.
"""

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterable, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from retain.analysis.batch import run_with_split
from retain.analysis.payload import ConversationData
from retain.analysis.processor import ResultProcessor
from retain.analysis.runner import AnalysisRunner, ProviderAnalysisRunner
from retain.config import Settings, settings as default_settings
from retain.db.connection import session_scope
from retain.db.repositories.analysis_queue import AnalysisQueueRepository
from retain.db.repositories.conversation import ConversationRepository
from retain.exceptions import (
    BackendError,
    ConflictError,
    ConsentRequiredError,
    InvalidOutputError,
    NotClaimedError,
    PayloadTooLargeError,
    RetainError,
    ValidationError,
)
from retain.models.db import AnalysisQueueItem, AnalysisType, Conversation
from retain.models.results import BATCH_MODELS, to_result_json
from retain.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

NO_RESULT_ERROR = "No result returned for this queue item"
DROPPED_ERROR = "Conversation dropped due to context window truncation"
DEDUPE_QUEUE_ERROR = "Dedupe analysis operates on learnings and cannot be processed per conversation"

DEFAULT_SCAN_TYPES = (AnalysisType.LEARNING.value, AnalysisType.WORKFLOW.value)


@dataclass
class ScanScope:
    """Which conversations a full scan covers. ``None``/empty means no restriction."""

    time_window_days: Optional[int] = None
    project_path: Optional[str] = None
    providers: frozenset[str] = frozenset()


@dataclass
class BatchOutcome:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    applied: int = 0


@dataclass
class FullScanProgress:
    total: int = 0
    processed: int = 0
    queued: int = 0
    cancelled: bool = False
    started_at: float = field(default_factory=time.monotonic)

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 1.0
        return min(1.0, self.processed / self.total)

    @property
    def eta_seconds(self) -> Optional[float]:
        if self.processed == 0 or self.total == 0:
            return None
        elapsed = max(time.monotonic() - self.started_at, 1.0)
        rate = self.processed / elapsed
        return (self.total - self.processed) / rate


FullScanCallback = Callable[[FullScanProgress], None]


def default_worker_id() -> str:
    return f"retain-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class AnalysisOrchestrator:
    """Coordinates the queue, the analysis runner and the result processor."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        runner: Optional[AnalysisRunner] = None,
        processor: Optional[ResultProcessor] = None,
        config: Optional[Settings] = None,
        clock: Clock = utcnow,
        worker_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.config = config or default_settings
        self.runner = runner or ProviderAnalysisRunner(self.config)
        self.processor = processor or ResultProcessor(session_factory, clock=clock)
        self.clock = clock
        self.worker_id = worker_id or default_worker_id()

    def _queue(self, session: Session) -> AnalysisQueueRepository:
        return AnalysisQueueRepository(session, clock=self.clock)

    # ===== Queueing =====

    def queue_analysis(
        self,
        conversation_ids: Iterable[uuid.UUID],
        analysis_type: str,
        priority: int = 0,
    ) -> int:
        """
        Enqueue one item per conversation.

        Conversations that already have an active item of this type are
        skipped. Returns the number of new items.
        """
        if analysis_type == AnalysisType.DEDUPE.value:
            raise ValidationError(DEDUPE_QUEUE_ERROR)

        queued = 0
        with session_scope(self.session_factory) as session:
            queue = self._queue(session)
            for conversation_id in conversation_ids:
                try:
                    queue.enqueue(conversation_id, analysis_type, priority=priority)
                    queued += 1
                except ConflictError:
                    logger.debug(
                        f"{analysis_type} already scheduled for conversation {conversation_id}"
                    )
        return queued

    def pending_count(self) -> int:
        with session_scope(self.session_factory) as session:
            return self._queue(session).get_stats().pending

    # ===== Batch processing =====

    def process_queue_batch(self, batch_size: Optional[int] = None) -> BatchOutcome:
        """
        Claim up to ``batch_size`` items, analyze them grouped by type and apply
        the results.

        Raises:
            ConsentRequiredError: If cloud analysis has not been allowed
        """
        if not self.config.allow_cloud_analysis:
            raise ConsentRequiredError()

        batch_size = batch_size or self.config.queue_batch_size
        with session_scope(self.session_factory) as session:
            claimed = self._queue(session).claim_pending_items(batch_size, self.worker_id)

        outcome = BatchOutcome(claimed=len(claimed))
        if not claimed:
            return outcome

        groups: dict[str, list[AnalysisQueueItem]] = {}
        for item in claimed:
            groups.setdefault(item.analysis_type, []).append(item)

        for analysis_type, items in groups.items():
            if analysis_type not in BATCH_MODELS or analysis_type == AnalysisType.DEDUPE.value:
                reason = (
                    DEDUPE_QUEUE_ERROR
                    if analysis_type == AnalysisType.DEDUPE.value
                    else f"Unknown analysis type: {analysis_type}"
                )
                for item in items:
                    outcome.failed += self._fail(item.id, reason)
                continue
            self._process_group(analysis_type, items, outcome)

        outcome.applied = self.processor.process_all_unprocessed()
        logger.info(
            f"Batch done: claimed={outcome.claimed} completed={outcome.completed} "
            f"failed={outcome.failed} applied={outcome.applied}"
        )
        return outcome

    def _process_group(
        self, analysis_type: str, items: list[AnalysisQueueItem], outcome: BatchOutcome
    ) -> None:
        conversations = self._load_conversations([item.conversation_id for item in items])
        settled: set[uuid.UUID] = set()

        def on_oversized(item: AnalysisQueueItem, error: PayloadTooLargeError) -> None:
            settled.add(item.id)
            outcome.failed += self._fail(item.id, str(error))

        def on_failed(chunk: list[AnalysisQueueItem], error: BackendError) -> None:
            for item in chunk:
                settled.add(item.id)
                outcome.failed += self._fail(item.id, error.diagnostic)

        try:
            result = run_with_split(
                self.runner,
                self.config.analysis_backend,
                items,
                conversations,
                analysis_type,
                payload_mode=self.config.analysis_payload_mode,
                max_payload_bytes=self.config.analysis_max_payload_bytes,
                on_oversized=on_oversized,
                on_failed=on_failed,
            )
            batch_items = self._parse_batch(analysis_type, result.json_output)
        except RetainError as e:
            diagnostic = getattr(e, "diagnostic", None) or str(e)
            logger.error(f"{analysis_type} batch of {len(items)} failed: {e}")
            for item in items:
                if item.id not in settled:
                    outcome.failed += self._fail(item.id, diagnostic)
            return

        by_id = {str(item.id): item for item in items}
        included = {str(qid) for qid in result.included_queue_ids}
        for batch_item in batch_items:
            item = by_id.get(batch_item.queue_id)
            if item is None or batch_item.queue_id not in included or item.id in settled:
                continue
            try:
                with session_scope(self.session_factory) as session:
                    self._queue(session).mark_completed(
                        item.id,
                        to_result_json(batch_item),
                        backend=result.backend,
                        model=result.model,
                    )
                settled.add(item.id)
                outcome.completed += 1
            except NotClaimedError as e:
                logger.warning(f"Discarding late result: {e}")
                settled.add(item.id)

        dropped = {str(qid) for qid in result.dropped_queue_ids}
        for item in items:
            if item.id in settled:
                continue
            reason = DROPPED_ERROR if str(item.id) in dropped else NO_RESULT_ERROR
            outcome.failed += self._fail(item.id, reason)

    def _parse_batch(self, analysis_type: str, json_output: str) -> list:
        try:
            elements = json.loads(json_output)
        except json.JSONDecodeError as e:
            raise InvalidOutputError(f"{e.msg} at position {e.pos}") from e
        if not isinstance(elements, list):
            elements = [elements]

        model = BATCH_MODELS[analysis_type]
        parsed = []
        for element in elements:
            try:
                parsed.append(model.model_validate(element))
            except PydanticValidationError as e:
                logger.debug(f"Skipping malformed {analysis_type} result: {e.error_count()} errors")
        return parsed

    def _load_conversations(self, ids: Sequence[uuid.UUID]) -> list[ConversationData]:
        with session_scope(self.session_factory) as session:
            repo = ConversationRepository(session, clock=self.clock)
            data = []
            for conversation_id in dict.fromkeys(ids):
                conversation = repo.get(conversation_id)
                if conversation is None:
                    continue
                data.append(
                    ConversationData.from_models(conversation, repo.get_messages(conversation_id))
                )
            return data

    def _fail(self, item_id: uuid.UUID, error: str) -> int:
        try:
            with session_scope(self.session_factory) as session:
                self._queue(session).mark_failed(item_id, error)
            return 1
        except NotClaimedError as e:
            logger.warning(f"Could not fail item: {e}")
            return 0

    # ===== Full scan =====

    def scoped_conversation_ids(self, scope: ScanScope) -> list[uuid.UUID]:
        stmt = select(Conversation.id).where(Conversation.deleted_at.is_(None))
        if scope.time_window_days is not None:
            cutoff = self.clock() - timedelta(days=scope.time_window_days)
            stmt = stmt.where(Conversation.updated_at >= cutoff)
        if scope.project_path is not None:
            stmt = stmt.where(Conversation.project_path == scope.project_path)
        if scope.providers:
            stmt = stmt.where(Conversation.provider.in_(sorted(scope.providers)))
        stmt = stmt.order_by(Conversation.updated_at.desc())

        with session_scope(self.session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    def run_full_scan(
        self,
        types: Sequence[str] = DEFAULT_SCAN_TYPES,
        batch_size: Optional[int] = None,
        scope: Optional[ScanScope] = None,
        progress_callback: Optional[FullScanCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FullScanProgress:
        """
        Queue every in-scope conversation for ``types`` and drain the queue.

        Stops early when ``cancel_event`` is set; already-claimed work is left
        to finish or be reaped.

        Raises:
            ConsentRequiredError: If cloud analysis has not been allowed
        """
        if not self.config.allow_cloud_analysis:
            raise ConsentRequiredError()

        conversation_ids = self.scoped_conversation_ids(scope or ScanScope())
        progress = FullScanProgress()
        if not conversation_ids:
            return progress

        for analysis_type in types:
            if analysis_type == AnalysisType.DEDUPE.value:
                continue
            progress.queued += self.queue_analysis(conversation_ids, analysis_type)

        progress.total = self.pending_count()
        logger.info(
            f"Full scan: {len(conversation_ids)} conversations, {progress.total} pending items"
        )

        while True:
            pending = self.pending_count()
            progress.processed = max(0, progress.total - pending)
            if progress_callback:
                progress_callback(progress)
            if pending == 0:
                break
            if cancel_event is not None and cancel_event.is_set():
                progress.cancelled = True
                logger.info(f"Full scan cancelled after {progress.processed}/{progress.total}")
                break
            if self.process_queue_batch(batch_size).claimed == 0:
                # Remaining items are at their attempt limit
                break

        return progress
