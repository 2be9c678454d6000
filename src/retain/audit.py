"""
Extraction quality audits.

``run_extraction_audit`` rebuilds learnings and workflow signatures from the
stored conversations with the deterministic extractors.

``run_shadow_audit`` compares deterministic extraction with the LLM backend
(minimized and expanded payloads) on a reproducible random sample, without
touching the learning or workflow tables. Each variant is written as JSON
rows plus a ``summary.json``.
"""

import json
import logging
import random
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from retain.analysis.batch import run_with_split
from retain.analysis.payload import ConversationData
from retain.analysis.processor import validate_evidence
from retain.analysis.runner import AnalysisRunner, ProviderAnalysisRunner
from retain.config import Settings, settings as default_settings
from retain.db.repositories.conversation import ConversationRepository
from retain.db.repositories.learning import LearningRepository
from retain.db.repositories.workflow_signature import WorkflowSignatureRepository
from retain.learning import normalizer
from retain.learning.content_filter import is_meta_conversation
from retain.learning.detector import CorrectionDetector, DetectorConfig
from retain.learning.service import LearningScanService
from retain.models.db import (
    AnalysisQueueItem,
    AnalysisType,
    Conversation,
    LearningType,
    Message,
    Role,
    build_signature,
)
from retain.models.results import BATCH_MODELS
from retain.utils.time import Clock, utcnow
from retain.workflow import taxonomy
from retain.workflow.extractor import WorkflowSignatureExtractor
from retain.workflow.service import WorkflowSignatureService

logger = logging.getLogger(__name__)

AUDIT_MIN_CONFIDENCE = 0.8
AUDIT_MAX_PAYLOAD_BYTES = 250_000
PAYLOAD_MODES = ("minimized", "expanded")
VALID_LEARNING_TYPES = {t.value for t in LearningType}


def audit_detector() -> CorrectionDetector:
    return CorrectionDetector(
        DetectorConfig(min_confidence=AUDIT_MIN_CONFIDENCE, enable_positive_feedback=False)
    )


# ===== Extraction audit =====


@dataclass
class ExtractionAuditResult:
    conversations: int = 0
    learning_detections: int = 0
    learnings_stored: int = 0
    signatures_stored: int = 0
    learnings_deleted: int = 0
    signatures_deleted: int = 0


def run_extraction_audit(
    session: Session, reset: bool = False, clock: Clock = utcnow
) -> ExtractionAuditResult:
    """
    Re-run deterministic extraction over every stored conversation.

    With ``reset`` all learnings and workflow signatures are deleted first.
    The caller commits.
    """
    result = ExtractionAuditResult()
    if reset:
        result.learnings_deleted = LearningRepository(session, clock=clock).delete_all()
        result.signatures_deleted = WorkflowSignatureRepository(session, clock=clock).delete_all()
        logger.info(
            f"Audit reset: removed {result.learnings_deleted} learnings, "
            f"{result.signatures_deleted} workflow signatures"
        )

    learning_stats = LearningScanService(session, detector=audit_detector(), clock=clock).scan_all()
    workflow_progress = WorkflowSignatureService(session, clock=clock).scan_all()

    result.conversations = learning_stats.conversations_scanned
    result.learning_detections = learning_stats.detections
    result.learnings_stored = learning_stats.learnings_stored
    result.signatures_stored = workflow_progress.stored
    return result


# ===== Shadow audit =====


@dataclass
class ConversationBundle:
    conversation: Conversation
    messages: list[Message]


@dataclass
class LearningAuditRow:
    variant: str
    payload_mode: str
    conversation_id: str
    type: str
    rule: str
    normalized_rule: str
    confidence: float
    actionable: bool
    task_specific: bool


@dataclass
class WorkflowAuditRow:
    variant: str
    payload_mode: str
    conversation_id: str
    signature: str
    action: str
    artifact: str
    domains: list[str]
    confidence: Optional[float]
    is_priming: bool


@dataclass
class VariantResult:
    learnings: list[LearningAuditRow] = field(default_factory=list)
    workflows: list[WorkflowAuditRow] = field(default_factory=list)
    dropped_queue_ids: set[str] = field(default_factory=set)


@dataclass
class LearningSummary:
    total: int
    by_type: dict[str, int]
    actionable_pct: float
    task_specific_pct: float
    unique_rule_count: int
    duplication_pct: float


@dataclass
class AutomationSummary:
    total: int
    unique_signatures: int
    avg_recurrence: float
    priming_pct: float


@dataclass
class VariantSummary:
    learnings: LearningSummary
    automations: AutomationSummary
    dropped_queue_items: int


@dataclass
class ShadowAuditSummary:
    sample_size: int
    seed: int
    providers: dict[str, int]
    deterministic: VariantSummary
    llm_minimized: Optional[VariantSummary] = None
    llm_expanded: Optional[VariantSummary] = None


def _pct(part: int, total: int) -> float:
    return round(part / total * 100, 1) if total else 0.0


def summarize_learnings(rows: Sequence[LearningAuditRow]) -> LearningSummary:
    total = len(rows)
    unique_rules = {row.normalized_rule.lower() for row in rows}
    return LearningSummary(
        total=total,
        by_type=dict(Counter(row.type for row in rows)),
        actionable_pct=_pct(sum(1 for row in rows if row.actionable), total),
        task_specific_pct=_pct(sum(1 for row in rows if row.task_specific), total),
        unique_rule_count=len(unique_rules),
        duplication_pct=_pct(total - len(unique_rules), total),
    )


def summarize_workflows(rows: Sequence[WorkflowAuditRow]) -> AutomationSummary:
    total = len(rows)
    unique = len({row.signature for row in rows})
    return AutomationSummary(
        total=total,
        unique_signatures=unique,
        avg_recurrence=round(total / unique, 2) if unique else 0.0,
        priming_pct=_pct(sum(1 for row in rows if row.is_priming), total),
    )


def summarize_variant(result: VariantResult) -> VariantSummary:
    return VariantSummary(
        learnings=summarize_learnings(result.learnings),
        automations=summarize_workflows(result.workflows),
        dropped_queue_items=len(result.dropped_queue_ids),
    )


def sample_conversations(
    session: Session, sample_size: int, seed: int
) -> list[ConversationBundle]:
    """
    Pick a reproducible sample of non-meta conversations with a user message.

    The same database, size and seed always give the same sample.
    """
    if sample_size <= 0:
        return []

    repo = ConversationRepository(session)
    conversations = sorted(repo.list_conversations(), key=lambda c: str(c.id))
    random.Random(seed).shuffle(conversations)

    bundles: list[ConversationBundle] = []
    for conversation in conversations:
        if len(bundles) >= sample_size:
            break
        messages = list(repo.get_messages(conversation.id))
        if not any(m.role == Role.USER.value for m in messages):
            continue
        if is_meta_conversation(conversation, messages):
            continue
        bundles.append(ConversationBundle(conversation, messages))
    return bundles


def _learning_row(
    variant: str, payload_mode: str, conversation_id: str, learning_type: str,
    rule: str, confidence: float,
) -> LearningAuditRow:
    return LearningAuditRow(
        variant=variant,
        payload_mode=payload_mode,
        conversation_id=conversation_id,
        type=learning_type,
        rule=rule,
        normalized_rule=normalizer.normalize(rule),
        confidence=confidence,
        actionable=normalizer.is_actionable(rule),
        task_specific=normalizer.is_task_specific(rule),
    )


def run_deterministic_variant(bundles: Sequence[ConversationBundle]) -> VariantResult:
    detector = audit_detector()
    extractor = WorkflowSignatureExtractor()
    result = VariantResult()

    for bundle in bundles:
        conversation_id = str(bundle.conversation.id)
        for detection in detector.analyze(bundle.conversation.id, bundle.messages):
            if normalizer.should_drop(detection.rule):
                continue
            result.learnings.append(
                _learning_row(
                    "deterministic", "deterministic", conversation_id,
                    detection.learning_type, detection.rule, detection.confidence,
                )
            )

        candidate = extractor.extract(bundle.conversation, bundle.messages)
        if candidate is not None:
            result.workflows.append(
                WorkflowAuditRow(
                    variant="deterministic",
                    payload_mode="deterministic",
                    conversation_id=conversation_id,
                    signature=candidate.signature,
                    action=candidate.action,
                    artifact=candidate.artifact or "",
                    domains=sorted(candidate.domains),
                    confidence=candidate.confidence,
                    is_priming=candidate.is_priming,
                )
            )
    return result


def _run_llm_type(
    runner: AnalysisRunner,
    tool: str,
    bundles: Sequence[ConversationBundle],
    conversations: list[ConversationData],
    analysis_type: str,
    payload_mode: str,
) -> tuple[list, dict[str, str], set[str]]:
    # Transient queue items: the audit never writes to the queue
    items = [
        AnalysisQueueItem(
            id=uuid.uuid4(),
            conversation_id=bundle.conversation.id,
            analysis_type=analysis_type,
        )
        for bundle in bundles
    ]
    queue_map = {str(item.id): str(item.conversation_id) for item in items}

    run = run_with_split(
        runner, tool, items, conversations, analysis_type,
        payload_mode=payload_mode, max_payload_bytes=AUDIT_MAX_PAYLOAD_BYTES,
    )

    elements = json.loads(run.json_output)
    model = BATCH_MODELS[analysis_type]
    parsed = []
    for element in elements:
        try:
            parsed.append(model.model_validate(element))
        except PydanticValidationError:
            logger.debug(f"Skipping malformed {analysis_type} audit result")
    return parsed, queue_map, {str(qid) for qid in run.dropped_queue_ids}


def run_llm_variant(
    runner: AnalysisRunner,
    tool: str,
    bundles: Sequence[ConversationBundle],
    payload_mode: str,
) -> VariantResult:
    conversations = [ConversationData.from_models(b.conversation, b.messages) for b in bundles]
    messages_by_conversation = {str(b.conversation.id): b.messages for b in bundles}
    result = VariantResult()

    learning_batches, queue_map, dropped = _run_llm_type(
        runner, tool, bundles, conversations, AnalysisType.LEARNING.value, payload_mode
    )
    result.dropped_queue_ids |= dropped
    for batch in learning_batches:
        conversation_id = queue_map.get(batch.queue_id)
        if conversation_id is None:
            continue
        for learning in batch.learnings:
            learning_type = learning.type if learning.type in VALID_LEARNING_TYPES else "implicit"
            if not normalizer.should_store(learning.rule, learning_type, learning.confidence):
                continue
            if validate_evidence(messages_by_conversation[conversation_id], learning) is None:
                continue
            result.learnings.append(
                _learning_row(
                    "llm", payload_mode, conversation_id,
                    learning_type, learning.rule, learning.confidence,
                )
            )

    workflow_batches, queue_map, dropped = _run_llm_type(
        runner, tool, bundles, conversations, AnalysisType.WORKFLOW.value, payload_mode
    )
    result.dropped_queue_ids |= dropped
    for batch in workflow_batches:
        conversation_id = queue_map.get(batch.queue_id)
        if conversation_id is None:
            continue
        sanitized = taxonomy.sanitize(batch.action, batch.artifact, batch.domains, batch.confidence)
        if sanitized is None:
            continue
        domains = list(sanitized.domains)
        result.workflows.append(
            WorkflowAuditRow(
                variant="llm",
                payload_mode=payload_mode,
                conversation_id=conversation_id,
                signature=build_signature(sanitized.action, sanitized.artifact, domains),
                action=sanitized.action,
                artifact=sanitized.artifact or "",
                domains=domains,
                confidence=batch.confidence,
                is_priming=sanitized.action == "prime",
            )
        )
    return result


def write_json(value: Any, path: Path) -> None:
    if hasattr(value, "__dataclass_fields__"):
        value = asdict(value)
    elif isinstance(value, list):
        value = [asdict(v) if hasattr(v, "__dataclass_fields__") else v for v in value]
    path.write_text(json.dumps(value, indent=2, sort_keys=True), encoding="utf-8")


def default_output_dir() -> Path:
    return Path("reports") / "llm_shadow" / datetime.now().strftime("%Y%m%d_%H%M%S")


def run_shadow_audit(
    session: Session,
    sample_size: int = 30,
    seed: int = 42,
    output_dir: Union[str, Path, None] = None,
    runner: Optional[AnalysisRunner] = None,
    allow_cloud: bool = False,
    config: Optional[Settings] = None,
) -> ShadowAuditSummary:
    """
    Compare deterministic and LLM extraction on a sample of conversations.

    ``allow_cloud`` grants consent for this run only. Deterministic results are
    written before the backend is contacted, so they survive a backend failure.

    Raises:
        ConsentRequiredError: If cloud analysis is neither configured nor allowed
        BackendError: If the backend fails
    """
    config = config or default_settings
    if allow_cloud and not config.allow_cloud_analysis:
        config = config.model_copy(update={"allow_cloud_analysis": True})
    runner = runner or ProviderAnalysisRunner(config)
    tool = config.analysis_backend

    output = Path(output_dir) if output_dir else default_output_dir()
    output.mkdir(parents=True, exist_ok=True)

    bundles = sample_conversations(session, sample_size, seed)
    write_json([str(b.conversation.id) for b in bundles], output / "sample_conversation_ids.json")
    providers = dict(Counter(b.conversation.provider for b in bundles))

    deterministic = run_deterministic_variant(bundles)
    write_json(deterministic.learnings, output / "learnings_deterministic.json")
    write_json(deterministic.workflows, output / "automations_deterministic.json")

    summary = ShadowAuditSummary(
        sample_size=len(bundles),
        seed=seed,
        providers=providers,
        deterministic=summarize_variant(deterministic),
    )

    for payload_mode in PAYLOAD_MODES:
        variant = run_llm_variant(runner, tool, bundles, payload_mode)
        write_json(variant.learnings, output / f"learnings_llm_{payload_mode}.json")
        write_json(variant.workflows, output / f"automations_llm_{payload_mode}.json")
        setattr(summary, f"llm_{payload_mode}", summarize_variant(variant))

    write_json(summary, output / "summary.json")
    logger.info(f"Shadow audit of {len(bundles)} conversations written to {output}")
    return summary
