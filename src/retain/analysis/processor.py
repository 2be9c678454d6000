"""
Result processor.

The only path from backend output to the Learning, WorkflowSignature and
AnalysisSuggestion tables. Each queue item's result is validated and merged
in one transaction together with setting ``results_applied_at``, so a replay
of the same result is a no-op.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session, sessionmaker

from retain.db.connection import session_scope
from retain.db.repositories.analysis_queue import AnalysisQueueRepository
from retain.db.repositories.conversation import ConversationRepository
from retain.db.repositories.learning import LearningCandidate, LearningRepository
from retain.db.repositories.suggestion import SuggestionRepository
from retain.db.repositories.workflow_signature import WorkflowSignatureRepository
from retain.exceptions import ValidationError
from retain.learning import normalizer
from retain.learning.content_filter import is_meta_conversation
from retain.models.db import (
    AnalysisQueueItem,
    AnalysisSuggestion,
    AnalysisType,
    Conversation,
    LearningType,
    Message,
    ReviewStatus,
    SuggestionType,
)
from retain.models.results import (
    RESULT_MODELS,
    DedupeResult,
    ExtractedLearning,
    LearningResult,
    SummaryResult,
    WorkflowResult,
)
from retain.utils.hashing import rule_hash
from retain.utils.time import Clock, utcnow
from retain.workflow import refiner, taxonomy

logger = logging.getLogger(__name__)

DETERMINISTIC_SOURCE = "deterministic"
DETERMINISTIC_VERSION = "deterministic-v2"
CLOUD_DETECTOR_VERSION = "cloud-llm-v1"
CLOUD_BACKENDS = ("openai", "anthropic")

MIN_EVIDENCE_LENGTH = 8
MAX_EVIDENCE_LENGTH = 260

VALID_LEARNING_TYPES = {t.value for t in LearningType}


@dataclass
class Provenance:
    source: Optional[str]
    detector_version: Optional[str]


def resolve_provenance(item: AnalysisQueueItem) -> Provenance:
    if item.backend is None:
        return Provenance(None, item.analysis_version)
    if item.backend == DETERMINISTIC_SOURCE:
        return Provenance(DETERMINISTIC_SOURCE, item.analysis_version or DETERMINISTIC_VERSION)
    if item.backend in CLOUD_BACKENDS:
        return Provenance(item.backend, item.analysis_version or CLOUD_DETECTOR_VERSION)
    return Provenance(item.backend, item.analysis_version)


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def validate_evidence(
    messages: Sequence[Message], learning: ExtractedLearning
) -> Optional[tuple[Message, str]]:
    """
    Check that the asserted evidence is a real quote.

    The trimmed evidence must be 8-260 characters and a case-insensitive
    substring of the message named by ``message_id``, or of any message in
    the conversation when no known message is named.
    """
    evidence = (learning.evidence or "").strip()
    if not MIN_EVIDENCE_LENGTH <= len(evidence) <= MAX_EVIDENCE_LENGTH:
        return None
    needle = evidence.casefold()

    message_id = _parse_uuid(learning.message_id)
    if message_id is not None:
        named = next((m for m in messages if m.id == message_id), None)
        if named is not None:
            return (named, evidence) if needle in named.content.casefold() else None

    match = next((m for m in messages if needle in m.content.casefold()), None)
    return (match, evidence) if match is not None else None


def decode_result(item: AnalysisQueueItem):
    """Validate an item's stored result JSON against its analysis type's schema."""
    if item.result_json is None:
        raise ValidationError("No result JSON in queue item")
    model = RESULT_MODELS.get(item.analysis_type)
    if model is None:
        raise ValidationError(f"Unknown analysis type: {item.analysis_type}")
    try:
        payload = json.loads(item.result_json)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e.msg}") from e
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Failed to decode result: {e.error_count()} errors") from e


class ResultProcessor:
    """Applies completed analysis results and reviewed suggestions."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    # ===== Queue results =====

    def apply(self, item_id: uuid.UUID) -> bool:
        """
        Apply one completed item's result.

        Returns False if the result was already applied.

        Raises:
            ValidationError: The result can never be applied (missing or
                malformed JSON, unknown analysis type)
        """
        with session_scope(self.session_factory) as session:
            queue = AnalysisQueueRepository(session, clock=self.clock)
            item = queue.get(item_id)
            if item is None:
                raise ValidationError(f"Queue item {item_id} not found")
            if item.results_applied_at is not None:
                return False

            result = decode_result(item)
            provenance = resolve_provenance(item)
            conversation = session.get(Conversation, item.conversation_id)

            skip = (
                item.analysis_type in (AnalysisType.WORKFLOW.value, AnalysisType.LEARNING.value)
                and conversation is not None
                and is_meta_conversation(conversation)
            )
            if skip:
                logger.debug(f"Skipping {item.analysis_type} result for meta conversation")
            elif item.analysis_type == AnalysisType.WORKFLOW.value:
                self._apply_workflow(session, item, result, provenance)
            elif item.analysis_type == AnalysisType.LEARNING.value:
                self._apply_learnings(session, item, result, provenance)
            elif item.analysis_type == AnalysisType.SUMMARY.value:
                self._apply_summary(session, item, result, conversation)
            elif item.analysis_type == AnalysisType.DEDUPE.value:
                self._apply_dedupe(session, item, result)

            return queue.mark_results_applied(item.id)

    def process_all_unprocessed(self) -> int:
        """
        Apply every completed result that has not been applied yet.

        Non-retryable failures are marked failed permanently; other errors are
        logged and left for the next run.
        """
        with session_scope(self.session_factory) as session:
            ids = [
                item.id
                for item in AnalysisQueueRepository(session).list_unprocessed_completed()
            ]

        applied = 0
        for item_id in ids:
            try:
                if self.apply(item_id):
                    applied += 1
            except ValidationError as e:
                with session_scope(self.session_factory) as session:
                    AnalysisQueueRepository(session, clock=self.clock).mark_result_application_failed(
                        item_id, str(e)
                    )
            except Exception as e:
                logger.error(f"Failed to apply result for item {item_id}: {e}", exc_info=True)

        if ids:
            logger.info(f"Applied {applied}/{len(ids)} pending analysis results")
        return applied

    def _apply_workflow(
        self,
        session: Session,
        item: AnalysisQueueItem,
        result: WorkflowResult,
        provenance: Provenance,
    ) -> None:
        signatures = WorkflowSignatureRepository(session, clock=self.clock)
        if signatures.exists_for_queue(item.id):
            return

        sanitized = taxonomy.sanitize(
            result.action, result.artifact, result.domains, result.confidence
        )
        if sanitized is None:
            logger.debug(f"Workflow result for {item.id} rejected by taxonomy")
            return

        context = self._workflow_context(session, item.conversation_id)
        domains = list(sanitized.domains)
        refined = refiner.refine_artifact(sanitized.action, sanitized.artifact, domains, context)
        artifact = refiner.derive_artifact_if_needed(
            sanitized.action,
            refined if refined is not None else sanitized.artifact,
            domains,
            context,
            result.reasoning,
        )
        artifact = (artifact or "").strip()
        if not artifact:
            return
        if refiner.should_exclude(sanitized.action, artifact, result.reasoning, context):
            return

        signatures.upsert(
            item.conversation_id,
            action=sanitized.action,
            artifact=artifact,
            domains=domains,
            snippet=result.reasoning or "",
            confidence=result.confidence,
            is_priming=sanitized.action == "prime",
            source=provenance.source,
            detector_version=provenance.detector_version,
            source_queue_id=item.id,
        )

    def _workflow_context(self, session: Session, conversation_id: uuid.UUID) -> str:
        conversations = ConversationRepository(session, clock=self.clock)
        parts = []
        conversation = conversations.get(conversation_id)
        if conversation is not None:
            parts.extend([conversation.title, conversation.summary, conversation.preview_text])
        first_user = conversations.get_first_user_message(conversation_id)
        if first_user is not None:
            parts.append(first_user.content)
        return " ".join(p.strip() for p in parts if p and p.strip())

    def _apply_learnings(
        self,
        session: Session,
        item: AnalysisQueueItem,
        result: LearningResult,
        provenance: Provenance,
    ) -> None:
        learnings = LearningRepository(session, clock=self.clock)
        messages = ConversationRepository(session, clock=self.clock).get_messages(
            item.conversation_id
        )

        for extracted in result.learnings:
            learning_type = (
                extracted.type
                if extracted.type in VALID_LEARNING_TYPES
                else LearningType.IMPLICIT.value
            )
            if not normalizer.should_store(extracted.rule, learning_type, extracted.confidence):
                continue

            validated = validate_evidence(messages, extracted)
            if validated is None:
                logger.debug(f"Dropped learning with unverifiable evidence: {extracted.rule!r}")
                continue
            message, evidence = validated

            if learnings.exists_for_queue(item.id, rule_hash(extracted.rule)):
                continue

            learnings.record_detection(
                LearningCandidate(
                    rule=extracted.rule,
                    learning_type=learning_type,
                    confidence=extracted.confidence,
                    conversation_id=item.conversation_id,
                    detected_at=message.timestamp,
                    message_id=message.id,
                    pattern=extracted.pattern or "",
                    context=extracted.context,
                    evidence=evidence,
                    source=provenance.source,
                    detector_version=provenance.detector_version,
                    source_queue_id=item.id,
                )
            )

    def _apply_summary(
        self,
        session: Session,
        item: AnalysisQueueItem,
        result: SummaryResult,
        conversation: Optional[Conversation],
    ) -> None:
        suggestions = SuggestionRepository(session, clock=self.clock)
        target_id = str(item.conversation_id)
        proposals = [
            (SuggestionType.TITLE.value, result.suggested_title, conversation.title if conversation else None),
            (SuggestionType.SUMMARY.value, result.suggested_summary, conversation.summary if conversation else None),
        ]
        for suggestion_type, value, original in proposals:
            if not value or not value.strip():
                continue
            if suggestions.exists_for(item.id, suggestion_type, target_id):
                continue
            suggestions.create_suggestion(
                queue_id=item.id,
                suggestion_type=suggestion_type,
                suggested_value=value.strip(),
                target_id=target_id,
                original_value=original,
                confidence=result.confidence,
                reasoning=result.reasoning,
            )

    def _apply_dedupe(
        self, session: Session, item: AnalysisQueueItem, result: DedupeResult
    ) -> None:
        suggestions = SuggestionRepository(session, clock=self.clock)
        for merge in result.merge_suggestions:
            if len(merge.source_ids) < 2:
                continue
            if suggestions.exists_merge(item.id, merge.source_ids):
                continue
            suggestions.create_suggestion(
                queue_id=item.id,
                suggestion_type=SuggestionType.MERGE_LEARNINGS.value,
                suggested_value=merge.merged_rule,
                confidence=merge.confidence,
                reasoning=merge.reasoning,
                merge_source_ids=merge.source_ids,
            )

    # ===== Suggestions =====

    def list_pending_suggestions(self, limit: Optional[int] = None) -> list[AnalysisSuggestion]:
        with session_scope(self.session_factory) as session:
            return list(SuggestionRepository(session).list_pending(limit))

    def apply_and_approve_suggestion(self, suggestion_id: uuid.UUID) -> None:
        """
        Apply a suggestion and mark it approved in one transaction.

        If applying fails the suggestion stays pending.

        Raises:
            ValidationError: Unknown, already reviewed or malformed suggestion
        """
        with session_scope(self.session_factory) as session:
            suggestions = SuggestionRepository(session, clock=self.clock)
            suggestion = suggestions.get(suggestion_id)
            if suggestion is None:
                raise ValidationError(f"Suggestion {suggestion_id} not found")
            if suggestion.status != ReviewStatus.PENDING.value:
                raise ValidationError(f"Suggestion {suggestion_id} already {suggestion.status}")

            if suggestion.suggestion_type in (
                SuggestionType.TITLE.value,
                SuggestionType.SUMMARY.value,
            ):
                self._apply_conversation_suggestion(session, suggestion)
            elif suggestion.suggestion_type == SuggestionType.MERGE_LEARNINGS.value:
                self._apply_merge_suggestion(session, suggestion)
            else:
                raise ValidationError(f"Unknown suggestion type: {suggestion.suggestion_type}")

            suggestions.approve(suggestion.id)

    def _apply_conversation_suggestion(
        self, session: Session, suggestion: AnalysisSuggestion
    ) -> None:
        conversation_id = _parse_uuid(suggestion.target_id)
        conversation = session.get(Conversation, conversation_id) if conversation_id else None
        if conversation is None or not suggestion.suggested_value:
            raise ValidationError(f"Invalid {suggestion.suggestion_type} suggestion")

        if suggestion.suggestion_type == SuggestionType.TITLE.value:
            conversation.title = suggestion.suggested_value
        else:
            conversation.summary = suggestion.suggested_value
        conversation.updated_at = self.clock()
        session.flush()

    def _apply_merge_suggestion(self, session: Session, suggestion: AnalysisSuggestion) -> None:
        source_ids = [_parse_uuid(s) for s in suggestion.merge_source_id_list]
        if len(source_ids) < 2 or None in source_ids or not suggestion.suggested_value:
            raise ValidationError("Invalid merge suggestion")

        learnings = LearningRepository(session, clock=self.clock)
        base = learnings.get(source_ids[0])
        if base is None:
            raise ValidationError("Source learning not found")

        merged_rule = suggestion.suggested_value.strip()
        base.extracted_rule = merged_rule
        base.normalized_rule = normalizer.normalize(merged_rule)
        base.rule_hash = rule_hash(merged_rule)
        base.evidence_count = max(base.evidence_count, len(source_ids))
        now = self.clock()
        if now > base.last_detected_at:
            base.last_detected_at = now

        for other_id in source_ids[1:]:
            if other_id != base.id:
                learnings.delete(other_id)
        session.flush()

    def reject_suggestion(self, suggestion_id: uuid.UUID, reason: Optional[str] = None) -> bool:
        with session_scope(self.session_factory) as session:
            return SuggestionRepository(session, clock=self.clock).reject(suggestion_id, reason)
