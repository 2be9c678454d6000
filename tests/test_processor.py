"""
Tests for applying analysis results and reviewed suggestions.
"""

import json
import uuid

import pytest
from sqlalchemy import update

from conftest import BASE_TIME
from retain.analysis.processor import (
    ResultProcessor,
    decode_result,
    resolve_provenance,
    validate_evidence,
)
from retain.db.connection import session_scope
from retain.db.repositories import (
    AnalysisQueueRepository,
    ConversationRepository,
    LearningRepository,
    SuggestionRepository,
    WorkflowSignatureRepository,
)
from retain.db.repositories.learning import LearningCandidate
from retain.exceptions import ValidationError
from retain.models.db import AnalysisQueueItem, Conversation, Message
from retain.models.results import ExtractedLearning
from retain.utils.hashing import rule_hash

WORKFLOW_RESULT = {
    "action": "draft",
    "artifact": "report",
    "domains": ["sales"],
    "confidence": 0.9,
    "reasoning": "Writes the quarterly sales report",
}


def complete_item(session_factory, conversation_id, analysis_type, result, backend="anthropic"):
    """Enqueue, claim and complete an item; return its id."""
    with session_scope(session_factory) as session:
        queue = AnalysisQueueRepository(session)
        queue.enqueue(conversation_id, analysis_type)
        (item,) = queue.claim_pending_items(1, "test-worker")
        queue.mark_completed(
            item.id,
            result if isinstance(result, str) else json.dumps(result),
            backend=backend,
            model="fake-model",
        )
        return item.id


@pytest.fixture
def processor(session_factory, clock) -> ResultProcessor:
    return ResultProcessor(session_factory, clock=clock)


class TestWorkflowResults:
    def test_apply_stores_signature_with_provenance(
        self, processor, session_factory, store_conversation
    ):
        conversation_id = store_conversation(
            messages=[("user", "Draft the quarterly sales report for the team")]
        )
        item_id = complete_item(session_factory, conversation_id, "workflow", WORKFLOW_RESULT)

        assert processor.apply(item_id) is True

        with session_scope(session_factory) as session:
            row = WorkflowSignatureRepository(session).get_by_conversation(conversation_id)
            item = AnalysisQueueRepository(session).get(item_id)
            assert row.signature == "write|report|sales"
            assert row.source == "anthropic"
            assert row.detector_version == "cloud-llm-v1"
            assert row.source_queue_id == item_id
            assert item.results_applied_at is not None

    def test_replay_is_a_no_op(self, processor, session_factory, store_conversation):
        conversation_id = store_conversation(messages=[("user", "Draft the sales report")])
        item_id = complete_item(session_factory, conversation_id, "workflow", WORKFLOW_RESULT)
        processor.apply(item_id)

        assert processor.apply(item_id) is False

    def test_low_confidence_is_rejected_but_marked_applied(
        self, processor, session_factory, store_conversation
    ):
        conversation_id = store_conversation(messages=[("user", "Draft the sales report")])
        item_id = complete_item(
            session_factory, conversation_id, "workflow", {**WORKFLOW_RESULT, "confidence": 0.3}
        )

        assert processor.apply(item_id) is True

        with session_scope(session_factory) as session:
            assert WorkflowSignatureRepository(session).get_by_conversation(conversation_id) is None

    def test_meta_conversation_is_skipped(self, processor, session_factory, store_conversation):
        conversation_id = store_conversation(
            title="Code review", messages=[("user", "Draft the sales report")]
        )
        item_id = complete_item(session_factory, conversation_id, "workflow", WORKFLOW_RESULT)

        assert processor.apply(item_id) is True

        with session_scope(session_factory) as session:
            assert WorkflowSignatureRepository(session).get_by_conversation(conversation_id) is None


class TestLearningResults:
    def test_only_verified_evidence_is_stored(
        self, processor, session_factory, store_conversation, correction_messages
    ):
        conversation_id = store_conversation(messages=correction_messages)
        result = {
            "learnings": [
                {
                    "type": "correction",
                    "rule": "Use pathlib instead of the os module",
                    "confidence": 0.9,
                    "evidence": "USE PATHLIB instead of the os module",
                },
                {
                    "type": "correction",
                    "rule": "Always write docstrings",
                    "confidence": 0.9,
                    "evidence": "write docstrings everywhere",
                },
            ]
        }
        item_id = complete_item(session_factory, conversation_id, "learning", result)

        processor.apply(item_id)

        with session_scope(session_factory) as session:
            learnings = LearningRepository(session).list_pending()
            messages = ConversationRepository(session).get_messages(conversation_id)
            assert [learning.extracted_rule for learning in learnings] == [
                "Use pathlib instead of the os module"
            ]
            learning = learnings[0]
            assert learning.message_id == messages[2].id
            assert learning.last_detected_at == messages[2].timestamp
            assert learning.evidence == "USE PATHLIB instead of the os module"
            assert learning.source_queue_id == item_id
            assert learning.source == "anthropic"

    def test_replay_does_not_add_evidence(
        self, processor, session_factory, store_conversation, correction_messages
    ):
        conversation_id = store_conversation(messages=correction_messages)
        result = {
            "learnings": [
                {
                    "type": "correction",
                    "rule": "Use pathlib instead of the os module",
                    "confidence": 0.9,
                    "evidence": "use pathlib instead of the os module",
                }
            ]
        }
        item_id = complete_item(session_factory, conversation_id, "learning", result)
        assert processor.apply(item_id) is True
        with session_scope(session_factory) as session:
            applied_at = AnalysisQueueRepository(session).get(item_id).results_applied_at

        assert processor.apply(item_id) is False

        with session_scope(session_factory) as session:
            (learning,) = LearningRepository(session).get_all()
            assert learning.evidence_count == 1
            assert AnalysisQueueRepository(session).get(item_id).results_applied_at == applied_at
            assert LearningRepository(session).exists_for_queue(
                item_id, rule_hash("Use pathlib instead of the os module")
            )

    def test_queue_guard_holds_when_gate_is_cleared(
        self, processor, session_factory, store_conversation, correction_messages
    ):
        conversation_id = store_conversation(messages=correction_messages)
        result = {
            "learnings": [
                {
                    "type": "correction",
                    "rule": "Use pathlib instead of the os module",
                    "confidence": 0.9,
                    "evidence": "use pathlib instead of the os module",
                }
            ]
        }
        item_id = complete_item(session_factory, conversation_id, "learning", result)
        processor.apply(item_id)
        with session_scope(session_factory) as session:
            session.execute(
                update(AnalysisQueueItem)
                .where(AnalysisQueueItem.id == item_id)
                .values(results_applied_at=None)
            )

        assert processor.apply(item_id) is True

        with session_scope(session_factory) as session:
            (learning,) = LearningRepository(session).get_all()
            assert learning.evidence_count == 1

    def test_evidence_must_come_from_named_message(
        self, processor, session_factory, store_conversation, correction_messages
    ):
        conversation_id = store_conversation(messages=correction_messages)
        with session_scope(session_factory) as session:
            first = ConversationRepository(session).get_messages(conversation_id)[0]
        result = {
            "learnings": [
                {
                    "type": "correction",
                    "rule": "Use pathlib instead of the os module",
                    "confidence": 0.9,
                    "evidence": "use pathlib instead of the os module",
                    "messageId": str(first.id),
                }
            ]
        }
        item_id = complete_item(session_factory, conversation_id, "learning", result)

        processor.apply(item_id)

        with session_scope(session_factory) as session:
            assert LearningRepository(session).list_pending() == []


class TestProcessAllUnprocessed:
    def test_invalid_json_fails_permanently(
        self, processor, session_factory, store_conversation
    ):
        good = store_conversation(external_id="good", messages=[("user", "Draft the sales report")])
        bad = store_conversation(external_id="bad", messages=[("user", "Draft the sales report")])
        good_id = complete_item(session_factory, good, "workflow", WORKFLOW_RESULT)
        bad_id = complete_item(session_factory, bad, "workflow", "not json")

        assert processor.process_all_unprocessed() == 1

        with session_scope(session_factory) as session:
            queue = AnalysisQueueRepository(session)
            failed = queue.get(bad_id)
            assert failed.status == "failed"
            assert failed.error_message.startswith("Invalid JSON")
            assert failed.results_applied_at is not None
            assert queue.get(good_id).status == "completed"
            assert queue.list_unprocessed_completed() == []

        assert processor.process_all_unprocessed() == 0

    def test_schema_mismatch(self, processor, session_factory, store_conversation):
        conversation_id = store_conversation(messages=[("user", "hello")])
        item_id = complete_item(session_factory, conversation_id, "summary", {"title": "x"})

        with pytest.raises(ValidationError, match="Failed to decode"):
            processor.apply(item_id)


class TestSuggestions:
    @pytest.fixture
    def summary_item(self, session_factory, store_conversation):
        conversation_id = store_conversation(
            title="untitled", messages=[("user", "Help me load settings")]
        )
        item_id = complete_item(
            session_factory,
            conversation_id,
            "summary",
            {
                "suggested_title": "Settings loader with pathlib",
                "suggested_summary": "Replaced os calls with pathlib.",
                "confidence": 0.8,
            },
        )
        return conversation_id, item_id

    def test_summary_result_creates_suggestions(self, processor, summary_item):
        conversation_id, item_id = summary_item

        processor.apply(item_id)
        suggestions = processor.list_pending_suggestions()

        by_type = {s.suggestion_type: s for s in suggestions}
        assert set(by_type) == {"title", "summary"}
        assert by_type["title"].suggested_value == "Settings loader with pathlib"
        assert by_type["title"].original_value == "untitled"
        assert by_type["title"].target_id == str(conversation_id)

    def test_apply_title_suggestion(self, processor, summary_item, session_factory, clock):
        conversation_id, item_id = summary_item
        processor.apply(item_id)
        title = next(
            s for s in processor.list_pending_suggestions() if s.suggestion_type == "title"
        )

        processor.apply_and_approve_suggestion(title.id)

        with session_scope(session_factory) as session:
            conversation = session.get(Conversation, conversation_id)
            assert conversation.title == "Settings loader with pathlib"
            assert conversation.updated_at == clock()
            assert SuggestionRepository(session).get(title.id).status == "approved"

        with pytest.raises(ValidationError, match="already approved"):
            processor.apply_and_approve_suggestion(title.id)

    def test_reject_suggestion(self, processor, summary_item, session_factory):
        _, item_id = summary_item
        processor.apply(item_id)
        summary = next(
            s for s in processor.list_pending_suggestions() if s.suggestion_type == "summary"
        )

        assert processor.reject_suggestion(summary.id, "inaccurate") is True

        assert [s.suggestion_type for s in processor.list_pending_suggestions()] == ["title"]

    def test_merge_suggestion(self, processor, summary_item, session_factory):
        conversation_id, item_id = summary_item
        with session_scope(session_factory) as session:
            learnings = LearningRepository(session)
            ids = [
                learnings.record_detection(
                    LearningCandidate(
                        rule=rule,
                        learning_type="correction",
                        confidence=0.9,
                        conversation_id=conversation_id,
                        detected_at=BASE_TIME,
                    )
                ).learning.id
                for rule in ("Use pathlib for file paths", "Always use pathlib for paths")
            ]
            merge = SuggestionRepository(session).create_suggestion(
                queue_id=item_id,
                suggestion_type="merge_learnings",
                suggested_value="Use pathlib for all file paths",
                merge_source_ids=[str(i) for i in ids],
            )

        processor.apply_and_approve_suggestion(merge.id)

        with session_scope(session_factory) as session:
            learnings = LearningRepository(session)
            base = learnings.get(ids[0])
            assert base.extracted_rule == "Use pathlib for all file paths"
            assert base.normalized_rule == "use pathlib for all file paths"
            assert base.evidence_count == 2
            assert learnings.get(ids[1]) is None

    def test_unknown_suggestion(self, processor):
        with pytest.raises(ValidationError, match="not found"):
            processor.apply_and_approve_suggestion(uuid.uuid4())


class TestHelpers:
    @pytest.mark.parametrize(
        "backend,version,expected",
        [
            (None, "v9", (None, "v9")),
            ("deterministic", None, ("deterministic", "deterministic-v2")),
            ("openai", None, ("openai", "cloud-llm-v1")),
            ("anthropic", "cloud-llm-v2", ("anthropic", "cloud-llm-v2")),
            ("custom", None, ("custom", None)),
        ],
    )
    def test_resolve_provenance(self, backend, version, expected):
        item = AnalysisQueueItem(backend=backend, analysis_version=version)

        provenance = resolve_provenance(item)

        assert (provenance.source, provenance.detector_version) == expected

    def test_validate_evidence_length_bounds(self):
        messages = [Message(id=uuid.uuid4(), role="user", content="short text here")]

        assert validate_evidence(
            messages, ExtractedLearning(type="correction", rule="r", confidence=1, evidence="short")
        ) is None
        assert validate_evidence(
            messages,
            ExtractedLearning(type="correction", rule="r", confidence=1, evidence="x" * 261),
        ) is None
        assert validate_evidence(
            messages,
            ExtractedLearning(type="correction", rule="r", confidence=1, evidence=" text here "),
        ) == (messages[0], "text here")

    def test_decode_result_errors(self):
        with pytest.raises(ValidationError, match="No result JSON"):
            decode_result(AnalysisQueueItem(analysis_type="workflow", result_json=None))
        with pytest.raises(ValidationError, match="Unknown analysis type"):
            decode_result(AnalysisQueueItem(analysis_type="other", result_json="{}"))
