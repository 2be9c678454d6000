"""
Tests for deterministic workflow signature extraction.
"""

from datetime import timedelta

from conftest import BASE_TIME
from retain.models.db import Conversation, Message
from retain.workflow.extractor import WorkflowSignatureExtractor, first_request


def make_conversation(title, preview, *contents, roles=None):
    conversation = Conversation(title=title, preview_text=preview)
    roles = roles or ["user"] * len(contents)
    messages = [
        Message(role=role, content=content, timestamp=BASE_TIME + timedelta(minutes=i))
        for i, (role, content) in enumerate(zip(roles, contents))
    ]
    return conversation, messages


class TestWorkflowSignatureExtractor:
    """Tests for WorkflowSignatureExtractor.extract."""

    def setup_method(self):
        self.extractor = WorkflowSignatureExtractor()

    def test_extracts_signature_from_conversation(self):
        conversation, messages = make_conversation(
            "Summarize video",
            "Summarize this video and include key timestamps.",
            "Summarize this video and include key timestamps.",
        )

        candidate = self.extractor.extract(conversation, messages)

        assert candidate is not None
        assert candidate.action == "summarize"
        assert candidate.artifact == "timestamps"
        assert candidate.signature == "summarize|timestamps|video"
        assert "video" in candidate.domains
        assert candidate.is_priming is False

    def test_classifies_warmup_as_priming(self):
        conversation, messages = make_conversation("Warmup", "Warmup", "Warmup")

        candidate = self.extractor.extract(conversation, messages)

        assert candidate is not None
        assert candidate.action == "prime"
        assert candidate.artifact == "context"
        assert candidate.signature == "prime|context|setup"
        assert candidate.is_priming is True

    def test_filters_generic_question(self):
        conversation, messages = make_conversation(
            "What is tmux?",
            "What is tmux and what is it used for?",
            "What is tmux and what is it used for in the context of coding agents?",
        )

        assert self.extractor.extract(conversation, messages) is None

    def test_request_needs_artifact_or_domain(self):
        conversation, messages = make_conversation(None, None, "Write something nice")

        assert self.extractor.extract(conversation, messages) is None

    def test_earliest_action_wins(self):
        conversation, messages = make_conversation(
            None, None, "Draft a proposal and then review it with the sales team"
        )

        candidate = self.extractor.extract(conversation, messages)

        assert candidate.signature == "write|proposal|sales"

    def test_snippet_is_truncated(self):
        request = "Write the weekly report " + "x" * 400
        conversation, messages = make_conversation(None, None, request)

        candidate = self.extractor.extract(conversation, messages)

        assert candidate.snippet == request[:200]


class TestFirstRequest:
    def test_skips_injected_and_assistant_messages(self):
        conversation, messages = make_conversation(
            None,
            None,
            "How can I help you today?",
            "<command-name>/clear</command-name>",
            "Write the weekly report",
            roles=["assistant", "user", "user"],
        )

        assert first_request(conversation, messages) == "Write the weekly report"

    def test_falls_back_to_preview_then_title(self):
        assert first_request(Conversation(title="T", preview_text=" P "), []) == "P"
        assert first_request(Conversation(title="T", preview_text=None), []) == "T"
