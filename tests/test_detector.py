"""
Tests for the deterministic correction detector.
"""

import uuid
from datetime import timedelta

import pytest

from conftest import BASE_TIME, CORRECTION_MESSAGES
from retain.learning.detector import (
    CorrectionDetector,
    DetectorConfig,
    evidence_snippet,
    extract_rule,
    is_valid_rule,
    sanitize_rule,
    should_exclude_content,
)
from retain.models.db import LearningType, Message

CONVERSATION_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def make_messages(pairs):
    return [
        Message(
            id=uuid.uuid4(),
            conversation_id=CONVERSATION_ID,
            role=role,
            content=content,
            timestamp=BASE_TIME + timedelta(minutes=index),
        )
        for index, (role, content) in enumerate(pairs)
    ]


class TestCorrectionDetector:
    """Tests for CorrectionDetector.analyze."""

    def test_detects_use_instead_of_correction(self):
        messages = make_messages(CORRECTION_MESSAGES)

        detections = CorrectionDetector().analyze(CONVERSATION_ID, messages)

        assert len(detections) == 1
        detection = detections[0]
        assert detection.rule == "Use 'pathlib' instead of 'the os module'"
        assert detection.learning_type == LearningType.CORRECTION.value
        assert detection.confidence == 0.95
        assert detection.pattern == "No, use"
        assert detection.message_id == messages[2].id
        assert detection.timestamp == messages[2].timestamp
        assert detection.evidence == "No, use pathlib instead of the os module."
        assert detection.context.splitlines() == [
            "User: Add a helper that loads the settings file",
            "Assistant: Here is a helper using the os module to load it.",
            "User: No, use pathlib instead of the os module.",
        ]

    def test_messages_are_processed_in_timestamp_order(self):
        messages = make_messages(CORRECTION_MESSAGES)

        detections = CorrectionDetector().analyze(CONVERSATION_ID, list(reversed(messages)))

        assert [d.message_id for d in detections] == [messages[2].id]

    def test_correction_needs_prior_assistant_message(self):
        messages = make_messages([("user", "No, use pathlib instead of the os module.")])

        assert CorrectionDetector().analyze(CONVERSATION_ID, messages) == []

    def test_standalone_preference_without_assistant(self):
        messages = make_messages([("user", "Always use pathlib for file paths.")])

        detections = CorrectionDetector().analyze(CONVERSATION_ID, messages)

        assert [d.rule for d in detections] == ["Always use pathlib for file paths"]
        assert detections[0].confidence == 0.9

    def test_system_content_is_skipped(self):
        messages = make_messages(
            [
                ("user", "Write the loader"),
                ("assistant", "Done."),
                ("user", "<system-reminder>No, use pathlib instead of the os module."),
            ]
        )

        assert CorrectionDetector().analyze(CONVERSATION_ID, messages) == []

    def test_min_confidence(self):
        messages = make_messages(CORRECTION_MESSAGES)
        detector = CorrectionDetector(DetectorConfig(min_confidence=0.96))

        assert detector.analyze(CONVERSATION_ID, messages) == []

    def test_positive_feedback_is_opt_in(self):
        pairs = [
            ("user", "Write the loader"),
            ("assistant", "Here it is."),
            ("user", "Great, that was concise and clear."),
        ]

        assert CorrectionDetector().analyze(CONVERSATION_ID, make_messages(pairs)) == []

        detector = CorrectionDetector(DetectorConfig(enable_positive_feedback=True))
        detections = detector.analyze(CONVERSATION_ID, make_messages(pairs))

        assert len(detections) == 1
        assert detections[0].learning_type == LearningType.POSITIVE.value
        assert detections[0].rule == "Keep responses concise"
        assert detections[0].pattern == "concise"

    def test_context_window(self):
        messages = make_messages(CORRECTION_MESSAGES)
        detector = CorrectionDetector(DetectorConfig(context_window=1))

        context = detector.build_context(messages[:2], messages[2])

        assert context == (
            "Assistant: Here is a helper using the os module to load it.\n"
            "User: No, use pathlib instead of the os module."
        )


class TestRuleExtraction:
    @pytest.mark.parametrize(
        "content,expected",
        [
            ("Use ruff instead of flake8.", "Use 'ruff' instead of 'flake8'"),
            ("Use ruff instead.", "Use 'ruff' instead"),
            ("Please never commit secrets.", "Never commit secrets"),
            ("Always pin versions in requirements", "Always pin versions in requirements"),
            ("keep it simple", "Keep responses simple"),
            ("Make responses shorter", "Keep responses concise"),
            ("I prefer tabs over spaces.", "User prefers tabs over spaces"),
            ("hello there", None),
        ],
    )
    def test_extract_rule(self, content, expected):
        assert extract_rule(content) == expected

    def test_sanitize_rule(self):
        assert sanitize_rule("  Use 'ruff'   instead of 'flake8'. ") == (
            "Use 'ruff' instead of 'flake8'"
        )
        assert sanitize_rule("Always format code'") == "Always format code"
        assert sanitize_rule("Map a -> b") is None
        assert sanitize_rule("Use f(x") is None
        assert sanitize_rule('Say "hi') is None
        assert sanitize_rule(" . ") is None

    @pytest.mark.parametrize(
        "rule,expected",
        [
            ("Keep responses concise", True),
            ("User prefers tabs over spaces", True),
            ("Use x", False),
            ("Run the tests first", False),
            ("Always do a. Always do b. Always do c.", False),
            ("Use <b>bold</b> headings", False),
            ("Always " + "x" * 160, False),
        ],
    )
    def test_is_valid_rule(self, rule, expected):
        assert is_valid_rule(rule) is expected

    def test_evidence_snippet_truncates(self):
        assert evidence_snippet("  short  ") == "short"
        long_text = "a" * 300
        assert evidence_snippet(long_text) == "a" * 220 + "..."

    def test_generic_assistant_phrasing_is_excluded(self):
        assert should_exclude_content("How can I help you today?") is True
        assert should_exclude_content("Use pathlib here") is False
