"""
Tests for SQLAlchemy database models.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session

from retain.models.db import (
    AnalysisQueueItem,
    AnalysisSuggestion,
    Conversation,
    WorkflowSignature,
    build_signature,
)
from retain.models.providers import get_provider_config


class TestBuildSignature:
    """Tests for the workflow signature key."""

    def test_lowercases_and_sorts_domains(self):
        signature = build_signature("Summarize", "Timestamps", ["Video", "engineering"])

        assert signature == "summarize|timestamps|engineering,video"

    def test_blank_and_duplicate_domains_are_dropped(self):
        signature = build_signature("write", "report", ["sales", " ", "Sales"])

        assert signature == "write|report|sales"

    def test_missing_artifact(self):
        assert build_signature("debug", None, ["engineering"]) == "debug||engineering"


class TestWorkflowSignatureModel:
    """Tests for WorkflowSignature component handling."""

    def test_set_components_rederives_signature(self):
        row = WorkflowSignature(conversation_id=uuid.uuid4())
        row.set_components("Write", "Post", ["content", "Marketing"])

        assert row.action == "write"
        assert row.artifact == "post"
        assert row.domains == "content,marketing"
        assert row.domain_list == ["content", "marketing"]
        assert row.signature == "write|post|content,marketing"


class TestUTCDateTime:
    """Tests for timezone handling of stored datetimes."""

    def test_aware_datetimes_round_trip_as_utc(self, db_session: Session):
        """Test that non-UTC input is stored and returned as UTC."""
        tz = timezone(timedelta(hours=2))
        conversation = Conversation(
            id=uuid.uuid4(),
            provider="claude_code",
            source_type="cli",
            external_id="tz-1",
            created_at=datetime(2025, 1, 1, 14, 0, tzinfo=tz),
            updated_at=datetime(2025, 1, 1, 14, 0, tzinfo=tz),
        )
        db_session.add(conversation)
        db_session.flush()
        db_session.expire_all()

        loaded = db_session.get(Conversation, conversation.id)

        assert loaded.created_at == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert loaded.created_at.tzinfo == timezone.utc


class TestQueueItemModel:
    """Tests for AnalysisQueueItem helpers."""

    @pytest.mark.parametrize(
        "status, active",
        [("pending", True), ("claimed", True), ("completed", False), ("failed", False)],
    )
    def test_is_active(self, status, active):
        assert AnalysisQueueItem(status=status).is_active is active


class TestSuggestionModel:
    """Tests for AnalysisSuggestion helpers."""

    def test_merge_source_id_list(self):
        suggestion = AnalysisSuggestion(merge_source_ids='["a", "b"]')

        assert suggestion.merge_source_id_list == ["a", "b"]

    def test_merge_source_id_list_empty(self):
        assert AnalysisSuggestion(merge_source_ids=None).merge_source_id_list == []


class TestProviderConfig:
    """Tests for the provider capability table."""

    def test_known_provider(self):
        config = get_provider_config("chatgpt_web")

        assert config is not None
        assert config.source_type == "web"
        assert config.strips_blank_system_messages is True

    def test_cli_providers_support_project_paths(self):
        assert get_provider_config("claude_code").supports_project_path is True
        assert get_provider_config("claude_web").supports_project_path is False

    def test_unknown_provider(self):
        assert get_provider_config("myspace") is None
