"""
Tests for WorkflowSignatureService scanning and cluster reporting.
"""

import threading

import pytest
from sqlalchemy.orm import Session

from retain.db.repositories import ConversationRepository, WorkflowSignatureRepository
from retain.workflow.service import WorkflowSignatureService


@pytest.fixture
def service(db_session: Session, clock) -> WorkflowSignatureService:
    return WorkflowSignatureService(db_session, clock=clock)


@pytest.fixture
def conversations(db_session: Session):
    return ConversationRepository(db_session)


def scan_one(service, conversations, add_conversation, *requests, **kwargs):
    conversation_id = add_conversation(
        messages=[("user", r) for r in requests], **kwargs
    )
    return service.scan_conversation(conversations.get(conversation_id))


class TestScanConversation:
    def test_stores_signature(self, service, conversations, add_conversation, video_messages):
        conversation_id = add_conversation(messages=video_messages)

        row = service.scan_conversation(conversations.get(conversation_id))

        assert row.signature == "summarize|timestamps|video"
        assert row.source == "deterministic"
        assert row.snippet == "Summarize this video and include key timestamps."

    def test_meta_conversation_is_skipped(self, service, conversations, add_conversation):
        assert scan_one(
            service, conversations, add_conversation, "Review the parser code"
        ) is None

    def test_fix_without_artifact_is_excluded(self, service, conversations, add_conversation):
        assert scan_one(
            service, conversations, add_conversation, "Fix the failing tests in the parser"
        ) is None

    def test_one_off_request_is_excluded(self, service, conversations, add_conversation):
        assert scan_one(
            service, conversations, add_conversation, "Draft a one-off report for the sales team"
        ) is None

    def test_generic_artifact_is_refined(self, service, conversations, add_conversation):
        row = scan_one(
            service, conversations, add_conversation, "Prepare the workflow for onboarding interns"
        )

        assert row.artifact == "workflow_onboarding"
        assert row.signature == "prepare|workflow_onboarding|"


class TestBulkScans:
    @pytest.fixture
    def seeded(self, add_conversation, video_messages):
        return [
            add_conversation(external_id="video", messages=video_messages),
            add_conversation(external_id="question", messages=[("user", "What is tmux?")]),
            add_conversation(external_id="warmup", messages=[("user", "Warmup")]),
        ]

    def test_scan_all_reports_progress(self, service, seeded):
        seen = []

        progress = service.scan_all(progress_callback=lambda p: seen.append(p.processed))

        assert (progress.total, progress.processed, progress.stored) == (3, 3, 2)
        assert progress.cancelled is False
        assert seen == [1, 2, 3]

    def test_scan_missing_only_visits_unsigned(self, service, seeded):
        service.scan_all()

        progress = service.scan_missing_signatures()

        assert (progress.total, progress.stored) == (1, 0)

    def test_reset_and_scan_all(self, service, seeded, db_session: Session):
        service.scan_all()

        progress = service.reset_and_scan_all()

        assert progress.stored == 2
        assert WorkflowSignatureRepository(db_session).count() == 2

    def test_cancellation_is_checked_between_batches(self, db_session, clock, seeded):
        service = WorkflowSignatureService(db_session, clock=clock, cancel_check_every=1)
        cancel = threading.Event()
        cancel.set()

        progress = service.scan_conversations(seeded, cancel_event=cancel)

        assert progress.cancelled is True
        assert progress.processed == 1

    def test_soft_deleted_conversations_are_skipped(self, service, seeded, conversations):
        conversations.soft_delete(seeded[0])

        progress = service.scan_conversations([seeded[0]])

        assert (progress.processed, progress.stored) == (1, 0)

    def test_eta_estimate(self, service, seeded):
        progress = service.scan_conversations([])

        assert progress.eta_seconds is None


class TestClusters:
    def test_top_and_priming_clusters(self, service, add_conversation, video_messages):
        for index in range(3):
            add_conversation(external_id=f"video-{index}", messages=video_messages)
            add_conversation(external_id=f"warm-{index}", messages=[("user", "Warmup")])
        service.scan_all()

        top = service.top_clusters()
        priming = service.priming_clusters()

        assert [(c.signature, c.count) for c in top] == [("summarize|timestamps|video", 3)]
        assert [(c.signature, c.count) for c in priming] == [("prime|context|setup", 3)]
