"""
Tests for the deterministic learning scan.
"""

import threading
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from conftest import BASE_TIME
from retain.db.repositories import LearningRepository
from retain.learning.service import LearningScanService

RULE = "Use 'pathlib' instead of 'the os module'"


@pytest.fixture
def service(db_session: Session, clock) -> LearningScanService:
    return LearningScanService(db_session, clock=clock)


class TestLearningScanService:
    def test_scan_records_correction(
        self, service, add_conversation, correction_messages, db_session
    ):
        conversation_id = add_conversation(messages=correction_messages)

        stats = service.scan_conversation_id(conversation_id)

        assert stats.conversations_scanned == 1
        assert stats.messages_scanned == 4
        assert stats.detections == 1
        assert stats.outcomes == {"inserted": 1}
        assert stats.learnings_stored == 1

        (learning,) = LearningRepository(db_session).list_pending()
        assert learning.extracted_rule == RULE
        assert learning.source == "deterministic"
        assert learning.detector_version == "deterministic-v2"
        assert learning.conversation_id == conversation_id

    def test_rescan_is_a_no_op(self, service, add_conversation, correction_messages):
        conversation_id = add_conversation(messages=correction_messages)
        service.scan_conversation_id(conversation_id)

        stats = service.scan_conversation_id(conversation_id)

        assert stats.outcomes == {"stale": 1}
        assert stats.learnings_stored == 0

    def test_repeat_in_later_conversation_merges(
        self, service, add_conversation, correction_messages, db_session
    ):
        first = add_conversation(external_id="a", messages=correction_messages)
        second = add_conversation(
            external_id="b",
            messages=correction_messages,
            start=BASE_TIME + timedelta(days=1),
        )
        service.scan_conversation_id(first)

        stats = service.scan_conversation_id(second)

        assert stats.outcomes == {"merged": 1}
        (learning,) = LearningRepository(db_session).list_pending()
        assert learning.evidence_count == 2
        assert learning.conversation_id == second

    def test_repeated_scan_all_keeps_evidence_stable(
        self, service, add_conversation, correction_messages, db_session
    ):
        add_conversation(external_id="a", project_path="/p1", messages=correction_messages)
        add_conversation(
            external_id="b",
            project_path="/p2",
            messages=correction_messages,
            start=BASE_TIME + timedelta(days=1),
        )

        counts = []
        for _ in range(3):
            service.scan_all()
            counts.append([row.evidence_count for row in LearningRepository(db_session).get_all()])

        assert counts == [[2], [2], [2]]
        (learning,) = LearningRepository(db_session).get_all()
        assert learning.scope == "global"

    def test_meta_conversation_is_skipped(self, service, add_conversation, correction_messages):
        conversation_id = add_conversation(
            title="Code review notes", messages=correction_messages
        )

        stats = service.scan_conversation_id(conversation_id)

        assert stats.conversations_scanned == 1
        assert stats.detections == 0

    def test_unknown_conversation(self, service):
        with pytest.raises(ValueError, match="not found"):
            service.scan_conversation_id(uuid.uuid4())

    def test_scan_all(self, service, add_conversation, correction_messages, video_messages):
        add_conversation(external_id="a", messages=correction_messages)
        add_conversation(external_id="b", messages=video_messages)

        stats = service.scan_all()

        assert stats.conversations_scanned == 2
        assert stats.detections == 1
        assert stats.cancelled is False

    def test_scan_all_honours_cancellation(self, service, add_conversation, correction_messages):
        add_conversation(messages=correction_messages)
        cancel = threading.Event()
        cancel.set()

        stats = service.scan_all(cancel_event=cancel)

        assert stats.cancelled is True
        assert stats.conversations_scanned == 0
