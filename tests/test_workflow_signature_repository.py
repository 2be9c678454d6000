"""
Tests for WorkflowSignatureRepository and cluster aggregation.
"""

import uuid

import pytest
from sqlalchemy.orm import Session

from retain.db.repositories import ConversationRepository, WorkflowSignatureRepository


@pytest.fixture
def repo(db_session: Session, clock) -> WorkflowSignatureRepository:
    return WorkflowSignatureRepository(db_session, clock=clock)


def add_signatures(repo, add_conversation, count, action, artifact, domains, prefix, projects=None):
    ids = []
    for index in range(count):
        project = projects[index % len(projects)] if projects else "/work/app"
        conversation_id = add_conversation(
            external_id=f"{prefix}-{index}",
            project_path=project,
            messages=[("user", f"{prefix} request {index}")],
        )
        repo.upsert(conversation_id, action, artifact, domains, snippet=f"{prefix} snippet {index}")
        ids.append(conversation_id)
    return ids


class TestUpsert:
    """Tests for storing one signature per conversation."""

    def test_insert_derives_signature(self, repo, add_conversation):
        conversation_id = add_conversation(messages=[("user", "x")])

        row = repo.upsert(conversation_id, "Summarize", "timestamps", ["video"], snippet="s")

        assert row.signature == "summarize|timestamps|video"
        assert row.is_priming is False
        assert repo.get_by_conversation(conversation_id).id == row.id

    def test_update_in_place(self, repo, add_conversation, clock):
        conversation_id = add_conversation(messages=[("user", "x")])
        first = repo.upsert(conversation_id, "write", "report", ["sales"])
        clock.advance(hours=1)
        queue_id = uuid.uuid4()

        second = repo.upsert(
            conversation_id, "write", "proposal", ["sales"], source_queue_id=queue_id
        )

        assert second.id == first.id
        assert second.signature == "write|proposal|sales"
        assert second.updated_at == clock()
        assert repo.count() == 1
        assert repo.exists_for_queue(queue_id) is True
        assert repo.exists_for_queue(uuid.uuid4()) is False


class TestClusters:
    """Tests for recurring-workflow clusters."""

    def test_top_clusters_require_minimum_count(self, repo, add_conversation):
        add_signatures(repo, add_conversation, 3, "summarize", "timestamps", ["video"], "vid")
        add_signatures(repo, add_conversation, 2, "write", "report", ["sales"], "rep")

        clusters = repo.fetch_top_clusters(minimum_count=3)

        assert [c.signature for c in clusters] == ["summarize|timestamps|video"]
        assert clusters[0].count == 3
        assert clusters[0].domains == ["video"]
        assert len(clusters[0].samples) == 3
        assert clusters[0].samples[0].source_type == "cli"

    def test_clusters_ordered_by_count(self, repo, add_conversation):
        add_signatures(repo, add_conversation, 3, "write", "report", ["sales"], "rep")
        add_signatures(repo, add_conversation, 4, "translate", "documentation", [], "doc")

        clusters = repo.fetch_top_clusters(minimum_count=3)

        assert [c.count for c in clusters] == [4, 3]

    def test_excluded_actions(self, repo, add_conversation):
        add_signatures(repo, add_conversation, 3, "prime", "context", ["setup"], "warm")

        assert repo.fetch_top_clusters(excluded_actions=("prime",), minimum_count=3) == []

    def test_fix_clusters_need_multiple_projects(self, repo, add_conversation):
        add_signatures(repo, add_conversation, 3, "fix", "report", [], "one")
        add_signatures(
            repo, add_conversation, 3, "debug", "spec", [], "many", projects=["/a", "/b"]
        )

        clusters = repo.fetch_top_clusters(minimum_count=3)

        assert [c.signature for c in clusters] == ["debug|spec|"]
        assert clusters[0].distinct_projects == 2

    def test_soft_deleted_conversations_are_excluded(
        self, repo, add_conversation, db_session: Session
    ):
        ids = add_signatures(repo, add_conversation, 3, "write", "report", ["sales"], "rep")
        ConversationRepository(db_session).soft_delete(ids[0])

        assert repo.fetch_top_clusters(minimum_count=3) == []

    def test_fetch_clusters_for_action(self, repo, add_conversation):
        add_signatures(repo, add_conversation, 1, "prime", "context", ["setup"], "warm")

        clusters = repo.fetch_clusters("prime")

        assert [c.signature for c in clusters] == ["prime|context|setup"]

    def test_conversations_missing_signature(self, repo, add_conversation):
        (with_signature,) = add_signatures(repo, add_conversation, 1, "write", "post", [], "p")
        without = add_conversation(external_id="bare", messages=[("user", "x")])

        missing = repo.fetch_conversation_ids_missing_signature()

        assert missing == [without]
        assert with_signature not in missing

    def test_delete_all(self, repo, add_conversation):
        add_signatures(repo, add_conversation, 2, "write", "post", [], "p")

        assert repo.delete_all() == 2
        assert repo.count() == 0
