"""
Workflow signature repository.

One signature row per conversation, plus the recurrence aggregates used to
surface automation candidates.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.orm import Session

from retain.db.repositories.base import BaseRepository
from retain.models.db import Conversation, WorkflowSignature
from retain.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

WEAK_ARTIFACT_ACTIONS = ("fix", "debug")


@dataclass
class WorkflowClusterSample:
    source_type: str
    project_path: Optional[str]
    snippet: str


@dataclass
class WorkflowCluster:
    signature: str
    action: str
    artifact: str
    domains: list[str]
    count: int
    distinct_projects: int
    samples: list[WorkflowClusterSample] = field(default_factory=list)


class WorkflowSignatureRepository(BaseRepository[WorkflowSignature]):
    """Repository for WorkflowSignature."""

    def __init__(self, session: Session, clock: Clock = utcnow):
        super().__init__(WorkflowSignature, session)
        self.clock = clock

    def get_by_conversation(self, conversation_id: uuid.UUID) -> Optional[WorkflowSignature]:
        stmt = select(WorkflowSignature).where(
            WorkflowSignature.conversation_id == conversation_id
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(
        self,
        conversation_id: uuid.UUID,
        action: str,
        artifact: Optional[str],
        domains: Iterable[str],
        snippet: str = "",
        confidence: Optional[float] = None,
        is_priming: bool = False,
        source: Optional[str] = None,
        detector_version: Optional[str] = None,
        source_queue_id: Optional[uuid.UUID] = None,
        version: int = 1,
    ) -> WorkflowSignature:
        """
        Insert or update the signature of a conversation in place.

        The signature string is always re-derived from action, artifact and
        domains.
        """
        now = self.clock()
        row = self.get_by_conversation(conversation_id)
        if row is None:
            row = WorkflowSignature(
                id=uuid.uuid4(), conversation_id=conversation_id, created_at=now
            )
            self.session.add(row)

        row.set_components(action, artifact, list(domains))
        row.snippet = snippet or ""
        row.confidence = confidence
        row.is_priming = is_priming
        row.source = source
        row.detector_version = detector_version
        row.source_queue_id = source_queue_id
        row.version = version
        row.updated_at = now
        self.session.flush()
        return row

    def exists_for_queue(self, queue_id: uuid.UUID) -> bool:
        stmt = select(WorkflowSignature.id).where(
            WorkflowSignature.source_queue_id == queue_id
        )
        return self.session.execute(stmt).first() is not None

    def _cluster_query(self):
        count = func.count(WorkflowSignature.id).label("occurrences")
        distinct_projects = func.count(
            distinct(func.coalesce(Conversation.project_path, ""))
        ).label("distinct_projects")
        stmt = (
            select(
                WorkflowSignature.signature,
                WorkflowSignature.action,
                WorkflowSignature.artifact,
                WorkflowSignature.domains,
                count,
                distinct_projects,
            )
            .join(Conversation, Conversation.id == WorkflowSignature.conversation_id)
            .where(Conversation.deleted_at.is_(None))
            .group_by(
                WorkflowSignature.signature,
                WorkflowSignature.action,
                WorkflowSignature.artifact,
                WorkflowSignature.domains,
            )
        )
        return stmt, count

    def _samples(self, signature: str, limit: int) -> list[WorkflowClusterSample]:
        stmt = (
            select(
                WorkflowSignature.snippet,
                Conversation.source_type,
                Conversation.project_path,
            )
            .join(Conversation, Conversation.id == WorkflowSignature.conversation_id)
            .where(
                WorkflowSignature.signature == signature,
                Conversation.deleted_at.is_(None),
            )
            .order_by(WorkflowSignature.updated_at.desc())
            .limit(limit)
        )
        return [
            WorkflowClusterSample(
                source_type=source_type or "",
                project_path=project_path,
                snippet=snippet or "",
            )
            for snippet, source_type, project_path in self.session.execute(stmt)
        ]

    def _to_cluster(self, row, sample_limit: int) -> WorkflowCluster:
        return WorkflowCluster(
            signature=row.signature,
            action=row.action,
            artifact=row.artifact,
            domains=[d for d in row.domains.split(",") if d],
            count=row.occurrences,
            distinct_projects=row.distinct_projects,
            samples=self._samples(row.signature, sample_limit),
        )

    def fetch_top_clusters(
        self,
        limit: int = 10,
        excluded_actions: Sequence[str] = (),
        excluded_artifacts: Sequence[str] = ("none",),
        minimum_count: int = 3,
        sample_limit: int = 3,
    ) -> list[WorkflowCluster]:
        """
        Recurring signatures that qualify as automation candidates.

        A cluster needs at least ``minimum_count`` conversations. ``fix`` and
        ``debug`` clusters additionally need a concrete artifact and at least
        two distinct projects.
        """
        stmt, count = self._cluster_query()
        if excluded_actions:
            stmt = stmt.where(WorkflowSignature.action.not_in(list(excluded_actions)))
        if excluded_artifacts:
            stmt = stmt.where(WorkflowSignature.artifact.not_in(list(excluded_artifacts)))
        stmt = stmt.having(count >= minimum_count).order_by(count.desc()).limit(limit)

        clusters = []
        for row in self.session.execute(stmt):
            if row.action in WEAK_ARTIFACT_ACTIONS:
                if row.artifact in ("", "none") or row.distinct_projects < 2:
                    continue
            clusters.append(self._to_cluster(row, sample_limit))
        return clusters

    def fetch_clusters(
        self, action: str, limit: int = 10, sample_limit: int = 3
    ) -> list[WorkflowCluster]:
        """All clusters for one action, with no recurrence threshold."""
        stmt, count = self._cluster_query()
        stmt = stmt.where(WorkflowSignature.action == action).order_by(count.desc()).limit(limit)
        return [self._to_cluster(row, sample_limit) for row in self.session.execute(stmt)]

    def fetch_conversation_ids_missing_signature(self) -> list[uuid.UUID]:
        stmt = (
            select(Conversation.id)
            .outerjoin(
                WorkflowSignature, WorkflowSignature.conversation_id == Conversation.id
            )
            .where(WorkflowSignature.id.is_(None), Conversation.deleted_at.is_(None))
            .order_by(Conversation.updated_at.desc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def delete_all(self) -> int:
        result = self.session.execute(
            delete(WorkflowSignature).execution_options(synchronize_session="fetch")
        )
        logger.info(f"Deleted {result.rowcount} workflow signatures")
        return result.rowcount
