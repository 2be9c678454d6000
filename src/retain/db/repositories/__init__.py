"""
Repository layer for database operations.

Repositories flush but never commit; callers own the transaction.
"""

from retain.db.repositories.analysis_queue import AnalysisQueueRepository, QueueStats
from retain.db.repositories.base import BaseRepository
from retain.db.repositories.conversation import ConversationRepository, UpsertResult
from retain.db.repositories.learning import (
    LearningCandidate,
    LearningRepository,
    RecordResult,
)
from retain.db.repositories.suggestion import SuggestionRepository
from retain.db.repositories.workflow_signature import (
    WorkflowCluster,
    WorkflowClusterSample,
    WorkflowSignatureRepository,
)

__all__ = [
    "AnalysisQueueRepository",
    "BaseRepository",
    "ConversationRepository",
    "LearningCandidate",
    "LearningRepository",
    "QueueStats",
    "RecordResult",
    "SuggestionRepository",
    "UpsertResult",
    "WorkflowCluster",
    "WorkflowClusterSample",
    "WorkflowSignatureRepository",
]
