"""
Analysis result schemas.

Pydantic models validating the JSON a backend returns. Batch items carry the
originating ``queue_id``; the per-item result (without ``queue_id``) is what
is stored in ``AnalysisQueueItem.result_json``.
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WorkflowResult(BaseModel):
    """Workflow classification of one conversation."""

    model_config = ConfigDict(extra="ignore")

    action: str
    artifact: Optional[str] = None
    domains: Optional[list[str]] = None
    confidence: float
    reasoning: Optional[str] = None


class ExtractedLearning(BaseModel):
    """A single learning asserted by the backend (untrusted until validated)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str
    rule: str
    confidence: float
    pattern: Optional[str] = None
    message_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("message_id", "messageId")
    )
    context: Optional[str] = None
    evidence: Optional[str] = None


class LearningResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    learnings: list[ExtractedLearning] = Field(default_factory=list)


class SummaryResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    suggested_title: str
    suggested_summary: Optional[str] = None
    confidence: float
    reasoning: Optional[str] = None


class MergeSuggestion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source_ids: list[str]
    merged_rule: str
    confidence: float
    reasoning: Optional[str] = None


class DedupeResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    merge_suggestions: list[MergeSuggestion] = Field(default_factory=list)


# Batch wrappers: one element per queue item in the backend's JSON array


class WorkflowBatchItem(WorkflowResult):
    queue_id: str


class LearningBatchItem(LearningResult):
    queue_id: str


class SummaryBatchItem(SummaryResult):
    queue_id: str


class DedupeBatchItem(DedupeResult):
    queue_id: str


RESULT_MODELS: dict[str, type[BaseModel]] = {
    "workflow": WorkflowResult,
    "learning": LearningResult,
    "summary": SummaryResult,
    "dedupe": DedupeResult,
}

BATCH_MODELS: dict[str, type[BaseModel]] = {
    "workflow": WorkflowBatchItem,
    "learning": LearningBatchItem,
    "summary": SummaryBatchItem,
    "dedupe": DedupeBatchItem,
}


def to_result_json(batch_item: BaseModel) -> str:
    """Serialize a batch item to its stored per-item form (drops ``queue_id``)."""
    return batch_item.model_dump_json(exclude={"queue_id"}, exclude_none=True)
