"""
SQLAlchemy database models for Retain.

These models hold synced conversations, the analysis job ledger, and the
derived learnings and workflow signatures produced from them.
"""

import enum
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from retain.utils.time import utcnow


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes stored as naive UTC.

    SQLite has no timezone support, so values are normalized to UTC on the
    way in and tagged as UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Provider(str, enum.Enum):
    """Conversation source."""

    CLAUDE_CODE = "claude_code"
    CLAUDE_WEB = "claude_web"
    CHATGPT_WEB = "chatgpt_web"
    CODEX = "codex"
    GEMINI = "gemini"


class SourceType(str, enum.Enum):
    CLI = "cli"
    WEB = "web"
    IMPORT = "import"


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class AnalysisType(str, enum.Enum):
    """Kinds of analysis a queue item can request."""

    WORKFLOW = "workflow"  # Workflow signature extraction
    LEARNING = "learning"  # Preference/correction extraction
    SUMMARY = "summary"  # Title and summary rewrite suggestions
    DEDUPE = "dedupe"  # Learning merge suggestions (not per conversation)


class QueueStatus(str, enum.Enum):
    """Queue item state machine: pending -> claimed -> completed | failed."""

    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.CLAIMED.value)
TERMINAL_QUEUE_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value)


class SuggestionType(str, enum.Enum):
    TITLE = "title"
    SUMMARY = "summary"
    MERGE_LEARNINGS = "merge_learnings"


class ReviewStatus(str, enum.Enum):
    """Human review state shared by learnings and suggestions."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LearningType(str, enum.Enum):
    CORRECTION = "correction"  # User corrected the assistant
    POSITIVE = "positive"  # User praised a behaviour
    IMPLICIT = "implicit"  # Preference inferred from phrasing


class LearningScope(str, enum.Enum):
    GLOBAL = "global"
    PROJECT = "project"


class Conversation(Base):
    """A synced conversation, unique per (provider, external_id)."""

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preview_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    project_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    source_file_path: Mapped[Optional[str]] = mapped_column(
        String(1024), nullable=True
    )

    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    embedding: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    raw_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )  # Soft-delete tombstone

    # Relationships
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.timestamp",
    )
    learnings: Mapped[list["Learning"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    workflow_signature: Mapped[Optional["WorkflowSignature"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_conversation_provider_external"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, provider={self.provider!r}, "
            f"title={self.title!r})>"
        )


class Message(Base):
    """A single message, owned by exactly one conversation."""

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey(
            "messages.id", ondelete="SET NULL", deferrable=True, initially="DEFERRED"
        ),
        nullable=True,
    )  # Threading link; parents may arrive after children in one batch

    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    raw_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "external_id", name="uq_message_conversation_external"
        ),
        Index("idx_messages_conversation_timestamp", "conversation_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, role={self.role!r}, external_id={self.external_id!r})>"


class AnalysisQueueItem(Base):
    """A unit of analysis work in the job ledger.

    At most one item per (conversation_id, analysis_type) may be pending or
    claimed; the partial unique index below enforces it. ``results_applied_at``
    is set exactly once, when the result has been merged into derived tables.
    """

    __tablename__ = "analysis_queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    analysis_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=QueueStatus.PENDING.value
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Claim lease
    claimed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Provenance of the result
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    analysis_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    backend: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    results_applied_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    __table_args__ = (
        Index(
            "idx_queue_active_unique",
            "conversation_id",
            "analysis_type",
            unique=True,
            sqlite_where=text("status IN ('pending', 'claimed')"),
            postgresql_where=text("status IN ('pending', 'claimed')"),
        ),
        Index("idx_queue_claim_order", "status", "priority", "created_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_QUEUE_STATUSES

    def __repr__(self) -> str:
        return (
            f"<AnalysisQueueItem(id={self.id}, type={self.analysis_type!r}, "
            f"status={self.status!r}, attempts={self.attempt_count}/{self.max_attempts})>"
        )


class AnalysisSuggestion(Base):
    """A staged, human-reviewable proposal produced by analysis.

    Suggestions are never applied to primary tables until approved.
    """

    __tablename__ = "analysis_suggestions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    queue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("analysis_queue.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    suggestion_type: Mapped[str] = mapped_column(String(30), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    suggested_value: Mapped[str] = mapped_column(Text, nullable=False)
    original_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    merge_source_ids: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )  # JSON-encoded list of learning ids

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReviewStatus.PENDING.value, index=True
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    @property
    def merge_source_id_list(self) -> list[str]:
        if not self.merge_source_ids:
            return []
        return list(json.loads(self.merge_source_ids))

    def __repr__(self) -> str:
        return (
            f"<AnalysisSuggestion(id={self.id}, type={self.suggestion_type!r}, "
            f"status={self.status!r})>"
        )


class Learning(Base):
    """A reusable user preference or correction awaiting or past review.

    The logical dedup key is (normalized_rule, learning_type). Under merge,
    ``evidence_count`` only grows, ``confidence`` never decreases and
    ``last_detected_at`` only moves forward.
    """

    __tablename__ = "learnings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Weak reference: the learning outlives its source message
    message_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )

    learning_type: Mapped[str] = mapped_column(String(20), nullable=False)
    pattern: Mapped[str] = mapped_column(Text, nullable=False, default="")
    extracted_rule: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_rule: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)  # 0.0 to 1.0
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReviewStatus.PENDING.value, index=True
    )
    scope: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LearningScope.PROJECT.value
    )

    # Provenance
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    detector_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source_queue_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    rule_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    last_detected_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    conversation: Mapped["Conversation"] = relationship(back_populates="learnings")

    __table_args__ = (
        Index("idx_learnings_rule_type", "normalized_rule", "learning_type"),
        Index("idx_learnings_queue_hash", "source_queue_id", "rule_hash"),
    )

    def __repr__(self) -> str:
        return (
            f"<Learning(id={self.id}, type={self.learning_type!r}, "
            f"rule={self.extracted_rule!r}, confidence={self.confidence:.2f})>"
        )


def build_signature(action: str, artifact: Optional[str], domains: list[str]) -> str:
    """Derive the clustering key ``action|artifact|d1,d2`` (lowercase, domains sorted)."""
    joined = ",".join(sorted({d.strip().lower() for d in domains if d.strip()}))
    return f"{action}|{artifact or ''}|{joined}".lower()


class WorkflowSignature(Base):
    """The canonical (action, artifact, domains) summary of one conversation."""

    __tablename__ = "workflow_signatures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    signature: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    artifact: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    domains: Mapped[str] = mapped_column(
        String(255), nullable=False, default=""
    )  # Sorted, comma-separated
    snippet: Mapped[str] = mapped_column(Text, nullable=False, default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_priming: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Provenance
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    detector_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source_queue_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    conversation: Mapped["Conversation"] = relationship(
        back_populates="workflow_signature"
    )

    @property
    def domain_list(self) -> list[str]:
        return [d for d in self.domains.split(",") if d]

    def set_components(
        self, action: str, artifact: Optional[str], domains: list[str]
    ) -> None:
        """Set action/artifact/domains and re-derive ``signature`` from them."""
        self.action = action.lower()
        self.artifact = (artifact or "").lower()
        self.domains = ",".join(sorted({d.strip().lower() for d in domains if d.strip()}))
        self.signature = build_signature(self.action, self.artifact, self.domain_list)

    def __repr__(self) -> str:
        return (
            f"<WorkflowSignature(conversation_id={self.conversation_id}, "
            f"signature={self.signature!r})>"
        )
