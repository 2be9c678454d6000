"""
Analysis payload construction.

Conversations are minimized per analysis type and payload mode, scrubbed of
common secrets and PII, and encoded with their queue item references. The
encoded size is checked before anything is sent to a backend.
"""

import json
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from typing import Optional, Sequence

from retain.exceptions import PayloadTooLargeError
from retain.models.db import AnalysisQueueItem, AnalysisType, Conversation, Message

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
PAYLOAD_MODES = ("minimized", "expanded")

# (analysis_type, mode) -> (max chars per message, max messages)
PAYLOAD_LIMITS: dict[tuple[str, str], tuple[int, int]] = {
    (AnalysisType.WORKFLOW.value, "minimized"): (300, 10),
    (AnalysisType.WORKFLOW.value, "expanded"): (800, 25),
    (AnalysisType.DEDUPE.value, "minimized"): (200, 5),
    (AnalysisType.DEDUPE.value, "expanded"): (400, 10),
    (AnalysisType.LEARNING.value, "minimized"): (500, 20),
    (AnalysisType.LEARNING.value, "expanded"): (1200, 40),
}

REDACTIONS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "[PHONE]"),
    (re.compile(r"sk-[A-Za-z0-9_-]{20,}"), "[API_KEY]"),
    (re.compile(r"ghp_[A-Za-z0-9]{36}"), "[GITHUB_TOKEN]"),
    (re.compile(r"AKIA[A-Z0-9]{16}"), "[AWS_ACCESS_KEY]"),
    (
        re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"),
        "[SSH_KEY_REDACTED]",
    ),
    (re.compile(r"(?i)(?:password|passwd|pwd)\s*[:=]\s*\S+"), "[PASSWORD_REDACTED]"),
]

# 40-char base64-ish runs are only secrets if they contain / or +
_AWS_SECRET = re.compile(r"[A-Za-z0-9/+=]{40}")


@dataclass
class MessageData:
    id: Optional[str]
    role: str
    content: str


@dataclass
class ConversationData:
    id: str
    title: Optional[str]
    messages: list[MessageData] = field(default_factory=list)
    was_truncated: bool = False

    @classmethod
    def from_models(
        cls, conversation: Conversation, messages: Sequence[Message]
    ) -> "ConversationData":
        return cls(
            id=str(conversation.id),
            title=conversation.title,
            messages=[
                MessageData(id=str(m.id), role=m.role, content=m.content)
                for m in sorted(messages, key=lambda m: m.timestamp)
            ],
        )

    def truncated(self, max_chars: int, max_messages: int) -> "ConversationData":
        """Keep the first and last halves of the messages and cap each message's length."""
        was_truncated = self.was_truncated
        kept = self.messages
        if len(kept) > max_messages:
            half = max_messages // 2
            kept = kept[:half] + kept[len(kept) - half :]
            was_truncated = True

        trimmed = []
        for message in kept:
            content = message.content
            if len(content) > max_chars:
                content = content[:max_chars] + "..."
                was_truncated = True
            trimmed.append(MessageData(id=message.id, role=message.role, content=content))

        return ConversationData(
            id=self.id, title=self.title, messages=trimmed, was_truncated=was_truncated
        )

    def for_summary(self) -> "ConversationData":
        """Title plus first and last message only."""
        if len(self.messages) <= 2:
            return self
        return ConversationData(
            id=self.id,
            title=self.title,
            messages=[self.messages[0], self.messages[-1]],
            was_truncated=True,
        )


@dataclass
class PreparedPayload:
    body: str
    included_queue_ids: list[uuid.UUID]
    dropped_queue_ids: list[uuid.UUID]

    @property
    def size_bytes(self) -> int:
        return len(self.body.encode("utf-8"))


def redact_text(text: str) -> str:
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return _AWS_SECRET.sub(
        lambda m: "[AWS_SECRET_KEY]" if ("/" in m.group(0) or "+" in m.group(0)) else m.group(0),
        text,
    )


def redact(conversation: ConversationData) -> ConversationData:
    return ConversationData(
        id=conversation.id,
        title=conversation.title,
        messages=[
            MessageData(id=m.id, role=m.role, content=redact_text(m.content))
            for m in conversation.messages
        ],
        was_truncated=conversation.was_truncated,
    )


def minimize(
    conversation: ConversationData, analysis_type: str, mode: str
) -> ConversationData:
    if analysis_type == AnalysisType.SUMMARY.value:
        return conversation.for_summary()
    if mode not in PAYLOAD_MODES:
        raise ValueError(f"Unknown payload mode: {mode}")
    max_chars, max_messages = PAYLOAD_LIMITS[(analysis_type, mode)]
    return conversation.truncated(max_chars, max_messages)


def build_payload(
    queue_items: Sequence[AnalysisQueueItem],
    conversations: Sequence[ConversationData],
    analysis_type: str,
    mode: str = "minimized",
    max_payload_bytes: int = 500_000,
) -> PreparedPayload:
    """
    Encode the batch for a backend.

    Queue items whose conversation is not in ``conversations`` are reported
    as dropped. Raises ``PayloadTooLargeError`` if the encoded payload is
    larger than ``max_payload_bytes``.
    """
    by_id = {c.id: c for c in conversations}
    included = [item for item in queue_items if str(item.conversation_id) in by_id]
    included_ids = {item.id for item in included}
    dropped = [item.id for item in queue_items if item.id not in included_ids]

    prepared = [
        redact(minimize(by_id[str(item.conversation_id)], analysis_type, mode))
        for item in included
    ]
    body = json.dumps(
        {
            "queue_items": [
                {"queue_id": str(item.id), "conversation_id": str(item.conversation_id)}
                for item in included
            ],
            "conversations": [asdict(c) for c in prepared],
            "analysis_type": analysis_type,
            "schema_version": SCHEMA_VERSION,
        },
        ensure_ascii=False,
    )
    payload = PreparedPayload(
        body=body,
        included_queue_ids=[item.id for item in included],
        dropped_queue_ids=dropped,
    )
    if payload.size_bytes > max_payload_bytes:
        raise PayloadTooLargeError(payload.size_bytes, max_payload_bytes)

    if dropped:
        logger.warning(f"{len(dropped)} queue items dropped: conversation not in batch")
    return payload
