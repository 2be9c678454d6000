"""
Deterministic correction detector.

Scans user messages for corrections ("no, use X instead"), explicit
preferences ("always run the tests first") and, optionally, positive feedback,
and turns each hit into an actionable rule.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from retain.learning import normalizer
from retain.models.db import LearningType, Message, Role

logger = logging.getLogger(__name__)

DETECTOR_SOURCE = "deterministic"
DETECTOR_VERSION = "deterministic-v2"

# (pattern, weight); first match wins
CORRECTION_PATTERNS = [
    (re.compile(p, re.IGNORECASE), weight)
    for p, weight in (
        # Direct corrections
        (r"no,?\s*(actually|instead|use|it'?s?|that'?s?)", 0.95),
        (r"that'?s?\s*(not|wrong|incorrect)", 0.9),
        (r"you'?re?\s*(wrong|mistaken|incorrect)", 0.9),
        (r"that\s*doesn'?t?\s*(work|compile|run)", 0.85),
        # Explicit preferences
        (r"i\s*(?:would\s+)?prefer\s+(?:to\s+|that\s+)?", 0.85),
        (r"please\s*(use|don't|always|never)", 0.85),
        (r"(always|never)\s+(use|do|add|include|avoid|keep)", 0.9),
        # Style
        (r"(don't|do\s*not)\s*(add|include|use)\s*(comments|docstrings|type\s*hints)", 0.9),
        (r"keep\s*(it|things|code)\s*(simple|minimal|clean)", 0.8),
        (r"too\s*(verbose|complex|complicated)", 0.8),
        # Technical
        (r"use\s+(\w+)\s+instead\s+of\s+(\w+)", 0.95),
        (r"should\s*(be|use|have)\s+(\w+)", 0.85),
        (r"the\s*(correct|right|proper)\s*(way|approach|method)", 0.85),
    )
]

# (keyword, rule, weight)
POSITIVE_KEYWORDS = [
    ("concise", "Keep responses concise", 0.8),
    ("brief", "Keep responses brief", 0.75),
    ("step by step", "Explain step by step", 0.8),
    ("examples", "Include examples", 0.75),
    ("tests", "Include tests when relevant", 0.75),
    ("no comments", "Avoid unnecessary comments", 0.8),
    ("clean", "Keep output clean and uncluttered", 0.7),
]

# Case-sensitive markers of injected or system-generated content
SYSTEM_MESSAGE_MARKERS = (
    "Hello! I'm Claude Code",
    "I'm Claude Code, Anthropic's",
    "I'm ready to help",
    "I'm in read-only mode",
    "This session is being continued from a previous conversation",
    "The conversation is summarized below",
    "session-continuation",
    "local-command-caveat",
    "Caveat: The messages below were generated",
    "<command-name>",
    "<command-message>",
    "<command-args>",
    "<system-reminder>",
    "Analysis:\nLet me analyze",
)

GENERIC_CONTENT_MARKERS = (
    "ready to help you",
    "ready to assist",
    "how can i help",
    "what would you like",
    "let me analyze this",
    "i understand you want",
)

VALID_RULE_PREFIXES = ("use ", "never ", "always ", "keep ", "avoid ", "prefer ", "user prefers")

ROLE_LABELS = {
    Role.USER.value: "User",
    Role.ASSISTANT.value: "Assistant",
    Role.SYSTEM.value: "System",
    Role.TOOL.value: "Tool",
}

_EDGE_PUNCTUATION = ".,!?:;"
_USE_INSTEAD_OF = re.compile(r"use\s+(.+?)\s+instead\s+of\s+(.+?)(?:\.|$)", re.IGNORECASE)
_USE_INSTEAD = re.compile(r"use\s+(.+?)\s+instead(?:\.|$)", re.IGNORECASE)
_INSTEAD_USE = re.compile(r"instead\s+use\s+(.+?)(?:\.|$)", re.IGNORECASE)
_NEVER = re.compile(r"(?:don't|do not|never)\s+(.+?)(?:\.|$)", re.IGNORECASE)
_ALWAYS = re.compile(r"always\s+(.+?)(?:\.|$)", re.IGNORECASE)
_KEEP = re.compile(
    r"(?:keep|make)\s+(?:it|things|code|responses?)\s+"
    r"(simple|minimal|clean|shorter?|concise|brief)",
    re.IGNORECASE,
)
_PREFER = re.compile(r"(?:i\s+(?:would\s+)?)?prefer\s+(.+?)(?:\.|$)", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"[.!?]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class DetectorConfig:
    min_confidence: float = 0.7
    context_window: int = 3
    enable_positive_feedback: bool = False


@dataclass
class Detection:
    """A single learning found in a user message."""

    learning_type: str
    pattern: str
    rule: str
    confidence: float
    message_id: uuid.UUID
    conversation_id: uuid.UUID
    timestamp: datetime
    context: str
    evidence: str


def sanitize_rule(rule: str) -> Optional[str]:
    cleaned = _WHITESPACE.sub(" ", rule.strip()).strip(" .,:;\"")
    # Keep quotes that wrap a term; drop only a dangling one
    if cleaned.count("'") % 2:
        cleaned = cleaned.strip(" '")
    if not cleaned or "\n" in cleaned:
        return None
    if "->" in cleaned:
        return None
    if cleaned.count("(") != cleaned.count(")"):
        return None
    if cleaned.count('"') % 2 != 0:
        return None
    return cleaned


def is_valid_rule(rule: str) -> bool:
    """Length 10-160, at most two sentences, no markup, imperative prefix."""
    trimmed = rule.strip()
    if not 10 <= len(trimmed) <= 160:
        return False
    sentences = [s for s in _SENTENCE_SPLIT.split(trimmed) if s]
    if len(sentences) > 2:
        return False
    if "<" in trimmed and ">" in trimmed:
        return False
    return trimmed.lower().startswith(VALID_RULE_PREFIXES)


def _clean_fragment(fragment: str) -> str:
    return fragment.strip().strip(_EDGE_PUNCTUATION)


def extract_rule(content: str) -> Optional[str]:
    """Turn a correction into an imperative rule, or None if no shape matches."""
    match = _USE_INSTEAD_OF.search(content)
    if match:
        preferred = _clean_fragment(match.group(1))
        avoid = _clean_fragment(match.group(2))
        return sanitize_rule(f"Use '{preferred}' instead of '{avoid}'")

    match = _USE_INSTEAD.search(content) or _INSTEAD_USE.search(content)
    if match:
        return sanitize_rule(f"Use '{_clean_fragment(match.group(1))}' instead")

    match = _NEVER.search(content)
    if match:
        return sanitize_rule(f"Never {match.group(1).strip()}")

    match = _ALWAYS.search(content)
    if match:
        return sanitize_rule(f"Always {match.group(1).strip()}")

    match = _KEEP.search(content)
    if match:
        preference = match.group(1).strip().lower()
        if preference in ("short", "shorter"):
            preference = "concise"
        return sanitize_rule(f"Keep responses {preference}")

    lowered = content.lower()
    if any(p in lowered for p in ("too verbose", "keep it shorter", "keep it short")):
        return sanitize_rule("Keep responses concise")

    match = _PREFER.search(content)
    if match:
        return sanitize_rule(f"User prefers {match.group(1).strip()}")

    return None


def evidence_snippet(content: str, max_length: int = 220) -> str:
    trimmed = content.strip()
    if len(trimmed) <= max_length:
        return trimmed
    return trimmed[:max_length] + "..."


def _contains_system_marker(text: str) -> bool:
    return any(marker in text for marker in SYSTEM_MESSAGE_MARKERS)


def should_exclude_content(content: str) -> bool:
    if _contains_system_marker(content):
        return True
    lowered = content.lower()
    return any(marker in lowered for marker in GENERIC_CONTENT_MARKERS)


def _is_standalone_preference(content: str) -> bool:
    return content.strip().lower().startswith(("always", "never", "please"))


class CorrectionDetector:
    """Pattern-based learning detector over a conversation's messages."""

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()

    def analyze(
        self, conversation_id: uuid.UUID, messages: Sequence[Message]
    ) -> list[Detection]:
        """
        Detect learnings in user messages, in timestamp order.

        A correction needs an earlier assistant message to correct unless it
        reads as a standalone preference ("always ...", "never ...", "please ...").
        """
        ordered = sorted(messages, key=lambda m: m.timestamp)
        results: list[Detection] = []

        for index, message in enumerate(ordered):
            if message.role != Role.USER.value:
                continue
            if len(message.content.strip()) < 6:
                continue
            if should_exclude_content(message.content):
                continue

            previous = ordered[:index]
            has_assistant = any(m.role == Role.ASSISTANT.value for m in previous)

            detection = self._detect_correction(
                message, previous, conversation_id, has_assistant
            )
            if detection and detection.confidence >= self.config.min_confidence:
                results.append(detection)

            if self.config.enable_positive_feedback:
                detection = self._detect_positive(
                    message, previous, conversation_id, has_assistant
                )
                if detection and detection.confidence >= self.config.min_confidence:
                    results.append(detection)

        logger.debug(f"Detected {len(results)} learnings in conversation {conversation_id}")
        return results

    def _detect_correction(
        self,
        message: Message,
        previous: Sequence[Message],
        conversation_id: uuid.UUID,
        has_assistant: bool,
    ) -> Optional[Detection]:
        content = message.content
        if not has_assistant and not _is_standalone_preference(content):
            return None

        for pattern, weight in CORRECTION_PATTERNS:
            match = pattern.search(content)
            if not match:
                continue

            context = self.build_context(previous, message)
            if _contains_system_marker(context):
                continue

            rule = extract_rule(content)
            if rule is None or not is_valid_rule(rule):
                continue
            if not normalizer.is_actionable(rule):
                continue

            return Detection(
                learning_type=LearningType.CORRECTION.value,
                pattern=match.group(0),
                rule=rule,
                confidence=weight,
                message_id=message.id,
                conversation_id=conversation_id,
                timestamp=message.timestamp,
                context=context,
                evidence=evidence_snippet(content),
            )
        return None

    def _detect_positive(
        self,
        message: Message,
        previous: Sequence[Message],
        conversation_id: uuid.UUID,
        has_assistant: bool,
    ) -> Optional[Detection]:
        if not has_assistant:
            return None
        content = message.content
        if len(content.strip()) < 10:
            return None

        lowered = content.lower()
        for keyword, rule, weight in POSITIVE_KEYWORDS:
            if keyword not in lowered:
                continue
            context = self.build_context(previous, message)
            if _contains_system_marker(context):
                continue
            return Detection(
                learning_type=LearningType.POSITIVE.value,
                pattern=keyword,
                rule=rule,
                confidence=weight,
                message_id=message.id,
                conversation_id=conversation_id,
                timestamp=message.timestamp,
                context=context,
                evidence=evidence_snippet(content),
            )
        return None

    def build_context(self, previous: Sequence[Message], current: Message) -> str:
        """The last few messages before ``current`` plus ``current`` itself."""
        window = previous[-self.config.context_window :] if self.config.context_window else []
        lines = [
            f"{ROLE_LABELS.get(m.role, m.role.title())}: {m.content[:200]}" for m in window
        ]
        lines.append(f"User: {current.content[:240]}")
        return "\n".join(lines)
