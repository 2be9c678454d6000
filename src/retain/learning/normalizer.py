"""
Learning rule normalization and screening.

Canonicalizes free-text rules and decides whether a rule is reusable enough
to store: generic requests, questions, rules tied to a specific file, URL or
ticket, and rules about this tool's own internals are screened out.
"""

import re

from retain.models.db import LearningType

# Requests and questions rather than preferences
BLOCKED_PREFIXES = (
    "i need",
    "i want",
    "i think",
    "can you",
    "could you",
    "what is",
    "how do",
    "explain",
    "please help",
)

PREFERENCE_MARKERS = [
    re.compile(p)
    for p in (
        r"\bprefer\b",
        r"\bpreferred\b",
        r"\balways\b",
        r"\bnever\b",
        r"\bavoid\b",
        r"\bdo not\b",
        r"\bdon't\b",
        r"\bmust\b",
        r"\bshould\b",
        r"\buse\b.+\binstead\b",
        r"\binstead of\b",
        r"\bbetter to\b",
    )
]

# Literal locations: paths, URIs, file extensions
LOCATION_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?:^|\s)(~?/|\.{1,2}/)[^\s]+",  # Unix-like relative/absolute paths
        r"\b[a-zA-Z]:\\[^\s]+",  # Windows paths
        r"(?:https?://|www\.)\S+",  # URLs
        r"\b[a-z][a-z0-9+.-]*://\S+",  # Any URI scheme (e.g. ui://)
        r"\btemplateuri\b\s*[:=]",
        r"\bhtml\s*/\s*css\b",
        r"\.(html|css|js|ts|tsx|jsx|swift|py|rb|go|rs|java|kt|json|yaml|yml|toml|md"
        r"|sql|csv|xml|graphql|sh)\b",
    )
]

ISSUE_ID_PATTERN = re.compile(r"#\d{3,}\b")
# Matched against the original casing; UTF-8 style encodings are not tickets
TICKET_ID_PATTERN = re.compile(r"\b(?!UTF-)[A-Z]{2,}-\d+\b")

TASK_SYSTEM_PATTERNS = [
    re.compile(p)
    for p in (
        r"\bsemantic mode\b",
        r"\bdeterministic\b",
        r"\bfallback\b",
        r"\bindex(?:ing)?\b",
        r"\bembedding(?:s)?\b",
        r"\bsqlite\b",
        r"\bschema\b",
        r"\bmigration\b",
        r"\bsync\b",
        r"\bnetwork error\b",
        r"\bapi error\b",
        r"\bgemini\b",
        r"\bclaude\b",
        r"\bcodex\b",
    )
]

SYSTEM_INTERNAL_PATTERNS = [
    re.compile(p)
    for p in (
        r"\bgemini\b",
        r"\bclaude\b",
        r"\bcodex\b",
        r"\bsemantic\b",
        r"\bdeterministic\b",
        r"\bembedding(?:s)?\b",
        r"\bindex(?:ing)?\b",
        r"\bsqlite\b",
        r"\bdatabase\b",
        r"\bmigration\b",
        r"\bschema\b",
        r"\bsync\b",
        r"\bapi error\b",
        r"\bnetwork error\b",
        r"\bsetupcomplete\b",
        r"\btooling\b",
        r"\bworkflow det\b",
    )
]

HARD_PREFIXES = ("always ", "never ", "only ")

MIN_RULE_LENGTH = 8
MIN_IMPLICIT_CONFIDENCE = 0.6

_WHITESPACE = re.compile(r"\s+")


def normalize(rule: str) -> str:
    """Trim, lowercase and collapse whitespace: the dedup form of a rule."""
    return _WHITESPACE.sub(" ", rule.strip().lower())


def _matches_any(patterns: list[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def has_preference_marker(rule: str) -> bool:
    normalized = normalize(rule)
    if normalized.endswith("?"):
        return False
    return _matches_any(PREFERENCE_MARKERS, normalized)


def is_task_specific(rule: str) -> bool:
    """True if the rule references a concrete path, URI, ticket or system detail."""
    normalized = normalize(rule)
    if _matches_any(LOCATION_PATTERNS, normalized):
        return True
    if ISSUE_ID_PATTERN.search(normalized) or TICKET_ID_PATTERN.search(rule):
        return True
    return _matches_any(TASK_SYSTEM_PATTERNS, normalized)


def is_system_internal(rule: str) -> bool:
    return _matches_any(SYSTEM_INTERNAL_PATTERNS, normalize(rule))


def should_drop_task_specific(rule: str) -> bool:
    """Absolute rules ("always/never/only ...") pinned to a literal location."""
    normalized = normalize(rule)
    if not is_task_specific(rule):
        return False
    if not normalized.startswith(HARD_PREFIXES):
        return False
    return _matches_any(LOCATION_PATTERNS, normalized)


def should_drop(rule: str) -> bool:
    return is_system_internal(rule) or should_drop_task_specific(rule)


def is_actionable(rule: str) -> bool:
    normalized = normalize(rule)
    if len(normalized) < MIN_RULE_LENGTH:
        return False
    if normalized.startswith(BLOCKED_PREFIXES):
        return False
    return not should_drop(normalized)


def should_store(rule: str, learning_type: str, confidence: float) -> bool:
    """
    Gate a candidate learning before it reaches storage.

    Corrections only need to be actionable. Positive and implicit learnings
    also need confidence >= 0.6 and a preference marker ("prefer", "always",
    "use X instead", ...), and must not be phrased as a question.
    """
    if should_drop(rule) or not is_actionable(rule):
        return False

    if learning_type == LearningType.CORRECTION.value:
        return True

    if confidence < MIN_IMPLICIT_CONFIDENCE:
        return False
    return has_preference_marker(rule)
