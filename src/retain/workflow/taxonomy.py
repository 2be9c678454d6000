"""
Closed workflow vocabulary.

Raw (action, artifact, domains) output from an extractor is mapped through
alias tables onto canonical tokens. Unknown tokens are rejected, never passed
through, so that identical intents always produce identical signatures.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from retain.models.db import build_signature

ALLOWED_ACTIONS = frozenset(
    {
        "analyze",
        "debug",
        "design",
        "extract",
        "fix",
        "organize",
        "plan",
        "prepare",
        "research",
        "review",
        "summarize",
        "translate",
        "write",
        "none",
    }
)

ALLOWED_ARTIFACTS = frozenset(
    {
        "analysis",
        "checklist",
        "deck",
        "documentation",
        "notes",
        "plan",
        "post",
        "proposal",
        "report",
        "spec",
        "summary",
        "timestamps",
        "transcript",
        "workflow",
        "none",
    }
)

ALLOWED_DOMAINS = frozenset(
    {
        "content",
        "engineering",
        "marketing",
        "meeting",
        "product",
        "research",
        "sales",
        "support",
        "translation",
    }
)

ACTION_ALIASES = {
    "summarization": "summarize",
    "summary": "summarize",
    "analyse": "analyze",
    "analysis": "analyze",
    "draft": "write",
    "compose": "write",
    "create": "write",
    "generate": "write",
    "prep": "prepare",
    "organise": "organize",
    "transcribe": "extract",
    "extract_information": "extract",
    "skip": "none",
    "candidate": "none",
}

ARTIFACT_ALIASES = {
    "presentation": "deck",
    "slide_deck": "deck",
    "docs": "documentation",
    "doc": "documentation",
    "requirements": "spec",
    "transcripts": "transcript",
    "minutes": "notes",
}

DOMAIN_ALIASES = {
    "eng": "engineering",
    "dev": "engineering",
    "product_management": "product",
    "bizdev": "sales",
    "customer_support": "support",
}

MIN_CONFIDENCE = 0.65


@dataclass(frozen=True)
class SanitizedWorkflow:
    action: str
    artifact: Optional[str]
    domains: tuple[str, ...]

    @property
    def signature(self) -> str:
        return build_signature(self.action, self.artifact, list(self.domains))


def normalize_token(value: str) -> str:
    return value.strip().lower().replace(" ", "_").replace("-", "_")


def canonical_action(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    token = normalize_token(value)
    if not token:
        return None
    mapped = ACTION_ALIASES.get(token, token)
    return mapped if mapped in ALLOWED_ACTIONS else None


def canonical_artifact(value: Optional[str]) -> Optional[str]:
    """Canonical artifact, or None for empty, unknown or ``none``."""
    if not value:
        return None
    token = normalize_token(value)
    if not token:
        return None
    mapped = ARTIFACT_ALIASES.get(token, token)
    if mapped == "none" or mapped not in ALLOWED_ARTIFACTS:
        return None
    return mapped


def canonical_domains(values: Optional[Iterable[str]]) -> tuple[str, ...]:
    """Known domains only, deduplicated and sorted."""
    output = set()
    for value in values or ():
        token = normalize_token(value)
        if not token:
            continue
        mapped = DOMAIN_ALIASES.get(token, token)
        if mapped in ALLOWED_DOMAINS:
            output.add(mapped)
    return tuple(sorted(output))


def sanitize(
    action: Optional[str],
    artifact: Optional[str],
    domains: Optional[Iterable[str]],
    confidence: Optional[float],
) -> Optional[SanitizedWorkflow]:
    """
    Canonicalize raw extractor output, or return None to reject it.

    Rejects unknown actions, the ``none`` action, confidence below 0.65 and
    results left with neither an artifact nor a domain.
    """
    canonical = canonical_action(action)
    if canonical is None or canonical == "none":
        return None
    if confidence is not None and confidence < MIN_CONFIDENCE:
        return None

    canonical_art = canonical_artifact(artifact)
    canonical_doms = canonical_domains(domains)
    if canonical_art is None and not canonical_doms:
        return None

    return SanitizedWorkflow(
        action=canonical, artifact=canonical_art, domains=canonical_doms
    )
