"""Heuristics applied to a sanitized workflow before it is stored."""

import re
from typing import Iterable, Optional

from retain.workflow.taxonomy import normalize_token

TOPIC_ACTIONS = frozenset({"prepare", "organize"})
GENERIC_ARTIFACTS = frozenset({"workflow", "plan", "materials"})
WEAK_ARTIFACT_ACTIONS = frozenset({"fix", "debug"})

ONE_OFF_PHRASES = (
    "one-off",
    "one off",
    "one-time",
    "one time",
    "single use",
    "single-use",
    "not repeatable",
    "not reusable",
    "quick fix",
    "hotfix",
    "temporary",
    "ad hoc",
    "just once",
    "only once",
)

STOPWORDS = frozenset(
    """
    a an and or the to for of in on with from at by as
    is are was were be been being
    i you we they he she it my our your their
    this that these those please help
    create make build write draft generate compose summarize summarise
    review fix debug analyze analyse analysis workflow plan planning
    organize organise prepare research design extract report notes summary
    proposal deck spec documentation docs prompt post message messages
    request requests project projects context learning extraction
    engineering product marketing sales meeting content support translation
    """.split()
)

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def _tokenize(text: str) -> list[str]:
    return [t for t in _NON_ALNUM.split(text.lower()) if t]


def topic_token(
    context: str, domains: Iterable[str], action: str, artifact: str
) -> Optional[str]:
    """First context token of length >= 3 that is not a stopword, domain, action or artifact."""
    domain_set = {normalize_token(d) for d in domains}
    for token in _tokenize(context):
        if len(token) < 3 or token in STOPWORDS:
            continue
        if token in (action, artifact) or token in domain_set:
            continue
        return token
    return None


def refine_artifact(
    action: str, artifact: Optional[str], domains: Iterable[str], context: str
) -> Optional[str]:
    """
    Specialize a generic artifact with a topic from the context.

    ``prepare``/``organize`` + ``workflow``/``plan``/``materials`` becomes
    ``<artifact>_<topic>`` (e.g. ``workflow_billing``). Without a usable
    topic the artifact is returned unchanged.
    """
    if artifact is None:
        return None
    action_token = normalize_token(action)
    artifact_token = normalize_token(artifact)
    if action_token not in TOPIC_ACTIONS or artifact_token not in GENERIC_ARTIFACTS:
        return artifact

    topic = topic_token(context, domains, action_token, artifact_token)
    if topic is None:
        return artifact
    return f"{artifact_token}_{topic}"


def derive_artifact_if_needed(
    action: str,
    artifact: Optional[str],
    domains: Iterable[str],
    context: str,
    snippet: Optional[str] = None,
) -> Optional[str]:
    """Fall back to a topic token when no artifact survived sanitizing."""
    if artifact and artifact.strip():
        return artifact
    combined = " ".join(part for part in (context, snippet) if part)
    return topic_token(combined, domains, normalize_token(action), "")


def should_exclude(
    action: str,
    artifact: Optional[str],
    snippet: Optional[str],
    context: str,
) -> bool:
    """Weak actions without an artifact, and one-off requests, are not workflows."""
    if normalize_token(action) in WEAK_ARTIFACT_ACTIONS:
        if not artifact or not artifact.strip():
            return True
    combined = " ".join(part for part in (snippet, context) if part).lower()
    return any(phrase in combined for phrase in ONE_OFF_PHRASES)
