"""
Deterministic workflow signature extraction.

Reads the first substantive user request of a conversation and maps it onto
an (action, artifact, domains) triple with keyword vocabularies. Setup
requests ("warmup", "read the docs first") become context-priming
signatures; generic questions produce nothing.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from retain.learning.detector import should_exclude_content
from retain.models.db import Conversation, Message, Role, build_signature

logger = logging.getLogger(__name__)

WORKFLOW_SOURCE = "deterministic"
WORKFLOW_DETECTOR_VERSION = "deterministic-v2"
SNIPPET_LENGTH = 200
DEFAULT_CONFIDENCE = 0.7

PRIMING_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^\s*warm[\s-]?up\b",
        r"\bread (?:the |our )?(?:docs|documentation|readme|codebase)(?: first)?\b",
        r"\bread (?:claude|agents)\.md\b",
        r"\bfamiliari[sz]e yourself\b",
        r"\bget familiar with\b",
        r"\b(?:load|prime) (?:the |your )?context\b",
        r"\bunderstand the (?:codebase|repo|project) first\b",
    )
]

GENERIC_QUESTION = re.compile(
    r"^\s*(?:what(?:'s| is| are| does)|who is|why (?:is|does|do)|how (?:does|do)"
    r"|can you explain|explain what|tell me about|is it|is there)\b",
    re.IGNORECASE,
)

# (pattern, action); the earliest match in the request wins
ACTION_KEYWORDS = [
    (re.compile(p, re.IGNORECASE), action)
    for p, action in (
        (r"\bsummari[sz]e\b|\btl;?dr\b|\brecap\b", "summarize"),
        (r"\btranslate\b", "translate"),
        (r"\bextract\b|\btranscribe\b|\bpull out\b", "extract"),
        (r"\breview\b|\bproofread\b", "review"),
        (r"\bdebug\b|\btroubleshoot\b", "debug"),
        (r"\bfix\b", "fix"),
        (r"\banaly[sz]e\b|\bbreak down\b", "analyze"),
        (r"\bresearch\b|\binvestigate\b", "research"),
        (r"\bdesign\b", "design"),
        (r"\bplan\b|\boutline\b", "plan"),
        (r"\bprepare\b|\bprep\b", "prepare"),
        (r"\borgani[sz]e\b|\bsort\b", "organize"),
        (r"\bwrite\b|\bdraft\b|\bcompose\b|\bcreate\b|\bgenerate\b", "write"),
    )
]

ARTIFACT_KEYWORDS = [
    (re.compile(p, re.IGNORECASE), artifact)
    for p, artifact in (
        (r"\btimestamps?\b", "timestamps"),
        (r"\bslides?\b|\bdeck\b|\bpresentation\b", "deck"),
        (r"\bdocs\b|\bdocumentation\b|\breadme\b", "documentation"),
        (r"\bnotes\b|\bminutes\b", "notes"),
        (r"\bspec\b|\brequirements\b|\bprd\b", "spec"),
        (r"\breport\b", "report"),
        (r"\bproposal\b", "proposal"),
        (r"\bchecklist\b", "checklist"),
        (r"\bblog post\b|\bpost\b|\btweet\b|\bnewsletter\b", "post"),
        (r"\btranscripts?\b", "transcript"),
        (r"\bsummary\b", "summary"),
        (r"\bworkflow\b|\bprocess\b", "workflow"),
    )
]

DOMAIN_KEYWORDS = [
    (re.compile(p, re.IGNORECASE), domain)
    for p, domain in (
        (r"\bvideos?\b|\byoutube\b|\bpodcasts?\b|\brecordings?\b", "video"),
        (r"\bcode\b|\bbugs?\b|\bapi\b|\bfunctions?\b|\brepo\b|\bdeploy\w*\b|\btests?\b", "engineering"),
        (r"\bmeetings?\b|\bstandups?\b|\bcalls?\b", "meeting"),
        (r"\bmarketing\b|\bcampaigns?\b|\bseo\b", "marketing"),
        (r"\bsales\b|\bprospects?\b|\bleads?\b|\bdeals?\b", "sales"),
        (r"\bproduct\b|\broadmap\b|\bfeatures?\b", "product"),
        (r"\bcustomers?\b|\bsupport\b|\btickets?\b", "support"),
        (r"\btranslat\w*\b", "translation"),
        (r"\bpapers?\b|\bstudy\b|\bstudies\b|\bliterature\b", "research"),
        (r"\bblog\b|\barticles?\b|\bnewsletter\b", "content"),
    )
]


@dataclass
class WorkflowCandidate:
    action: str
    artifact: Optional[str]
    domains: list[str] = field(default_factory=list)
    snippet: str = ""
    confidence: float = DEFAULT_CONFIDENCE
    is_priming: bool = False
    version: int = 1
    source: str = WORKFLOW_SOURCE
    detector_version: str = WORKFLOW_DETECTOR_VERSION

    @property
    def signature(self) -> str:
        return build_signature(self.action, self.artifact, self.domains)


def _earliest(keywords: list[tuple[re.Pattern, str]], text: str) -> Optional[str]:
    best: Optional[tuple[int, str]] = None
    for pattern, value in keywords:
        match = pattern.search(text)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), value)
    return best[1] if best else None


def _all_matching(keywords: list[tuple[re.Pattern, str]], text: str) -> list[str]:
    return sorted({value for pattern, value in keywords if pattern.search(text)})


def first_request(conversation: Conversation, messages: Sequence[Message]) -> str:
    """The first user message that is not injected/system content."""
    for message in sorted(messages, key=lambda m: m.timestamp):
        if message.role != Role.USER.value:
            continue
        content = message.content.strip()
        if content and not should_exclude_content(content):
            return content
    return (conversation.preview_text or conversation.title or "").strip()


class WorkflowSignatureExtractor:
    """Keyword-vocabulary extractor for workflow signatures."""

    def extract(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> Optional[WorkflowCandidate]:
        request = first_request(conversation, messages)
        if not request:
            return None
        snippet = request[:SNIPPET_LENGTH]

        if any(p.search(request) for p in PRIMING_PATTERNS):
            return WorkflowCandidate(
                action="prime",
                artifact="context",
                domains=["setup"],
                snippet=snippet,
                is_priming=True,
            )

        if GENERIC_QUESTION.search(request):
            return None

        action = _earliest(ACTION_KEYWORDS, request)
        if action is None:
            return None
        artifact = _earliest(ARTIFACT_KEYWORDS, request)
        domains = _all_matching(DOMAIN_KEYWORDS, request)
        if artifact is None and not domains:
            return None

        candidate = WorkflowCandidate(
            action=action, artifact=artifact, domains=domains, snippet=snippet
        )
        logger.debug(f"Extracted {candidate.signature} from conversation {conversation.id}")
        return candidate
