"""System prompts for each analysis type."""

from retain.models.db import AnalysisType
from retain.workflow import taxonomy

BASE_INSTRUCTION = """You will receive input data containing:
- queue_items: array of {queue_id, conversation_id} mappings
- conversations: array of conversations with their messages

For EACH entry in queue_items, produce one result object carrying the same queue_id.
Return ONLY a JSON array with one result per queue item.
No markdown, no code fences, no commentary."""

WORKFLOW_PROMPT = """{base}

Analyze each conversation for automation workflow candidates: repeatable
tasks the user asks for again and again.

Choose action from: [{actions}]
Choose artifact from: [{artifacts}]
Choose domains from: [{domains}]
If there is no automation candidate, set action to "none" and leave artifact/domains empty.

Output format: [{{"queue_id": "<queue_id>", "action": "...", "artifact": "...", "domains": ["..."], "confidence": 0.8, "reasoning": "..."}}]"""

LEARNING_PROMPT = """{base}

Extract reusable user preferences and corrections from each conversation:
explicit corrections of the assistant, stated preferences and implicit
preferences the user repeatedly shows.

Each learning MUST include:
- type: one of correction, positive, implicit
- rule: an imperative, reusable rule ("Use X instead of Y", "Never ...")
- evidence: a short exact quote (5-25 words) from the message supporting the rule
- message_id: the id of the message containing the evidence
If you cannot find a supporting quote, return an empty learnings array for that queue_id.

Output format: [{{"queue_id": "<queue_id>", "learnings": [{{"type": "...", "rule": "...", "confidence": 0.8, "evidence": "...", "message_id": "..."}}]}}]"""

SUMMARY_PROMPT = """{base}

Write a concise title and a one-paragraph summary for each conversation,
focused on the main topic and its outcome.

Output format: [{{"queue_id": "<queue_id>", "suggested_title": "...", "suggested_summary": "...", "confidence": 0.8, "reasoning": "..."}}]"""

DEDUPE_PROMPT = """{base}

Identify learnings that express the same preference in different words and
propose merging them.

Output format: [{{"queue_id": "<queue_id>", "merge_suggestions": [{{"source_ids": ["..."], "merged_rule": "...", "confidence": 0.8, "reasoning": "..."}}]}}]"""


def build_prompt(analysis_type: str) -> str:
    if analysis_type == AnalysisType.WORKFLOW.value:
        return WORKFLOW_PROMPT.format(
            base=BASE_INSTRUCTION,
            actions=", ".join(sorted(taxonomy.ALLOWED_ACTIONS)),
            artifacts=", ".join(sorted(taxonomy.ALLOWED_ARTIFACTS)),
            domains=", ".join(sorted(taxonomy.ALLOWED_DOMAINS)),
        )
    if analysis_type == AnalysisType.LEARNING.value:
        return LEARNING_PROMPT.format(base=BASE_INSTRUCTION)
    if analysis_type == AnalysisType.SUMMARY.value:
        return SUMMARY_PROMPT.format(base=BASE_INSTRUCTION)
    if analysis_type == AnalysisType.DEDUPE.value:
        return DEDUPE_PROMPT.format(base=BASE_INSTRUCTION)
    raise ValueError(f"Unknown analysis type: {analysis_type}")
