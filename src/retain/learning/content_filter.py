"""Detection of meta conversations (about reviews, plans, releases, ...).

Such conversations talk *about* work rather than doing it, so they are
skipped by learning and workflow extraction.
"""

import re
from typing import Iterable, Optional, Sequence

from retain.models.db import Conversation, Message, Role

META_PATTERN = re.compile(
    r"\b(audit|review|plan|planning|learning extraction|roadmap|changelog|commit|pr"
    r"|pull request|bugfix|bug fix|release notes|postmortem|retrospective)\b"
)


def is_meta_text(parts: Iterable[Optional[str]]) -> bool:
    combined = " ".join(p.strip() for p in parts if p and p.strip()).lower()
    if not combined:
        return False
    return META_PATTERN.search(combined) is not None


def is_meta_conversation(
    conversation: Conversation, messages: Sequence[Message] = ()
) -> bool:
    first_user = next((m.content for m in messages if m.role == Role.USER.value), None)
    return is_meta_text(
        [
            conversation.title,
            conversation.summary,
            conversation.preview_text,
            first_user,
        ]
    )
