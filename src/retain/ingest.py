"""
JSON conversation import.

Reads conversation export files into ``ParsedConversation`` objects for
``ConversationRepository.upsert``. A file holds either one conversation
object or a list of them::

    {
      "provider": "claude_web",
      "external_id": "abc-123",
      "title": "Refactor the billing module",
      "project_path": "/home/me/billing",
      "messages": [
        {"id": "m1", "role": "user", "content": "...", "timestamp": "2025-10-16T19:12:28Z"}
      ]
    }

``created_at``/``updated_at`` default to the first/last message timestamp.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from retain.exceptions import ValidationError
from retain.models.db import Provider, Role
from retain.models.parsed import ParsedConversation, ParsedMessage
from retain.utils.time import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

VALID_PROVIDERS = {p.value for p in Provider}
VALID_ROLES = {r.value for r in Role}


class MessageRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    external_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("external_id", "id", "uuid")
    )
    parent_external_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("parent_external_id", "parent_id")
    )
    role: str
    content: str = ""
    timestamp: Optional[datetime] = None
    model: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        role = value.strip().lower()
        if role == "human":
            role = Role.USER.value
        if role not in VALID_ROLES:
            raise ValueError(f"unknown role {value!r}")
        return role


class ConversationRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    provider: str
    external_id: str = Field(validation_alias=AliasChoices("external_id", "id", "uuid"))
    source_type: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    preview_text: Optional[str] = None
    project_path: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    messages: list[MessageRecord] = Field(default_factory=list)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        if value not in VALID_PROVIDERS:
            raise ValueError(
                f"unknown provider {value!r} (expected one of {', '.join(sorted(VALID_PROVIDERS))})"
            )
        return value

    def to_parsed(self, source_file_path: Optional[str] = None) -> ParsedConversation:
        stamps = [m.timestamp for m in self.messages if m.timestamp is not None]
        fallback = utcnow()
        created_at = self.created_at or (min(stamps) if stamps else fallback)
        updated_at = self.updated_at or (max(stamps) if stamps else created_at)

        messages = [
            ParsedMessage(
                role=m.role,
                content=m.content,
                # Messages without a timestamp inherit the conversation start
                timestamp=m.timestamp or created_at,
                external_id=m.external_id,
                parent_external_id=m.parent_external_id,
                model=m.model,
            )
            for m in self.messages
        ]

        preview = self.preview_text
        if preview is None:
            first_user = next((m for m in messages if m.role == Role.USER.value), None)
            if first_user is not None:
                preview = first_user.content[:200]

        return ParsedConversation(
            provider=self.provider,
            external_id=self.external_id,
            created_at=created_at,
            updated_at=updated_at,
            source_type=self.source_type,
            title=self.title,
            summary=self.summary,
            preview_text=preview,
            project_path=self.project_path,
            source_file_path=source_file_path,
            messages=messages,
        )


def parse_conversations(
    data: Union[dict, list], source_file_path: Optional[str] = None
) -> list[ParsedConversation]:
    """
    Validate decoded export data.

    Raises:
        ValidationError: If any record is malformed
    """
    records = data if isinstance(data, list) else [data]
    parsed = []
    for index, record in enumerate(records):
        try:
            parsed.append(ConversationRecord.model_validate(record).to_parsed(source_file_path))
        except (PydanticValidationError, ValueError) as e:
            raise ValidationError(f"Invalid conversation record #{index}: {e}") from e
    return parsed


def load_conversations(path: Union[str, Path]) -> list[ParsedConversation]:
    """
    Load every conversation in an export file.

    Raises:
        ValidationError: If the file is not valid JSON or a record is malformed
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path}: invalid JSON ({e.msg} at line {e.lineno})") from e

    conversations = parse_conversations(data, source_file_path=str(path))
    logger.debug(f"Loaded {len(conversations)} conversations from {path}")
    return conversations


def load_conversation_file(path: Union[str, Path]) -> ParsedConversation:
    """Load a file holding exactly one conversation."""
    conversations = load_conversations(path)
    if len(conversations) != 1:
        raise ValidationError(f"{path}: expected one conversation, found {len(conversations)}")
    return conversations[0]
