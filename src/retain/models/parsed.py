"""
Ingestion feed data models.

Intermediate dataclasses describing a conversation as delivered by a
provider parser, before it is merged into the database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class ParsedMessage:
    """One message as delivered by a provider."""

    role: str  # user, assistant, system, tool
    content: str
    timestamp: datetime
    external_id: Optional[str] = None
    parent_external_id: Optional[str] = None
    model: Optional[str] = None
    extra_data: Optional[dict] = None
    raw_payload: Optional[Any] = None


@dataclass
class ParsedConversation:
    """A conversation keyed by (provider, external_id)."""

    provider: str
    external_id: str
    created_at: datetime
    updated_at: datetime
    source_type: Optional[str] = None  # Defaults from the provider table
    title: Optional[str] = None
    summary: Optional[str] = None
    preview_text: Optional[str] = None
    project_path: Optional[str] = None
    source_file_path: Optional[str] = None
    embedding: Optional[list[float]] = None
    raw_payload: Optional[Any] = None
    messages: list[ParsedMessage] = field(default_factory=list)
