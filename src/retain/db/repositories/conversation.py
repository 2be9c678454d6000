"""
Conversation repository.

Owns Conversation/Message persistence, including the merge-upsert used when
a provider re-syncs a conversation that is already stored.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from retain.db.repositories.base import BaseRepository
from retain.models.db import Conversation, Message, Role
from retain.models.parsed import ParsedConversation, ParsedMessage
from retain.models.providers import get_provider_config
from retain.utils.hashing import calculate_content_hash
from retain.utils.time import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    """Outcome of a merge-upsert."""

    id: uuid.UUID
    did_change: bool


def message_key(message: ParsedMessage) -> str:
    """Stable per-conversation identity for an incoming message.

    Providers that do not supply message ids get a key derived from role,
    timestamp and content so a re-sync matches the same rows.
    """
    if message.external_id:
        return message.external_id
    digest = calculate_content_hash(message.content)[:16]
    return f"{message.role}:{ensure_utc(message.timestamp).isoformat()}:{digest}"


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation and its Messages."""

    def __init__(self, session: Session, clock: Clock = utcnow):
        super().__init__(Conversation, session)
        self.clock = clock

    # ===== Merge-upsert =====

    def upsert(self, parsed: ParsedConversation) -> UpsertResult:
        """
        Insert or merge a synced conversation keyed by (provider, external_id).

        Existing messages are matched by external id and updated in place so
        their internal ids (and any learning referencing them) stay valid.
        Messages missing from the incoming set are never deleted.

        Args:
            parsed: Conversation as delivered by the provider parser

        Returns:
            UpsertResult with the conversation id and whether anything changed
        """
        existing = self.get_by_external_id(parsed.provider, parsed.external_id)
        if existing is None:
            return self._insert_new(parsed)

        did_change = self._merge_messages(existing, parsed.messages)

        if self._remove_blank_system_messages(existing):
            did_change = True

        if self._merge_conversation_fields(existing, parsed):
            did_change = True

        self.session.flush()
        if did_change:
            logger.debug(f"Merged re-synced conversation {existing.id}")
        return UpsertResult(id=existing.id, did_change=did_change)

    def _insert_new(self, parsed: ParsedConversation) -> UpsertResult:
        provider_config = get_provider_config(parsed.provider)
        source_type = parsed.source_type or (
            provider_config.source_type if provider_config else "import"
        )

        conversation = Conversation(
            id=uuid.uuid4(),
            provider=parsed.provider,
            source_type=source_type,
            external_id=parsed.external_id,
            title=parsed.title,
            summary=parsed.summary,
            preview_text=parsed.preview_text,
            project_path=parsed.project_path,
            source_file_path=parsed.source_file_path,
            created_at=ensure_utc(parsed.created_at),
            updated_at=ensure_utc(parsed.updated_at),
            message_count=len(parsed.messages),
            embedding=parsed.embedding,
            raw_payload=parsed.raw_payload,
        )
        self.session.add(conversation)
        self.session.flush()

        self._merge_messages(conversation, parsed.messages)
        self._remove_blank_system_messages(conversation)
        self.session.flush()

        logger.info(
            f"Inserted conversation {conversation.id} "
            f"({parsed.provider}/{parsed.external_id}, {len(parsed.messages)} messages)"
        )
        return UpsertResult(id=conversation.id, did_change=True)

    def _merge_messages(
        self, conversation: Conversation, incoming: list[ParsedMessage]
    ) -> bool:
        existing_rows = self.session.execute(
            select(Message).where(Message.conversation_id == conversation.id)
        ).scalars().all()
        by_key: dict[str, Message] = {}
        for row in existing_rows:
            if row.external_id and row.external_id not in by_key:
                by_key[row.external_id] = row

        # Assign ids first so parent links can point at messages inserted in this batch
        resolved: dict[str, tuple[ParsedMessage, Message | None, uuid.UUID]] = {}
        id_by_key: dict[str, uuid.UUID] = {key: row.id for key, row in by_key.items()}
        repeats: dict[str, int] = {}
        for parsed in incoming:
            key = message_key(parsed)
            if not parsed.external_id:
                # Identical id-less messages at one timestamp are distinct turns
                seen = repeats.get(key, 0)
                repeats[key] = seen + 1
                if seen:
                    key = f"{key}#{seen}"
            elif key in resolved:
                logger.debug(
                    f"Message id {key} repeated in conversation {conversation.id}, "
                    "keeping the last copy"
                )
                _, match, message_id = resolved[key]
                resolved[key] = (parsed, match, message_id)
                continue
            match = by_key.get(key)
            message_id = match.id if match is not None else uuid.uuid4()
            id_by_key.setdefault(key, message_id)
            resolved[key] = (parsed, match, message_id)

        changed = False
        for key, (parsed, match, message_id) in resolved.items():
            parent_id = (
                id_by_key.get(parsed.parent_external_id)
                if parsed.parent_external_id
                else None
            )
            values = {
                "role": parsed.role,
                "content": parsed.content,
                "timestamp": ensure_utc(parsed.timestamp),
                "model": parsed.model,
                "parent_id": parent_id,
                "external_id": key,
                "extra_data": parsed.extra_data,
                "raw_payload": parsed.raw_payload,
            }

            if match is None:
                self.session.add(
                    Message(id=message_id, conversation_id=conversation.id, **values)
                )
                changed = True
            elif self._message_differs(match, values):
                for field_name, value in values.items():
                    setattr(match, field_name, value)
                changed = True

        self.session.flush()
        return changed

    @staticmethod
    def _message_differs(existing: Message, values: dict) -> bool:
        return any(getattr(existing, name) != value for name, value in values.items())

    def _merge_conversation_fields(
        self, existing: Conversation, parsed: ParsedConversation
    ) -> bool:
        incoming = {
            "title": parsed.title,
            "summary": parsed.summary,
            "preview_text": parsed.preview_text,
            "project_path": parsed.project_path,
            "source_file_path": parsed.source_file_path,
            "updated_at": ensure_utc(parsed.updated_at),
            "message_count": len(parsed.messages),
            "raw_payload": parsed.raw_payload,
        }
        # An existing embedding survives a payload that carries none
        if parsed.embedding is not None:
            incoming["embedding"] = parsed.embedding

        changed = False
        for name, value in incoming.items():
            if getattr(existing, name) != value:
                setattr(existing, name, value)
                changed = True
        return changed

    def _remove_blank_system_messages(self, conversation: Conversation) -> bool:
        config = get_provider_config(conversation.provider)
        if config is None or not config.strips_blank_system_messages:
            return False

        result = self.session.execute(
            delete(Message)
            .where(
                Message.conversation_id == conversation.id,
                Message.role == Role.SYSTEM.value,
                func.trim(Message.content) == "",
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    # ===== Reads =====

    def get_by_external_id(
        self, provider: str, external_id: str
    ) -> Optional[Conversation]:
        stmt = select(Conversation).where(
            Conversation.provider == provider,
            Conversation.external_id == external_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_conversations(
        self,
        provider: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
    ) -> Sequence[Conversation]:
        """Conversations ordered by most recently updated."""
        stmt = select(Conversation).order_by(Conversation.updated_at.desc())
        if provider:
            stmt = stmt.where(Conversation.provider == provider)
        if not include_deleted:
            stmt = stmt.where(Conversation.deleted_at.is_(None))
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.execute(stmt).scalars().all()

    def list_recent(self, limit: int = 10) -> Sequence[Conversation]:
        return self.list_conversations(limit=limit)

    def get_messages(self, conversation_id: uuid.UUID) -> Sequence[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.timestamp.asc())
        )
        return self.session.execute(stmt).scalars().all()

    def get_first_user_message(self, conversation_id: uuid.UUID) -> Optional[Message]:
        stmt = (
            select(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.role == Role.USER.value,
            )
            .order_by(Message.timestamp.asc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def count_by_provider(self) -> dict[str, int]:
        stmt = (
            select(Conversation.provider, func.count(Conversation.id))
            .where(Conversation.deleted_at.is_(None))
            .group_by(Conversation.provider)
        )
        return {provider: count for provider, count in self.session.execute(stmt).all()}

    def total_message_count(self) -> int:
        stmt = (
            select(func.count(Message.id))
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(Conversation.deleted_at.is_(None))
        )
        return self.session.execute(stmt).scalar_one()

    # ===== Deletion =====

    def soft_delete(self, id: uuid.UUID) -> bool:
        """Tombstone a conversation; it stays in the store and can be restored."""
        result = self.session.execute(
            update(Conversation)
            .where(Conversation.id == id, Conversation.deleted_at.is_(None))
            .values(deleted_at=self.clock())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    def restore(self, id: uuid.UUID) -> bool:
        result = self.session.execute(
            update(Conversation)
            .where(Conversation.id == id, Conversation.deleted_at.is_not(None))
            .values(deleted_at=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    def soft_delete_provider(self, provider: str) -> int:
        result = self.session.execute(
            update(Conversation)
            .where(Conversation.provider == provider, Conversation.deleted_at.is_(None))
            .values(deleted_at=self.clock())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def permanently_delete(self, id: uuid.UUID) -> bool:
        """Hard delete; messages, learnings and signatures cascade in the database."""
        result = self.session.execute(
            delete(Conversation)
            .where(Conversation.id == id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    def permanently_delete_provider(self, provider: str) -> int:
        result = self.session.execute(
            delete(Conversation)
            .where(Conversation.provider == provider)
            .execution_options(synchronize_session="fetch")
        )
        deleted = result.rowcount
        if deleted:
            logger.info(f"Purged {deleted} {provider} conversations")
        return deleted

    def touch(self, id: uuid.UUID, when: Optional[datetime] = None) -> None:
        self.session.execute(
            update(Conversation)
            .where(Conversation.id == id)
            .values(updated_at=when or self.clock())
            .execution_options(synchronize_session="fetch")
        )
