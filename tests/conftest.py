"""
Pytest configuration and fixtures for Retain tests.

Repository tests use ``db_session``: one in-memory database for the whole run
and a transaction that is rolled back after every test. Service-level tests
(processor, orchestrator, reaper, CLI) open their own transactions, so they
get a file-backed database of their own through ``session_factory``.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Optional, Sequence

import pytest
from sqlalchemy.orm import Session, sessionmaker

from retain.db.connection import create_db_engine, create_session_factory, init_db, session_scope
from retain.db.repositories.conversation import ConversationRepository
from retain.models.parsed import ParsedConversation, ParsedMessage

BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def build_parsed(
    external_id: str = "conv-1",
    messages: Sequence[tuple[str, str]] = (),
    provider: str = "claude_code",
    title: Optional[str] = None,
    project_path: Optional[str] = "/work/app",
    start: datetime = BASE_TIME,
    summary: Optional[str] = None,
) -> ParsedConversation:
    """A conversation whose messages are one minute apart, ids ``<external_id>-m<n>``."""
    parsed_messages = [
        ParsedMessage(
            role=role,
            content=content,
            timestamp=start + timedelta(minutes=index),
            external_id=f"{external_id}-m{index}",
        )
        for index, (role, content) in enumerate(messages)
    ]
    last = parsed_messages[-1].timestamp if parsed_messages else start
    first_user = next((m.content for m in parsed_messages if m.role == "user"), None)
    return ParsedConversation(
        provider=provider,
        external_id=external_id,
        created_at=start,
        updated_at=last,
        title=title,
        summary=summary,
        preview_text=first_user[:200] if first_user else None,
        project_path=project_path,
        messages=parsed_messages,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine using SQLite in-memory."""
    engine = create_db_engine("sqlite://", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test.

    Each test gets a fresh session with a transaction that is rolled back
    after the test completes, ensuring test isolation.
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    session = sessionmaker(bind=connection, expire_on_commit=False)()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def file_engine(tmp_path):
    """A WAL-mode database file private to one test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'retain.db'}", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(file_engine) -> sessionmaker[Session]:
    return create_session_factory(file_engine)


@pytest.fixture
def parsed_factory() -> Callable[..., ParsedConversation]:
    return build_parsed


@pytest.fixture
def add_conversation(db_session: Session) -> Callable[..., uuid.UUID]:
    """Store a conversation through the merge-upsert and return its id."""

    def _add(**kwargs) -> uuid.UUID:
        return ConversationRepository(db_session).upsert(build_parsed(**kwargs)).id

    return _add


@pytest.fixture
def store_conversation(session_factory) -> Callable[..., uuid.UUID]:
    """Like ``add_conversation``, but committed to the file-backed database."""

    def _store(**kwargs) -> uuid.UUID:
        with session_scope(session_factory) as session:
            return ConversationRepository(session).upsert(build_parsed(**kwargs)).id

    return _store


CORRECTION_MESSAGES = [
    ("user", "Add a helper that loads the settings file"),
    ("assistant", "Here is a helper using the os module to load it."),
    ("user", "No, use pathlib instead of the os module."),
    ("assistant", "Updated the helper to use pathlib."),
]

VIDEO_MESSAGES = [
    ("user", "Summarize this video and include key timestamps."),
    ("assistant", "Here is the summary with timestamps."),
]


@pytest.fixture
def correction_messages() -> list[tuple[str, str]]:
    return list(CORRECTION_MESSAGES)


@pytest.fixture
def video_messages() -> list[tuple[str, str]]:
    return list(VIDEO_MESSAGES)
