"""Conversation persistence backed by SQLAlchemy.

The store is the single place conversations, messages and user preferences
are written. It keeps one ORM session open for its lifetime; ORM objects it
hands out stay attached, so callers mutate them in place and then call
:meth:`ConversationStore.save`.
"""

from __future__ import annotations

import datetime
import logging
import secrets
import time
from typing import Any, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from ..core.timing_logger import timed

LOGGER = logging.getLogger(__name__)

ULID_LENGTH = 20
ULID_TIME_LENGTH = 16
ULID_RANDOM_LENGTH = ULID_LENGTH - ULID_TIME_LENGTH
CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ULID_TIME_MASK = (1 << (ULID_TIME_LENGTH * 5)) - 1


# -----------------------------------------------------------------------------
# Helper Functions (Module-level)
# -----------------------------------------------------------------------------

def _encode_crockford(value: int, length: int) -> str:
    """Encode an integer into a fixed-width Crockford base32 string."""
    if value < 0:
        raise ValueError("value must be non-negative")
    chars = ["0"] * length
    for idx in range(length - 1, -1, -1):
        chars[idx] = CROCKFORD_ALPHABET[value & 0x1F]
        value >>= 5
    return "".join(chars)


def generate_item_id() -> str:
    """Generate a 20-char ULID using a 16-char time component + 4-char random tail.

    Ids sort by creation time, which keeps conversation listings stable.
    """
    timestamp = time.time_ns() & _ULID_TIME_MASK
    time_component = _encode_crockford(timestamp, ULID_TIME_LENGTH)
    random_bits = secrets.randbits(ULID_RANDOM_LENGTH * 5)
    random_component = _encode_crockford(random_bits, ULID_RANDOM_LENGTH)
    return f"{time_component}{random_component}"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# -----------------------------------------------------------------------------
# ORM Models
# -----------------------------------------------------------------------------

Base = declarative_base()


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(ULID_LENGTH), primary_key=True, default=generate_item_id)
    title = Column(String(255), nullable=True)
    date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_used = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by=lambda: [Message.timestamp, Message.position],
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} title={self.title!r} messages={len(self.messages)}>"


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(ULID_LENGTH), primary_key=True, default=generate_item_id)
    conversation_id = Column(
        String(ULID_LENGTH),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        index=True,
        nullable=True,
    )
    text = Column(Text, nullable=False, default="")
    is_user = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    position = Column(Integer, nullable=False, default=0)

    conversation = relationship("Conversation", back_populates="messages")

    def __repr__(self) -> str:
        role = "user" if self.is_user else "assistant"
        return f"<Message id={self.id} role={role} chars={len(self.text or '')}>"


class Preference(Base):
    __tablename__ = "preferences"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=True)


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------

class ConversationStore:
    """Create, update and query conversations, messages and preferences.

    All writes go through the owning event-loop thread; there is exactly one
    writer per store.
    """

    def __init__(self, database_url: str = "sqlite://", *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER
        self.database_url = database_url
        self._engine = create_engine(database_url)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self._engine,
            expire_on_commit=False,
        )
        self._session: Optional[Session] = self._session_factory()
        self.logger.debug("Conversation store ready: %s", self._engine.url.render_as_string(hide_password=True))

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("ConversationStore is closed")
        return self._session

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    @timed
    def create_conversation(self, title: Optional[str] = None) -> Conversation:
        now = _utcnow()
        conversation = Conversation(id=generate_item_id(), title=title, date=now, last_used=now)
        self.session.add(conversation)
        self.save()
        self.logger.debug("Created conversation %s", conversation.id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.session.get(Conversation, conversation_id)

    @timed
    def list_conversations(self) -> list[Conversation]:
        """Return every conversation, most recently used first."""
        stmt = select(Conversation).order_by(Conversation.last_used.desc(), Conversation.id.desc())
        return list(self.session.scalars(stmt))

    @timed
    def delete_conversation(self, conversation_id: str) -> bool:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return False
        self.session.delete(conversation)
        self.save()
        self.logger.debug("Deleted conversation %s", conversation_id)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(self, conversation: Conversation, text: str, is_user: bool) -> Message:
        """Build a message for ``conversation`` and append it.

        The message is positioned after every message already in the
        conversation; call :meth:`save` to commit it.
        """
        message = Message(
            id=generate_item_id(),
            text=text,
            is_user=is_user,
            timestamp=_utcnow(),
            position=len(conversation.messages),
        )
        self.append_or_update(conversation, message)
        return message

    def append_or_update(self, conversation: Conversation, message: Message) -> None:
        """Attach ``message`` to ``conversation`` unless it already is, and bump ``last_used``."""
        if not any(existing.id == message.id for existing in conversation.messages):
            conversation.messages.append(message)
        conversation.last_used = _utcnow()

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_preference(self, key: str) -> Optional[str]:
        row = self.session.get(Preference, key)
        return row.value if row is not None else None

    def set_preference(self, key: str, value: Optional[Any]) -> None:
        """Store ``value`` under ``key``; None removes the entry."""
        row = self.session.get(Preference, key)
        if value is None:
            if row is not None:
                self.session.delete(row)
        elif row is None:
            self.session.add(Preference(key=key, value=str(value)))
        else:
            row.value = str(value)
        self.save()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @timed
    def save(self) -> None:
        """Commit pending changes; rolls back and re-raises on database errors."""
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.logger.error("Conversation store commit failed", exc_info=True)
            self.session.rollback()
            raise

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
        self._engine.dispose()
