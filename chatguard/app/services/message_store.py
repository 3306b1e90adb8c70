"""Message storage collaborator.

The store persists records, increments counter fields and streams an
ordered, live view of one channel. Records carry an `expire_at`; the
backing database sweeps them on its own schedule, so every read path here
also drops records whose expiry has already passed.

Backends:
- InMemoryMessageStore: process-local (default, tests)
- SqlMessageStore: SQLAlchemy async ORM
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatguard.app.core.logging import get_logger
from chatguard.app.db.models import ChatMessageRecord
from chatguard.app.exceptions import MessageNotFoundError

logger = get_logger(__name__)

COUNTER_FIELDS = frozenset({"report_count"})
UPDATABLE_FIELDS = frozenset({"reported"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ChatMessage:
    """A stored chat message."""
    id: str
    channel: str
    username: str
    content: str
    created_at: datetime = field(default_factory=utcnow)
    expire_at: Optional[datetime] = None
    reported: bool = False
    report_count: int = 0
    reply_to_message_id: Optional[str] = None
    reply_to_content: Optional[str] = None
    reply_to_username: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expire_at is None:
            return False
        return self.expire_at <= (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["expire_at"] = self.expire_at.isoformat() if self.expire_at else None
        return data


def live_messages(messages, now: Optional[datetime] = None) -> list[ChatMessage]:
    """Drop expired messages and order the rest by creation time."""
    now = now or utcnow()
    return sorted(
        (m for m in messages if not m.is_expired(now)),
        key=lambda m: m.created_at,
    )


class MessageStore(ABC):
    """Abstract base class for message stores.

    Subclasses implement persistence; change notification and the
    subscription stream are shared.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def _notify(self, channel: str) -> None:
        for queue in self._subscribers.get(channel, ()):
            # One pending wake-up is enough; the next snapshot reads current state.
            if not queue.full():
                queue.put_nowait(None)

    async def subscribe(self, channel: str) -> AsyncIterator[list[ChatMessage]]:
        """Yield the channel's live messages now and after every change.

        Args:
            channel: Channel key to follow

        Yields:
            Ordered list of non-expired messages
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._subscribers.setdefault(channel, set()).add(queue)
        try:
            yield await self.query_channel(channel)
            while True:
                await queue.get()
                yield await self.query_channel(channel)
        finally:
            listeners = self._subscribers.get(channel)
            if listeners is not None:
                listeners.discard(queue)
                if not listeners:
                    del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    @staticmethod
    def _check_counter_field(field_name: str) -> None:
        if field_name not in COUNTER_FIELDS:
            raise ValueError(f"{field_name} is not a counter field")

    @staticmethod
    def _check_updatable(fields: dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    @abstractmethod
    async def append_record(self, fields: dict[str, Any]) -> ChatMessage:
        """Persist a new message and return it with its assigned id."""
        pass

    @abstractmethod
    async def increment_counter_field(
        self, record_id: str, field_name: str, amount: int = 1
    ) -> ChatMessage:
        """Atomically add `amount` to a counter field.

        Raises:
            MessageNotFoundError: If the record does not exist
            ValueError: If `field_name` is not a counter field
        """
        pass

    @abstractmethod
    async def update_fields(self, record_id: str, fields: dict[str, Any]) -> ChatMessage:
        """Overwrite plain fields of a record."""
        pass

    @abstractmethod
    async def get_record(self, record_id: str) -> Optional[ChatMessage]:
        """Fetch a record by id, or None. Expired records are not returned."""
        pass

    @abstractmethod
    async def query_channel(self, channel: str) -> list[ChatMessage]:
        """Non-expired messages of a channel, oldest first."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class InMemoryMessageStore(MessageStore):
    """Process-local message store.

    Callers always receive copies; only the store's own methods mutate
    the held records.

    Note: Messages are lost when the application restarts.
    """

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, ChatMessage] = {}
        self._lock = asyncio.Lock()

    async def append_record(self, fields: dict[str, Any]) -> ChatMessage:
        async with self._lock:
            message = ChatMessage(id=uuid.uuid4().hex, **fields)
            self._records[message.id] = message
        self._notify(message.channel)
        return replace(message)

    async def increment_counter_field(
        self, record_id: str, field_name: str, amount: int = 1
    ) -> ChatMessage:
        self._check_counter_field(field_name)
        async with self._lock:
            message = self._records.get(record_id)
            if message is None:
                raise MessageNotFoundError(record_id)
            setattr(message, field_name, getattr(message, field_name) + amount)
        self._notify(message.channel)
        return replace(message)

    async def update_fields(self, record_id: str, fields: dict[str, Any]) -> ChatMessage:
        self._check_updatable(fields)
        async with self._lock:
            message = self._records.get(record_id)
            if message is None:
                raise MessageNotFoundError(record_id)
            for key, value in fields.items():
                setattr(message, key, value)
        self._notify(message.channel)
        return replace(message)

    async def get_record(self, record_id: str) -> Optional[ChatMessage]:
        message = self._records.get(record_id)
        if message is None or message.is_expired():
            return None
        return replace(message)

    async def query_channel(self, channel: str) -> list[ChatMessage]:
        return live_messages(
            replace(m) for m in self._records.values() if m.channel == channel
        )


class SqlMessageStore(MessageStore):
    """Message store backed by SQLAlchemy's async ORM.

    Example:
        >>> engine = create_engine_for_url("sqlite+aiosqlite:///chat.db")
        >>> await init_db(engine)
        >>> store = SqlMessageStore(create_session_maker(engine))
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._session_maker = session_maker

    @staticmethod
    def _to_message(record: ChatMessageRecord) -> ChatMessage:
        return ChatMessage(
            id=record.id,
            channel=record.channel,
            username=record.username,
            content=record.content,
            created_at=_as_utc(record.created_at),
            expire_at=_as_utc(record.expire_at),
            reported=bool(record.reported),
            report_count=record.report_count or 0,
            reply_to_message_id=record.reply_to_message_id,
            reply_to_content=record.reply_to_content,
            reply_to_username=record.reply_to_username,
        )

    async def _load(self, session: AsyncSession, record_id: str) -> ChatMessageRecord:
        record = await session.get(ChatMessageRecord, record_id, populate_existing=True)
        if record is None:
            raise MessageNotFoundError(record_id)
        return record

    async def append_record(self, fields: dict[str, Any]) -> ChatMessage:
        values = dict(fields)
        values.setdefault("created_at", utcnow())
        record = ChatMessageRecord(id=uuid.uuid4().hex, **values)
        async with self._session_maker() as session:
            session.add(record)
            await session.commit()
            message = self._to_message(record)
        self._notify(message.channel)
        return message

    async def increment_counter_field(
        self, record_id: str, field_name: str, amount: int = 1
    ) -> ChatMessage:
        self._check_counter_field(field_name)
        column = getattr(ChatMessageRecord, field_name)
        async with self._session_maker() as session:
            result = await session.execute(
                update(ChatMessageRecord)
                .where(ChatMessageRecord.id == record_id)
                .values({field_name: column + amount})
            )
            if result.rowcount == 0:
                await session.rollback()
                raise MessageNotFoundError(record_id)
            await session.commit()
            message = self._to_message(await self._load(session, record_id))
        self._notify(message.channel)
        return message

    async def update_fields(self, record_id: str, fields: dict[str, Any]) -> ChatMessage:
        self._check_updatable(fields)
        async with self._session_maker() as session:
            record = await self._load(session, record_id)
            for key, value in fields.items():
                setattr(record, key, value)
            await session.commit()
            message = self._to_message(record)
        self._notify(message.channel)
        return message

    async def get_record(self, record_id: str) -> Optional[ChatMessage]:
        async with self._session_maker() as session:
            record = await session.get(ChatMessageRecord, record_id)
            if record is None:
                return None
            message = self._to_message(record)
        return None if message.is_expired() else message

    async def query_channel(self, channel: str) -> list[ChatMessage]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ChatMessageRecord)
                .where(ChatMessageRecord.channel == channel)
                .order_by(ChatMessageRecord.created_at)
            )
            messages = [self._to_message(r) for r in result.scalars().all()]
        return live_messages(messages)
