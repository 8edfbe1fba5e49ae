"""Conversation store: ordered history plus keyed memory entries per contact.

Values are opaque JSON-compatible data; the store never interprets funnel semantics.
"""

import asyncio
import copy
import itertools
import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesbot.logging_config import get_logger
from salesbot.models import Conversation
from salesbot.models import MemoryEntry as MemoryEntryRow
from salesbot.models import Message
from salesbot.services.errors import FatalError, TransientInfraError
from salesbot.services.retry import RetryPolicy, with_retry

logger = get_logger("memory_store")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class HistoryMessage:
    role: str  # user, assistant, system
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict = field(default_factory=dict)


@dataclass
class MemoryEntry:
    key: str
    category: str
    value: Any
    updated_at: datetime


class ConversationStore(ABC):
    """Per-contact history and memory. A conversation exists once anything is written for it."""

    @abstractmethod
    async def append(self, contact_key: str, message: HistoryMessage) -> None:
        pass

    @abstractmethod
    async def get_recent(self, contact_key: str, limit: int = 30, role: Optional[str] = None) -> list[HistoryMessage]:
        """Last ``limit`` messages in chronological order, optionally only one role."""

    @abstractmethod
    async def set_value(self, contact_key: str, key: str, value: Any, category: str) -> None:
        pass

    @abstractmethod
    async def get_latest(self, contact_key: str, category: str) -> Optional[MemoryEntry]:
        """Most recently written entry of a category."""

    @abstractmethod
    async def get_all(
        self,
        contact_key: str,
        category: Optional[str] = None,
        key_prefix: Optional[str] = None,
    ) -> list[MemoryEntry]:
        """Matching entries, oldest write first."""

    @abstractmethod
    async def delete(self, contact_key: str, key: str, category: str) -> bool:
        pass

    @abstractmethod
    async def get_contact_name(self, contact_key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set_contact_name(self, contact_key: str, name: str) -> None:
        pass


class InMemoryConversationStore(ConversationStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._messages: dict[str, list[HistoryMessage]] = {}
        self._entries: dict[str, dict[tuple[str, str], tuple[int, MemoryEntry]]] = {}
        self._names: dict[str, str] = {}
        self._sequence = itertools.count()

    async def append(self, contact_key, message):
        self._messages.setdefault(contact_key, []).append(copy.deepcopy(message))

    async def get_recent(self, contact_key, limit=30, role=None):
        messages = self._messages.get(contact_key, [])
        if role:
            messages = [m for m in messages if m.role == role]
        return copy.deepcopy(messages[-limit:]) if limit > 0 else []

    async def set_value(self, contact_key, key, value, category):
        entry = MemoryEntry(key=key, category=category, value=copy.deepcopy(value), updated_at=self._clock())
        self._entries.setdefault(contact_key, {})[(key, category)] = (next(self._sequence), entry)

    def _ordered(self, contact_key: str) -> list[MemoryEntry]:
        items = sorted(self._entries.get(contact_key, {}).values(), key=lambda item: (item[1].updated_at, item[0]))
        return [copy.deepcopy(entry) for _, entry in items]

    async def get_latest(self, contact_key, category):
        matching = [e for e in self._ordered(contact_key) if e.category == category]
        return matching[-1] if matching else None

    async def get_all(self, contact_key, category=None, key_prefix=None):
        return [
            e
            for e in self._ordered(contact_key)
            if (category is None or e.category == category) and (key_prefix is None or e.key.startswith(key_prefix))
        ]

    async def delete(self, contact_key, key, category):
        return self._entries.get(contact_key, {}).pop((key, category), None) is not None

    async def get_contact_name(self, contact_key):
        return self._names.get(contact_key)

    async def set_contact_name(self, contact_key, name):
        self._names[contact_key] = name


class SqlConversationStore(ConversationStore):
    """SQLAlchemy-backed store. Each call runs in its own short session on a worker thread."""

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    @contextmanager
    def _session(self, operation: str):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except OperationalError as e:
            db.rollback()
            logger.warning(f"Store {operation} hit a transient database error: {e.orig}")
            raise TransientInfraError(f"{operation}: {e.orig}") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store {operation} failed: {e}")
            raise FatalError(f"{operation}: {e}") from e
        finally:
            db.close()

    def _call(self, operation: str, work: Callable[[Session], Any]) -> Any:
        with self._session(operation) as db:
            return work(db)

    async def _run(self, operation: str, work: Callable[[Session], Any]) -> Any:
        return await asyncio.to_thread(self._call, operation, work)

    @staticmethod
    def _find_conversation(db: Session, contact_key: str) -> Optional[Conversation]:
        return db.query(Conversation).filter(Conversation.contact_key == contact_key).first()

    def _get_or_create_conversation(self, db: Session, contact_key: str) -> Conversation:
        conversation = self._find_conversation(db, contact_key)
        if conversation is None:
            conversation = Conversation(contact_key=contact_key, started_at=self._clock())
            db.add(conversation)
            db.flush()
        return conversation

    @staticmethod
    def _to_entry(row: MemoryEntryRow) -> MemoryEntry:
        return MemoryEntry(key=row.key, category=row.category, value=row.value, updated_at=_as_aware(row.updated_at))

    @staticmethod
    def _entries_query(db: Session, contact_key: str):
        return db.query(MemoryEntryRow).join(Conversation).filter(Conversation.contact_key == contact_key)

    async def append(self, contact_key, message):
        def work(db: Session) -> None:
            conversation = self._get_or_create_conversation(db, contact_key)
            db.add(
                Message(
                    conversation_id=conversation.id,
                    role=message.role,
                    content=message.content,
                    message_metadata=message.metadata or {},
                    created_at=message.timestamp,
                )
            )
            conversation.last_message_at = message.timestamp

        await self._run("append", work)

    async def get_recent(self, contact_key, limit=30, role=None):
        if limit <= 0:
            return []

        def work(db: Session) -> list[HistoryMessage]:
            query = db.query(Message).join(Conversation).filter(Conversation.contact_key == contact_key)
            if role:
                query = query.filter(Message.role == role)
            rows = query.order_by(Message.created_at.desc()).limit(limit).all()
            return [
                HistoryMessage(
                    role=row.role,
                    content=row.content,
                    timestamp=_as_aware(row.created_at),
                    metadata=dict(row.message_metadata or {}),
                )
                for row in reversed(rows)
            ]

        return await self._run("get_recent", work)

    async def set_value(self, contact_key, key, value, category):
        def work(db: Session) -> None:
            conversation = self._get_or_create_conversation(db, contact_key)
            row = (
                db.query(MemoryEntryRow)
                .filter(
                    MemoryEntryRow.conversation_id == conversation.id,
                    MemoryEntryRow.key == key,
                    MemoryEntryRow.category == category,
                )
                .first()
            )
            if row is None:
                row = MemoryEntryRow(conversation_id=conversation.id, key=key, category=category)
                db.add(row)
            row.value = value
            row.updated_at = self._clock()

        await self._run("set_value", work)

    async def get_latest(self, contact_key, category):
        def work(db: Session) -> Optional[MemoryEntry]:
            row = (
                self._entries_query(db, contact_key)
                .filter(MemoryEntryRow.category == category)
                .order_by(MemoryEntryRow.updated_at.desc())
                .first()
            )
            return self._to_entry(row) if row else None

        return await self._run("get_latest", work)

    async def get_all(self, contact_key, category=None, key_prefix=None):
        def work(db: Session) -> list[MemoryEntry]:
            query = self._entries_query(db, contact_key)
            if category is not None:
                query = query.filter(MemoryEntryRow.category == category)
            if key_prefix is not None:
                query = query.filter(MemoryEntryRow.key.startswith(key_prefix, autoescape=True))
            return [self._to_entry(row) for row in query.order_by(MemoryEntryRow.updated_at.asc()).all()]

        return await self._run("get_all", work)

    async def delete(self, contact_key, key, category):
        def work(db: Session) -> bool:
            row = (
                self._entries_query(db, contact_key)
                .filter(MemoryEntryRow.key == key, MemoryEntryRow.category == category)
                .first()
            )
            if row is None:
                return False
            db.delete(row)
            return True

        return await self._run("delete", work)

    async def get_contact_name(self, contact_key):
        def work(db: Session) -> Optional[str]:
            conversation = self._find_conversation(db, contact_key)
            return conversation.contact_name if conversation else None

        return await self._run("get_contact_name", work)

    async def set_contact_name(self, contact_key, name):
        def work(db: Session) -> None:
            conversation = self._get_or_create_conversation(db, contact_key)
            conversation.contact_name = name

        await self._run("set_contact_name", work)


def _encode_history(messages: list[HistoryMessage]) -> list[dict]:
    return [
        {"role": m.role, "content": m.content, "timestamp": m.timestamp.isoformat(), "metadata": m.metadata}
        for m in messages
    ]


def _decode_history(items: list[dict]) -> list[HistoryMessage]:
    return [
        HistoryMessage(
            role=item["role"],
            content=item["content"],
            timestamp=datetime.fromisoformat(item["timestamp"]),
            metadata=item.get("metadata") or {},
        )
        for item in items
    ]


def _encode_entry(entry: Optional[MemoryEntry]) -> Optional[dict]:
    if entry is None:
        return None
    return {
        "key": entry.key,
        "category": entry.category,
        "value": entry.value,
        "updated_at": entry.updated_at.isoformat(),
    }


def _decode_entry(item: Optional[dict]) -> Optional[MemoryEntry]:
    if item is None:
        return None
    return MemoryEntry(
        key=item["key"],
        category=item["category"],
        value=item["value"],
        updated_at=datetime.fromisoformat(item["updated_at"]),
    )


def _identity(value):
    return value


class CachedConversationStore(ConversationStore):
    """Read-through Redis cache over another store.

    Recent history, latest-per-category lookups and contact names are cached as JSON with
    ``SET ... EX ttl``. Writes go to the inner store first and then ``DEL`` the affected
    keys. Redis failures are logged and the call falls through to the inner store, so
    the cache can always be dropped.
    """

    def __init__(self, inner: ConversationStore, redis_client, ttl_seconds: int = 1800, prefix: str = "salesbot:cache"):
        self.inner = inner
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    def _key(self, contact_key: str, *parts) -> str:
        return ":".join([self.prefix, contact_key, *(str(p) for p in parts)])

    async def _cached(self, key: str, loader, encode=_identity, decode=_identity, index_key: Optional[str] = None):
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            logger.warning(f"Conversation cache unavailable, reading through: {e}")
            return await loader()
        if raw is not None:
            return decode(json.loads(raw)["v"])

        value = await loader()
        try:
            await self.redis.set(key, json.dumps({"v": encode(value)}), ex=self.ttl_seconds)
            if index_key:
                await self.redis.sadd(index_key, key)
                await self.redis.expire(index_key, self.ttl_seconds)
        except RedisError as e:
            logger.warning(f"Conversation cache write failed: {e}")
        return value

    async def _invalidate(self, key: str, index_key: Optional[str] = None) -> None:
        try:
            keys = [key]
            if index_key:
                keys.extend(await self.redis.smembers(index_key) or ())
            await self.redis.delete(*keys)
        except RedisError as e:
            logger.error(f"Conversation cache invalidation failed for {key}: {e}")

    def _recent_index(self, contact_key: str) -> str:
        return self._key(contact_key, "recent")

    async def append(self, contact_key, message):
        await self.inner.append(contact_key, message)
        index_key = self._recent_index(contact_key)
        await self._invalidate(index_key, index_key)

    async def get_recent(self, contact_key, limit=30, role=None):
        return await self._cached(
            self._key(contact_key, "recent", limit, role or "*"),
            lambda: self.inner.get_recent(contact_key, limit, role),
            encode=_encode_history,
            decode=_decode_history,
            index_key=self._recent_index(contact_key),
        )

    async def set_value(self, contact_key, key, value, category):
        await self.inner.set_value(contact_key, key, value, category)
        await self._invalidate(self._key(contact_key, "latest", category))

    async def get_latest(self, contact_key, category):
        return await self._cached(
            self._key(contact_key, "latest", category),
            lambda: self.inner.get_latest(contact_key, category),
            encode=_encode_entry,
            decode=_decode_entry,
        )

    async def get_all(self, contact_key, category=None, key_prefix=None):
        return await self.inner.get_all(contact_key, category, key_prefix)

    async def delete(self, contact_key, key, category):
        deleted = await self.inner.delete(contact_key, key, category)
        await self._invalidate(self._key(contact_key, "latest", category))
        return deleted

    async def get_contact_name(self, contact_key):
        return await self._cached(self._key(contact_key, "name"), lambda: self.inner.get_contact_name(contact_key))

    async def set_contact_name(self, contact_key, name):
        await self.inner.set_contact_name(contact_key, name)
        await self._invalidate(self._key(contact_key, "name"))


class RetryingConversationStore(ConversationStore):
    """Retries transient store failures; exhaustion raises FatalError."""

    def __init__(self, inner: ConversationStore, retry_policy: RetryPolicy):
        self.inner = inner
        self.retry_policy = retry_policy

    @with_retry(operation_name="store.append")
    async def append(self, contact_key, message):
        return await self.inner.append(contact_key, message)

    @with_retry(operation_name="store.get_recent")
    async def get_recent(self, contact_key, limit=30, role=None):
        return await self.inner.get_recent(contact_key, limit, role)

    @with_retry(operation_name="store.set_value")
    async def set_value(self, contact_key, key, value, category):
        return await self.inner.set_value(contact_key, key, value, category)

    @with_retry(operation_name="store.get_latest")
    async def get_latest(self, contact_key, category):
        return await self.inner.get_latest(contact_key, category)

    @with_retry(operation_name="store.get_all")
    async def get_all(self, contact_key, category=None, key_prefix=None):
        return await self.inner.get_all(contact_key, category, key_prefix)

    @with_retry(operation_name="store.delete")
    async def delete(self, contact_key, key, category):
        return await self.inner.delete(contact_key, key, category)

    @with_retry(operation_name="store.get_contact_name")
    async def get_contact_name(self, contact_key):
        return await self.inner.get_contact_name(contact_key)

    @with_retry(operation_name="store.set_contact_name")
    async def set_contact_name(self, contact_key, name):
        return await self.inner.set_contact_name(contact_key, name)
