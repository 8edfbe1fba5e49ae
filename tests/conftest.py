from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from salesbot.config import Settings
from salesbot.database import init_db
from salesbot.services.dispatcher import DispatchOptions, OutgoingDispatcher
from salesbot.services.errors import DeliveryError
from salesbot.services.funnel_service import FunnelEngine
from salesbot.services.llm import LLMProvider, LLMResponse, ModelGateway
from salesbot.services.memory_store import InMemoryConversationStore
from salesbot.services.retry import RetryPolicy
from salesbot.services.whatsapp_transport import MessagingTransport

START = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)
CONTACT = "5511999990000@s.whatsapp.net"


async def no_sleep(_delay):
    return None


class FakeClock:
    """Settable datetime clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingTransport(MessagingTransport):
    """Keeps every outgoing call in ``events``. Texts containing ``fail_on`` raise DeliveryError."""

    def __init__(self, fail_on=None):
        self.events = []
        self.fail_on = fail_on
        self.closed = False

    async def send_text(self, contact_key, text):
        if self.fail_on and self.fail_on in text:
            raise DeliveryError(f"rejected: {text[:20]}")
        self.events.append(("text", contact_key, text))

    async def send_typing_state(self, contact_key, on):
        self.events.append(("typing", contact_key, on))

    async def send_media(self, contact_key, *, media_type, media_url, caption=None):
        self.events.append(("media", contact_key, media_type, media_url, caption))

    async def aclose(self):
        self.closed = True

    def texts(self, contact_key=None):
        return [e[2] for e in self.events if e[0] == "text" and (contact_key is None or e[1] == contact_key)]

    def media(self):
        return [e for e in self.events if e[0] == "media"]


class ScriptedProvider(LLMProvider):
    """Returns queued replies in order; queued exceptions are raised instead."""

    def __init__(self, replies=(), transcripts=()):
        self.replies = list(replies)
        self.transcripts = list(transcripts)
        self.calls = []
        self.transcribe_calls = []

    async def generate(self, messages, params):
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else "Olá! Como posso ajudar?"
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply, model="test-model", usage={"total_tokens": 10})

    async def transcribe_audio(self, *, audio_bytes, filename, mime_type=None, language=None):
        self.transcribe_calls.append(
            {"audio_bytes": audio_bytes, "filename": filename, "mime_type": mime_type, "language": language}
        )
        result = self.transcripts.pop(0) if self.transcripts else ""
        if isinstance(result, Exception):
            raise result
        return result


class FakeRedis:
    """Async Redis double covering the commands the cache and dedup use."""

    def __init__(self, down=False):
        self.data = {}
        self.sets = {}
        self.expirations = {}
        self.down = down
        self.closed = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("redis is down")

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expirations[key] = ex
        return True

    async def get(self, key: str):
        self._check()
        return self.data.get(key)

    async def delete(self, *keys: str):
        self._check()
        removed = 0
        for key in keys:
            hit = self.data.pop(key, None) is not None
            hit = self.sets.pop(key, None) is not None or hit
            removed += int(hit)
        return removed

    async def sadd(self, key: str, *members: str):
        self._check()
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def smembers(self, key: str):
        self._check()
        return set(self.sets.get(key, set()))

    async def expire(self, key: str, seconds: int):
        self._check()
        self.expirations[key] = seconds
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("CHATFLOW_TOKEN", "test-token")
    monkeypatch.setenv("CHATFLOW_INSTANCE_ID", "test-instance")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryConversationStore(clock=clock)


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_retries=2, initial_delay=0.0, max_delay=0.0, sleep_func=no_sleep)


@pytest.fixture
def gateway(provider, fast_retry):
    return ModelGateway(provider, fast_retry)


@pytest.fixture
def dispatcher(transport):
    return OutgoingDispatcher(transport, DispatchOptions(max_chars_per_message=200), sleep_func=no_sleep)


@pytest.fixture
def funnel(store, clock):
    return FunnelEngine(store, clock=clock)


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        openai_api_key="test-key",
        debounce_seconds=0.0,
        typing_delay_min_seconds=0.0,
        typing_delay_max_seconds=0.0,
        between_messages_min_seconds=0.0,
        between_messages_max_seconds=0.0,
        media_signing_secret="test-secret",
        public_base_url="https://bot.example.com",
    )


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()
