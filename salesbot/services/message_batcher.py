"""Groups rapid inbound fragments into one turn per conversation.

Each contact moves through Idle -> Collecting -> Processing -> Idle. A fragment starts
(or restarts) the debounce timer; when it fires the collected batch goes to the
contact's processing run. At most one run is active per contact: batches that arrive
while a run is active are queued to it and processed in the next loop iteration.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from salesbot.logging_config import get_logger

logger = get_logger("message_batcher")

RATE_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class MediaAttachment:
    media_type: str  # image, video, audio, document or unknown
    mime: Optional[str] = None
    url: Optional[str] = None
    data: Optional[bytes] = None
    file_name: Optional[str] = None
    caption: str = ""
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class InboundFragment:
    contact_key: str
    text: str = ""
    media: Optional[MediaAttachment] = None
    contact_name: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def is_media(self) -> bool:
        return self.media is not None


TurnHandler = Callable[[str, List[InboundFragment]], Awaitable[Any]]


@dataclass
class _RateCounter:
    count: int
    window_start: float


@dataclass
class _ContactLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class MessageBatcher:
    def __init__(
        self,
        handler: TurnHandler,
        debounce_seconds: float = 15.0,
        spam_protection: bool = True,
        max_messages_per_minute: int = 15,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.handler = handler
        self.debounce_seconds = debounce_seconds
        self.spam_protection = spam_protection
        self.max_messages_per_minute = max_messages_per_minute
        self.sleep_func = sleep_func
        self.clock = clock
        self._pending: Dict[str, List[InboundFragment]] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._run_queues: Dict[str, asyncio.Queue] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        self._counters: Dict[str, _RateCounter] = {}
        self._last_prune = clock()
        self._locks: Dict[str, _ContactLock] = {}

    @classmethod
    def from_settings(cls, handler: TurnHandler, settings) -> "MessageBatcher":
        return cls(
            handler,
            debounce_seconds=settings.debounce_seconds,
            spam_protection=settings.spam_protection,
            max_messages_per_minute=settings.max_messages_per_minute,
        )

    # Spam guard

    def _prune_counters(self, now: float) -> None:
        if now - self._last_prune < RATE_WINDOW_SECONDS:
            return
        self._last_prune = now
        expired = [
            key
            for key, counter in self._counters.items()
            if now - counter.window_start >= RATE_WINDOW_SECONDS and self.state_of(key) == "idle"
        ]
        for key in expired:
            del self._counters[key]

    def _is_spamming(self, contact_key: str) -> bool:
        now = self.clock()
        self._prune_counters(now)
        counter = self._counters.get(contact_key)
        if counter is None or now - counter.window_start >= RATE_WINDOW_SECONDS:
            counter = _RateCounter(count=0, window_start=now)
            self._counters[contact_key] = counter
        if counter.count >= self.max_messages_per_minute:
            return True
        counter.count += 1
        return False

    # Intake

    def submit(self, fragment: InboundFragment) -> bool:
        """Add a fragment to the contact's pending group. Returns False when it was dropped."""
        contact_key = fragment.contact_key
        if self.spam_protection and self._is_spamming(contact_key):
            logger.warning(
                f"Spam protection triggered for {contact_key}, ignoring message",
                extra={"context": {"contact_key": contact_key, "limit": self.max_messages_per_minute}},
            )
            return False

        group = self._pending.setdefault(contact_key, [])
        group.append(fragment)
        timer = self._timers.pop(contact_key, None)
        if timer is not None:
            timer.cancel()
            logger.debug(f"Added message to existing group for {contact_key}, new count: {len(group)}")
        else:
            logger.debug(f"Created new message group for {contact_key}")
        self._timers[contact_key] = asyncio.create_task(self._debounce(contact_key))
        return True

    async def _debounce(self, contact_key: str) -> None:
        await self.sleep_func(self.debounce_seconds)
        self._timers.pop(contact_key, None)
        self._flush(contact_key)

    def _flush(self, contact_key: str) -> None:
        batch = self._pending.pop(contact_key, [])
        if not batch:
            return

        queue = self._run_queues.get(contact_key)
        if queue is not None:
            logger.debug(f"Already processing chat for {contact_key}, queueing {len(batch)} messages")
            queue.put_nowait(batch)
            return

        queue = asyncio.Queue()
        queue.put_nowait(batch)
        self._run_queues[contact_key] = queue
        self._runs[contact_key] = asyncio.create_task(self._run(contact_key, queue))

    # Processing

    @asynccontextmanager
    async def exclusive(self, contact_key: str):
        """Hold the contact's turn lock. Turns and direct stage changes never interleave."""
        entry = self._locks.setdefault(contact_key, _ContactLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(contact_key, None)

    async def _run(self, contact_key: str, queue: asyncio.Queue) -> None:
        try:
            while not queue.empty():
                fragments: List[InboundFragment] = []
                while not queue.empty():
                    fragments.extend(queue.get_nowait())
                logger.info(f"Processing message group for {contact_key} with {len(fragments)} messages")
                async with self.exclusive(contact_key):
                    await self.handler(contact_key, fragments)
        except Exception as e:
            discarded = 0
            while not queue.empty():
                discarded += len(queue.get_nowait())
            logger.error(
                f"Error processing chat for {contact_key}: {e}",
                exc_info=True,
                extra={"context": {"contact_key": contact_key, "discarded_fragments": discarded}},
            )
        finally:
            self._run_queues.pop(contact_key, None)
            self._runs.pop(contact_key, None)

    # Introspection and shutdown

    def state_of(self, contact_key: str) -> str:
        if contact_key in self._runs:
            return "processing"
        if contact_key in self._pending:
            return "collecting"
        return "idle"

    def pending_count(self, contact_key: str) -> int:
        return len(self._pending.get(contact_key, ()))

    async def wait_idle(self) -> None:
        """Wait until no timer or run is active for any contact."""
        while self._timers or self._runs:
            await asyncio.gather(*self._timers.values(), *self._runs.values(), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._timers.values()) + list(self._runs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
