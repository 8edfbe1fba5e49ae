"""Paced delivery of outgoing replies.

A reply is split into chunks no longer than ``max_chars_per_message`` and sent one at a
time with a typing pause proportional to the chunk length and a short random pause
between chunks. Each conversation has at most one drain task; batches for the same
conversation queue behind each other.
"""

import asyncio
import random
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from salesbot.logging_config import get_logger
from salesbot.services.errors import DeliveryError
from salesbot.services.whatsapp_transport import MessagingTransport

logger = get_logger("dispatcher")

CHARS_PER_SECOND = 3.33

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"[.!?](?=\s)")


@dataclass(frozen=True)
class DispatchOptions:
    max_chars_per_message: int = 1000
    split_in_paragraphs: bool = True
    typing_delay_min: float = 1.0
    typing_delay_max: float = 2.5
    between_messages_min: float = 0.8
    between_messages_max: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "DispatchOptions":
        return cls(
            max_chars_per_message=settings.max_chars_per_message,
            split_in_paragraphs=settings.split_in_paragraphs,
            typing_delay_min=settings.typing_delay_min_seconds,
            typing_delay_max=settings.typing_delay_max_seconds,
            between_messages_min=settings.between_messages_min_seconds,
            between_messages_max=settings.between_messages_max_seconds,
        )


def _find_cut(window: str) -> int:
    """Best split position inside ``window``, searching only its tail half."""
    half = len(window) // 2

    paragraph = window.rfind("\n\n")
    if paragraph >= half and paragraph > 0:
        return paragraph

    sentence_ends = [m.end() for m in _SENTENCE_END.finditer(window) if m.end() > half]
    if sentence_ends:
        return sentence_ends[-1]

    for index in range(len(window) - 1, max(half, 1) - 1, -1):
        if window[index].isspace():
            return index

    return len(window)


def split_text_chunks(text: str, max_length: int) -> List[str]:
    chunks: List[str] = []
    remaining = text.strip()
    while len(remaining) > max_length:
        cut = _find_cut(remaining[:max_length])
        chunk = remaining[:cut].rstrip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def split_message(text: str, max_length: int, split_paragraphs: bool = True) -> List[str]:
    """Split a reply into chunks of at most ``max_length`` characters.

    Paragraphs are packed greedily and rejoined with a blank line. Only whitespace is
    dropped at the cut points, so the non-whitespace content is preserved in order.
    """
    if max_length < 1:
        raise ValueError("max_length must be positive")
    text = (text or "").strip()
    if not text:
        return []
    if len(text) <= max_length:
        return [text]
    if not split_paragraphs:
        return split_text_chunks(text, max_length)

    chunks: List[str] = []
    current = ""
    for paragraph in _PARAGRAPH_BREAK.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) > max_length:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(split_text_chunks(paragraph, max_length))
        elif current and len(current) + 2 + len(paragraph) > max_length:
            chunks.append(current)
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph
    if current:
        chunks.append(current)
    return chunks


@dataclass
class _OutgoingBatch:
    chunks: List[str]
    future: "asyncio.Future[int]"


class OutgoingDispatcher:
    def __init__(
        self,
        transport: MessagingTransport,
        options: Optional[DispatchOptions] = None,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.transport = transport
        self.options = options or DispatchOptions()
        self.sleep_func = sleep_func
        self.rng = rng or random.Random()
        self._queues: Dict[str, Deque[_OutgoingBatch]] = {}
        self._drainers: Dict[str, asyncio.Task] = {}

    def calculate_typing_delay(self, text: str) -> float:
        opts = self.options
        delay = opts.typing_delay_min + (len(text) / CHARS_PER_SECOND) * (0.8 + 0.4 * self.rng.random())
        return min(max(delay, opts.typing_delay_min), opts.typing_delay_max)

    def calculate_between_delay(self) -> float:
        return self.rng.uniform(self.options.between_messages_min, self.options.between_messages_max)

    def split(self, text: str) -> List[str]:
        return split_message(text, self.options.max_chars_per_message, self.options.split_in_paragraphs)

    def is_busy(self, contact_key: str) -> bool:
        return contact_key in self._drainers

    async def deliver(self, contact_key: str, text: str) -> int:
        """Queue ``text`` for paced delivery and wait until every chunk is sent.

        Returns the number of chunks sent. Raises DeliveryError (or the transport's
        error) when a send fails; every batch still waiting for that contact fails too.
        """
        chunks = self.split(text)
        if not chunks:
            return 0

        batch = _OutgoingBatch(chunks=chunks, future=asyncio.get_running_loop().create_future())
        self._queues.setdefault(contact_key, deque()).append(batch)
        if contact_key not in self._drainers:
            self._drainers[contact_key] = asyncio.create_task(self._drain(contact_key))
        return await batch.future

    async def _drain(self, contact_key: str) -> None:
        queue = self._queues[contact_key]
        try:
            while True:
                while queue:
                    batch = queue[0]
                    for index, chunk in enumerate(batch.chunks):
                        await self.transport.send_typing_state(contact_key, True)
                        await self.sleep_func(self.calculate_typing_delay(chunk))
                        await self.transport.send_text(contact_key, chunk)
                        logger.debug(f"Sent chunk to {contact_key}: {chunk[:50]!r}")
                        if index < len(batch.chunks) - 1 or len(queue) > 1:
                            await self.sleep_func(self.calculate_between_delay())
                    queue.popleft()
                    if not batch.future.done():
                        batch.future.set_result(len(batch.chunks))
                await self.transport.send_typing_state(contact_key, False)
                if not queue:
                    break
        except Exception as e:
            logger.error(
                f"Error processing message queue for {contact_key}: {e}",
                extra={"context": {"contact_key": contact_key, "pending_batches": len(queue)}},
            )
            while queue:
                waiting = queue.popleft()
                if not waiting.future.done():
                    waiting.future.set_exception(e)
        finally:
            while queue:
                waiting = queue.popleft()
                if not waiting.future.done():
                    waiting.future.set_exception(DeliveryError("Dispatcher stopped before delivery"))
            self._queues.pop(contact_key, None)
            self._drainers.pop(contact_key, None)

    async def aclose(self) -> None:
        tasks = list(self._drainers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
