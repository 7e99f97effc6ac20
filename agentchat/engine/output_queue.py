"""Per-agent outbound message queue with size and rate limits.

Subprocess output can arrive in large bursts. The XMPP server will
throttle or drop a client that floods it, so every agent session gets
one OutputQueue: payloads are split to fit a stanza, then drained by a
single task at no more than ``rate_limit`` messages per rolling
``rate_window`` seconds, strictly in enqueue order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

from .models import QueuedOutputMessage

logger = logging.getLogger(__name__)

# Signature: async def send(recipient, body) -> None
SendFn = Callable[[str, str], Awaitable[None]]

DEFAULT_MAX_MESSAGE_SIZE = 64 * 1024
DEFAULT_RATE_LIMIT = 10
DEFAULT_RATE_WINDOW = 1.0
DEFAULT_RETRY_DELAY = 1.0


def split_message(text: str, max_size: int = DEFAULT_MAX_MESSAGE_SIZE) -> list[str]:
    """Split ``text`` into chunks of at most ``max_size`` characters.

    Prefers to break after the last newline inside the limit, as long
    as that newline lies past half the limit; otherwise hard-cuts at
    the limit. ``"".join(result) == text`` always holds.
    """
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    chunks: list[str] = []
    rest = text
    while len(rest) > max_size:
        newline = rest.rfind("\n", 0, max_size)
        if newline > max_size * 0.5:
            cut = newline + 1
        else:
            cut = max_size
        chunks.append(rest[:cut])
        rest = rest[cut:]
    if rest:
        chunks.append(rest)
    return chunks


class OutputQueue:
    """FIFO buffer drained by one background task."""

    def __init__(
        self,
        send: SendFn,
        recipient: str,
        *,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        rate_window: float = DEFAULT_RATE_WINDOW,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        clock: Callable[[], float] = time.monotonic,
        name: str = "",
    ) -> None:
        if rate_limit <= 0:
            raise ValueError("rate_limit must be positive")
        self._send = send
        self._recipient = recipient
        self._max_size = max_message_size
        self._rate_limit = rate_limit
        self._rate_window = rate_window
        self._retry_delay = retry_delay
        self._clock = clock
        self._name = name or recipient
        self._buffer: deque[QueuedOutputMessage] = deque()
        self._sent_at: deque[float] = deque()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task | None = None
        self.sent_count = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, text: str) -> int:
        """Buffer ``text`` for delivery. Returns the number of chunks."""
        if not text or not text.strip():
            return 0
        chunks = split_message(text, self._max_size)
        for chunk in chunks:
            self._buffer.append(QueuedOutputMessage(self._recipient, chunk))
        if len(chunks) > 1:
            logger.debug(
                "[%s] split %d chars into %d messages",
                self._name, len(text), len(chunks),
            )
        self._idle.clear()
        self._wakeup.set()
        return len(chunks)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            self._drain_loop(), name=f"output-queue-{self._name}",
        )

    async def stop(self, *, flush: bool = True, timeout: float = 5.0) -> None:
        """Stop draining.

        With ``flush`` the buffer gets up to ``timeout`` seconds to
        empty first; whatever is left afterwards is abandoned.
        """
        if flush and self._buffer and self.running:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "[%s] flush timed out with %d message(s) unsent",
                    self._name, len(self._buffer),
                )
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._buffer:
            logger.info(
                "[%s] dropping %d unsent message(s)", self._name, len(self._buffer),
            )
            self._buffer.clear()
        self._idle.set()

    async def _wait_for_slot(self) -> None:
        """Sleep until another send fits in the rolling window."""
        while True:
            now = self._clock()
            while self._sent_at and self._sent_at[0] <= now - self._rate_window:
                self._sent_at.popleft()
            if len(self._sent_at) < self._rate_limit:
                return
            await asyncio.sleep(self._sent_at[0] + self._rate_window - now)

    async def _drain_loop(self) -> None:
        while True:
            if not self._buffer:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            await self._wait_for_slot()
            msg = self._buffer.popleft()
            try:
                await self._send(msg.recipient, msg.body)
            except asyncio.CancelledError:
                self._buffer.appendleft(msg)
                raise
            except Exception as exc:
                logger.warning(
                    "[%s] send failed, retrying in %.1fs: %s",
                    self._name, self._retry_delay, exc,
                )
                self._buffer.appendleft(msg)
                await asyncio.sleep(self._retry_delay)
                continue
            self._sent_at.append(self._clock())
            self.sent_count += 1
