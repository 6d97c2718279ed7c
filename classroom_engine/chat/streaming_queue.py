from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal

from classroom_engine.chat.message_list import MessageList
from classroom_engine.chat.tokenizer import DEFAULT_BASE_DELAY_MS, delay_for, tokenize
from classroom_engine.chat.types import Message, MessageId, now_ms
from classroom_engine.logging.events import EventLogger, SessionContext


CancelState = Literal["idle", "running", "cancelled"]


@dataclass
class CancelToken:
    """Shared cancellation handle for one cooperative worker."""

    state: CancelState = "idle"
    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    @property
    def cancelled(self) -> bool:
        return self.state == "cancelled"

    def begin(self) -> None:
        self.state = "running"
        self._event.clear()

    def finish(self) -> None:
        if self.state == "running":
            self.state = "idle"

    def cancel(self) -> None:
        self.state = "cancelled"
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`; return early (True) once cancelled."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class StreamingQueue:
    """Paces queued assistant text into a growing live message.

    One drain loop at a time; `enqueue` while draining only extends the FIFO.
    """

    messages: MessageList
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    refetch_delay_ms: int = 300
    on_refresh: Callable[[], Awaitable[None]] | None = None
    on_change: Callable[[], None] | None = None
    logger: EventLogger | None = None
    ctx: SessionContext = field(default_factory=SessionContext)

    def __post_init__(self) -> None:
        self.token = CancelToken()
        self._queue: deque[str] = deque()
        self._draining = False
        self._drain_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._refresh_pending = False
        self.live_id: MessageId | None = None
        self.status_text = ""

    @property
    def is_streaming(self) -> bool:
        return self._draining

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def set_status(self, text: str) -> None:
        self.status_text = text
        self._changed()

    def enqueue(self, text: str) -> None:
        units = tokenize(text)
        if not units:
            return
        self._queue.extend(units)
        if not self._draining:
            self._start_drain()

    def request_refresh(self) -> None:
        self._refresh_pending = True
        if not self._draining and not self._queue:
            self._flush_refresh()

    def cancel(self) -> None:
        self.token.cancel()
        self._queue.clear()

    def reset(self) -> None:
        self.cancel()
        self._refresh_pending = False
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None

    async def wait_idle(self) -> None:
        # A drain may hand over to a follow-up drain; wait for the last one.
        task = self._drain_task
        while task is not None and not task.done():
            await asyncio.shield(task)
            task = self._drain_task

    def _append(self, unit: str) -> None:
        if self.live_id is None:
            mid = MessageId.temp()
            self.live_id = mid
            self.messages.add(
                Message(
                    id=mid,
                    role="assistant",
                    text=unit,
                    timestamp=now_ms(),
                    conversation_id=self.ctx.conversation_id or None,
                )
            )
            return
        self.messages.append_token(self.live_id, unit)

    def _begin(self) -> None:
        self._draining = True
        self.token.begin()
        self._changed()

    def _start_drain(self) -> None:
        self._begin()
        self._drain_task = asyncio.create_task(self._drain_loop())

    async def drain(self) -> None:
        """Drain the queue inline; no-op while another drain is running."""
        if self._draining:
            return
        self._begin()
        await self._drain_loop()

    async def _drain_loop(self) -> None:
        try:
            while self._queue and not self.token.cancelled:
                unit = self._queue.popleft()
                if not unit:
                    continue
                self._append(unit)
                await self.token.sleep(delay_for(unit, self.base_delay_ms) / 1000.0)
        finally:
            self._draining = False
            cancelled = self.token.cancelled
            self.token.finish()
            self.live_id = None
            self.status_text = ""
            if self.logger is not None:
                self.logger.event(self.ctx, "stream_drained", {"cancelled": cancelled})
            if self._queue:
                # Units enqueued after a cancel belong to a new turn.
                self._start_drain()
            else:
                self._changed()
                if self._refresh_pending:
                    self._flush_refresh()

    def _flush_refresh(self) -> None:
        self._refresh_pending = False
        if self.on_refresh is None:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_after_delay())

    async def _refresh_after_delay(self) -> None:
        await asyncio.sleep(self.refetch_delay_ms / 1000.0)
        if self.on_refresh is None:
            return
        try:
            await self.on_refresh()
        except RuntimeError as e:
            if self.logger is not None:
                self.logger.error(self.ctx, "history_refresh", {"error": str(e)})
