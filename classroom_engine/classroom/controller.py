from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable

from classroom_engine.app.settings import AppSettings
from classroom_engine.chat.message_list import MessageList
from classroom_engine.chat.payload import events_from_payload, final_text, stream_text
from classroom_engine.chat.streaming_queue import StreamingQueue
from classroom_engine.chat.types import Conversation, Message, MessageId, now_ms
from classroom_engine.lesson.orchestrator import LessonOrchestrator, LessonOutcome, LessonState
from classroom_engine.logging.events import EventLogger, SessionContext
from classroom_engine.speech.engine import SpeechEngineFactory
from classroom_engine.speech.synthesis_queue import SpeechFrame, SpeechQueue
from classroom_engine.transport.history_store import HistoryStore, HistoryStoreError


@dataclass(frozen=True)
class ClassroomView:
    messages: tuple[Message, ...]
    conversation_id: str | None
    is_streaming: bool
    is_thinking: bool
    is_speaking: bool
    input_disabled: bool
    status_text: str
    lesson_state: LessonState
    error: str | None
    frame: SpeechFrame | None = None


ViewListener = Callable[[ClassroomView], None]


@dataclass
class ClassroomController:
    """UI seam for the classroom.

    Takes user intents, drives the streaming, speech and lesson pipelines, and
    publishes a ClassroomView to subscribers after every observable change.
    """

    store: HistoryStore
    messages: MessageList
    streaming: StreamingQueue
    speech: SpeechQueue
    lesson: LessonOrchestrator
    user_id: str = ""
    history_take: int = 50
    logger: EventLogger | None = None

    def __post_init__(self) -> None:
        self.conversation_id: str | None = None
        self.lesson_id: str | None = None
        self.error: str | None = None
        self._awaiting_reply = False
        self._closed = False
        self._listeners: list[ViewListener] = []

        self.streaming.on_change = self._publish
        self.streaming.on_refresh = self._refresh_history
        self.speech.on_state = lambda _state: self._publish()
        self.speech.on_frame = lambda _frame: self._publish()
        self.lesson.on_change = self._publish
        self.messages.subscribe(lambda _snap: self._publish())

    # ---------- view ----------
    @property
    def input_disabled(self) -> bool:
        if not self.lesson.started or self.lesson.stopped_by_user:
            return False
        return self.streaming.is_streaming or self.speech.is_speaking or self.lesson.slide_displaying

    @property
    def view(self) -> ClassroomView:
        return ClassroomView(
            messages=tuple(self.messages.snapshot()),
            conversation_id=self.conversation_id,
            is_streaming=self.streaming.is_streaming,
            is_thinking=self._awaiting_reply or self.speech.state == "thinking",
            is_speaking=self.speech.is_speaking,
            input_disabled=self.input_disabled,
            status_text=self.streaming.status_text,
            lesson_state=self.lesson.state,
            error=self.error or self.lesson.error or self.speech.error,
            frame=self.speech.frame,
        )

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        if not self._listeners:
            return
        v = self.view
        for fn in list(self._listeners):
            fn(v)

    def _ctx(self) -> SessionContext:
        return SessionContext(
            conversation_id=self.conversation_id or "",
            lesson_id=self.lesson_id or "",
            user_id=self.user_id,
        )

    def _set_error(self, kind: str, err: str | None) -> None:
        self.error = err
        if err and self.logger is not None:
            self.logger.error(self._ctx(), kind, {"error": err})
        self._publish()

    # ---------- conversations ----------
    async def _refresh_history(self) -> None:
        cid = self.conversation_id
        if not cid:
            return
        history = await self.store.fetch_history(cid, take=self.history_take)
        if self.conversation_id == cid:
            self.messages.merge(history)

    async def select_conversation(self, conversation_id: str | None) -> None:
        self.streaming.reset()
        self.conversation_id = conversation_id
        ctx = self._ctx()
        self.streaming.ctx = ctx
        self.speech.ctx = ctx
        self.lesson.ctx = ctx
        self.error = None
        if not conversation_id:
            self.messages.reset([])
            return
        try:
            history = await self.store.fetch_history(conversation_id, take=self.history_take)
        except HistoryStoreError as e:
            self._set_error("history", f"Could not load conversation: {e}")
            return
        # Switched again while loading.
        if self.conversation_id == conversation_id:
            self.messages.reset(history)

    async def create_conversation(self, name: str) -> Conversation | None:
        title = str(name or "").strip()
        if not title:
            return None
        try:
            conv = await self.store.create_conversation(title, user_id=self.user_id)
        except HistoryStoreError as e:
            self._set_error("create_conversation", f"Could not create conversation: {e}")
            return None
        await self.select_conversation(conv.id)
        return conv

    async def list_conversations(self) -> list[Conversation]:
        try:
            return await self.store.list_conversations(self.user_id)
        except HistoryStoreError as e:
            self._set_error("list_conversations", f"Could not list conversations: {e}")
            return []

    # ---------- chat turn ----------
    async def send_text(self, content: str) -> str | None:
        """Run one tutor turn; returns the narrated text, or None when nothing was sent."""
        text = str(content or "").strip()
        if not text or self._closed or self.input_disabled:
            return None
        cid = self.conversation_id
        if not cid:
            self._set_error("send", "Select a conversation first.")
            return None

        self.error = None
        self.messages.add(
            Message(
                id=MessageId.temp(),
                role="user",
                text=text,
                timestamp=now_ms(),
                sender_id=self.user_id or "me",
                conversation_id=cid,
            )
        )
        ctx = self._ctx()
        if self.logger is not None:
            self.logger.turn_started(ctx, text=text)
        t0 = time.perf_counter()

        self._awaiting_reply = True
        self._publish()
        try:
            payload = await self.store.post_message(cid, text, lesson_id=self.lesson_id, user_id=self.user_id or None)
        except HistoryStoreError as e:
            self._awaiting_reply = False
            self._set_error("post_message", f"Could not send message: {e}")
            return None
        self._awaiting_reply = False

        if self.conversation_id != cid:
            return None

        events = events_from_payload(payload)
        narration = final_text(payload, events)
        streamed = False
        for ev in events:
            if ev.type == "status" and ev.agent:
                self.streaming.set_status(f"Agent: {ev.agent}")
            piece = stream_text(ev)
            if piece:
                self.streaming.enqueue(piece)
                streamed = True
        if not streamed and narration:
            self.streaming.enqueue(narration)
        self.streaming.request_refresh()
        self._publish()

        spoken = False
        if narration:
            result = await self.speech.speak(narration)
            spoken = result.success
            if result.error:
                self._set_error("speech", result.error)
        if self.logger is not None:
            self.logger.turn_finished(ctx, latency_ms=int((time.perf_counter() - t0) * 1000), spoken=spoken)
        return narration or None

    # ---------- lesson ----------
    async def start_lesson(self, lesson_id: str | None) -> LessonOutcome:
        self.lesson_id = str(lesson_id or "") or None
        self.lesson.ctx = self._ctx()
        self.error = None
        outcome = await self.lesson.start(lesson_id)
        self._publish()
        return outcome

    def stop_lesson(self) -> None:
        self.streaming.cancel()
        self.lesson.stop()
        self.streaming.set_status("Stopped")

    def slide_rendered(self, message_id: MessageId | str) -> None:
        self.lesson.slide_rendered(message_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.streaming.reset()
        if self.lesson.state == "running":
            self.lesson.stop()
        self.speech.close()
        await self.streaming.wait_idle()
        self._listeners.clear()


def build_controller(
    settings: AppSettings,
    *,
    store: HistoryStore,
    engine_factory: SpeechEngineFactory,
    logger: EventLogger | None = None,
    rng: random.Random | None = None,
) -> ClassroomController:
    """Wire a controller and its pipelines from settings."""
    messages = MessageList()
    streaming = StreamingQueue(
        messages=messages,
        base_delay_ms=settings.streaming.base_delay_ms,
        refetch_delay_ms=settings.streaming.refetch_delay_ms,
        logger=logger,
    )
    sp = settings.speech
    speech = SpeechQueue(
        engine_factory=engine_factory,
        language=sp.language,
        voice=sp.voice,
        max_chunk_length=sp.max_chunk_length,
        inter_chunk_pause_ms=sp.inter_chunk_pause_ms,
        chunk_gap_ms=sp.chunk_gap_ms,
        disposed_retry_delay_ms=sp.disposed_retry_delay_ms,
        logger=logger,
    )
    le = settings.lesson
    lesson = LessonOrchestrator(
        store=store,
        speaker=speech,
        messages=messages,
        slide_timeout_secs=le.slide_timeout_secs,
        pause_min_ms=le.pause_min_ms,
        pause_max_ms=le.pause_max_ms,
        settle_max_wait_secs=sp.settle_max_wait_secs,
        settle_poll_ms=sp.settle_poll_ms,
        rng=rng or random.Random(),
        logger=logger,
    )
    return ClassroomController(
        store=store,
        messages=messages,
        streaming=streaming,
        speech=speech,
        lesson=lesson,
        user_id=settings.transport.user_id,
        history_take=settings.transport.history_take,
        logger=logger,
    )
