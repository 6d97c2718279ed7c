from __future__ import annotations

import asyncio
import random
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Literal, Protocol

from classroom_engine.chat.message_list import MessageList
from classroom_engine.chat.reconciler import SECTION_ID_PREFIX, is_slide_reference, normalize_text
from classroom_engine.chat.streaming_queue import CancelToken
from classroom_engine.chat.types import Message, MessageId, Section, now_ms
from classroom_engine.logging.events import EventLogger, SessionContext
from classroom_engine.speech.synthesis_queue import SpeakResult
from classroom_engine.transport.history_store import HistoryStore, HistoryStoreError


LessonState = Literal["idle", "running", "ended", "stopped", "failed"]

_PDF_RE = re.compile(r"\.pdf(\?.*)?$", re.IGNORECASE)
_IMAGE_RE = re.compile(r"\.(png|jpe?g|gif|webp)(\?.*)?$", re.IGNORECASE)


class Speaker(Protocol):
    @property
    def is_speaking(self) -> bool: ...

    async def speak(self, text: str) -> SpeakResult: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class LessonOutcome:
    state: LessonState
    sections_played: int = 0
    error: str | None = None


def is_pdf_url(url: str | None) -> bool:
    return bool(url) and bool(_PDF_RE.search(str(url)))


def slide_preview_url(url: str | None) -> str | None:
    """Image preview for a slide URL, or None when it is not renderable as an image.

    Cloudinary serves PDFs under `raw/upload`; the same asset rendered as an
    image lives under `image/upload` with a `.jpg` extension.
    """
    u = str(url or "").strip()
    if not u:
        return None
    if is_pdf_url(u):
        u = u.replace("/raw/upload/", "/image/upload/")
        return _PDF_RE.sub(".jpg", u)
    if _IMAGE_RE.search(u):
        return u
    return None


def section_reference_text(section: Section, position: int) -> str:
    preview = slide_preview_url(section.slide_url)
    if preview:
        return f"![slide]({preview})"
    if section.slide_url:
        return f"[Slide]({section.slide_url})"
    return f"Section {position}"


@dataclass
class LessonOrchestrator:
    """Narrates a lesson section by section.

    For each section (ascending `order`): post a slide reference, narrate the
    content, wait for playback to settle, pause briefly. `stop` ends the run
    from any await point and strips slide references from the transcript.
    """

    store: HistoryStore
    speaker: Speaker
    messages: MessageList
    slide_timeout_secs: float = 8.0
    pause_min_ms: int = 1000
    pause_max_ms: int = 3000
    settle_max_wait_secs: float = 120.0
    settle_poll_ms: int = 150
    rng: random.Random = field(default_factory=random.Random)
    on_change: Callable[[], None] | None = None
    logger: EventLogger | None = None
    ctx: SessionContext = field(default_factory=SessionContext)

    def __post_init__(self) -> None:
        self.state: LessonState = "idle"
        self.error: str | None = None
        self.stopped_by_user = False
        self.slide_displaying = False
        self.current_section: int | None = None
        self._slide_id: MessageId | None = None
        self._slide_timer: asyncio.TimerHandle | None = None
        self._token = CancelToken()
        # Section reference ids carry the run number so a replay posts fresh references.
        self._run_seq = 0

    @property
    def started(self) -> bool:
        return self.state != "idle"

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _set_state(self, state: LessonState) -> None:
        self.state = state
        if self.logger is not None:
            self.logger.lesson_progress(self.ctx, state=state, section=self.current_section)
        self._changed()

    # ---------- slide flag ----------
    def _show_slide(self, mid: MessageId) -> None:
        self._cancel_slide_timer()
        self._slide_id = mid
        self.slide_displaying = True
        loop = asyncio.get_running_loop()
        self._slide_timer = loop.call_later(self.slide_timeout_secs, self._slide_timed_out, mid)
        self._changed()

    def _slide_timed_out(self, mid: MessageId) -> None:
        self._slide_timer = None
        if self._slide_id == mid:
            self._clear_slide()

    def _cancel_slide_timer(self) -> None:
        timer, self._slide_timer = self._slide_timer, None
        if timer is not None:
            timer.cancel()

    def _clear_slide(self) -> None:
        self._cancel_slide_timer()
        was = self.slide_displaying
        self._slide_id = None
        self.slide_displaying = False
        if was:
            self._changed()

    def slide_rendered(self, message_id: MessageId | str) -> None:
        mid = message_id if isinstance(message_id, MessageId) else MessageId.parse(message_id)
        if self._slide_id is not None and self._slide_id == mid:
            self._clear_slide()

    # ---------- run ----------
    def _fail(self, err: str) -> LessonOutcome:
        self.error = err
        if self.logger is not None:
            self.logger.error(self.ctx, "lesson", {"error": err})
        self._set_state("failed")
        return LessonOutcome(state="failed", error=err)

    def _present(self, section: Section, position: int) -> None:
        mid = MessageId.confirmed(f"{SECTION_ID_PREFIX}{section.id}:{self._run_seq}")
        preview = slide_preview_url(section.slide_url)
        self.messages.add(
            Message(
                id=mid,
                role="assistant",
                text=section_reference_text(section, position),
                timestamp=now_ms(),
                conversation_id=self.ctx.conversation_id or None,
                slide_url=preview or section.slide_url,
            )
        )
        if preview or is_pdf_url(section.slide_url):
            self._show_slide(mid)

    async def _settle(self) -> None:
        deadline = time.monotonic() + self.settle_max_wait_secs
        while self.speaker.is_speaking and time.monotonic() < deadline:
            if await self._token.sleep(self.settle_poll_ms / 1000.0):
                return

    async def start(self, lesson_id: str | None) -> LessonOutcome:
        if self.state == "running":
            return LessonOutcome(state="running", error="Lesson is already running.")

        self._run_seq += 1
        self._token = CancelToken()
        self._token.begin()
        self.stopped_by_user = False
        self.error = None
        self.current_section = None
        self.ctx = SessionContext(
            conversation_id=self.ctx.conversation_id,
            lesson_id=str(lesson_id or ""),
            user_id=self.ctx.user_id,
        )
        self._set_state("running")

        if not lesson_id:
            return self._fail("No lesson selected.")
        try:
            sections = await self.store.fetch_sections(lesson_id)
        except HistoryStoreError as e:
            return self._fail(f"Could not load lesson sections: {e}")
        if self._token.cancelled:
            return LessonOutcome(state="stopped")
        if not sections:
            return self._fail("Lesson has no sections.")

        # sorted() is stable: equal orders keep fetch order.
        ordered = sorted(sections, key=lambda s: s.order)
        played = 0
        for i, section in enumerate(ordered, start=1):
            if self._token.cancelled:
                break
            self.current_section = i
            if self.logger is not None:
                self.logger.lesson_progress(self.ctx, state="section", section=i)
            self._present(section, i)

            content = normalize_text(section.content)
            if content:
                result = await self.speaker.speak(content)
                if result.error and self.logger is not None:
                    self.logger.error(self.ctx, "lesson_speech", {"section": section.id, "error": result.error})
                await self._settle()
            if self._token.cancelled:
                break
            played += 1

            pause_ms = self.rng.randint(self.pause_min_ms, max(self.pause_min_ms, self.pause_max_ms))
            if await self._token.sleep(pause_ms / 1000.0):
                break

        if self._token.cancelled:
            return LessonOutcome(state="stopped", sections_played=played)
        self._token.finish()
        self._clear_slide()
        self._set_state("ended")
        return LessonOutcome(state="ended", sections_played=played)

    def stop(self) -> None:
        self._token.cancel()
        self.speaker.stop()
        self._clear_slide()
        self.messages.remove_where(is_slide_reference)
        self.stopped_by_user = True
        if self.state == "running":
            self._set_state("stopped")
        else:
            self._changed()
