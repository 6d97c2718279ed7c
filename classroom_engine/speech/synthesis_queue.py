from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Literal

from classroom_engine.logging.events import EventLogger, SessionContext
from classroom_engine.speech.chunker import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_INTER_CHUNK_PAUSE_MS,
    build_ssml,
    split_into_chunks,
)
from classroom_engine.speech.engine import (
    AudioHandle,
    SpeechEngine,
    SpeechEngineError,
    SpeechEngineFactory,
    Viseme,
)


SpeechState = Literal["idle", "thinking", "speaking", "error"]


@dataclass(frozen=True)
class SpeakResult:
    success: bool
    error: str | None = None
    cancelled: bool = False


@dataclass(frozen=True)
class SpeechFrame:
    """What the avatar renders while a chunk plays."""

    text: str
    visemes: tuple[Viseme, ...]
    started_at: float


@dataclass
class _Job:
    text: str
    future: asyncio.Future


@dataclass
class SpeechQueue:
    """Serial text-to-speech pipeline.

    - `speak` enqueues a job and resolves when it has fully played (never raises).
    - A single worker drains jobs; chunks of one job play strictly in order.
    - Viseme offsets are kept on one continuous timeline per job.
    - `stop` is synchronous: no audio or engine session survives it.
    """

    engine_factory: SpeechEngineFactory
    language: str = "vi-VN"
    voice: str = "vi-VN-HoaiMyNeural"
    max_chunk_length: int = DEFAULT_CHUNK_SIZE
    inter_chunk_pause_ms: int = DEFAULT_INTER_CHUNK_PAUSE_MS
    chunk_gap_ms: int = 60
    disposed_retry_delay_ms: int = 500
    on_state: Callable[[SpeechState], None] | None = None
    on_frame: Callable[[SpeechFrame | None], None] | None = None
    logger: EventLogger | None = None
    ctx: SessionContext = field(default_factory=SessionContext)

    def __post_init__(self) -> None:
        self._jobs: deque[_Job] = deque()
        self._current: _Job | None = None
        self._worker: asyncio.Task | None = None
        self._engine: SpeechEngine | None = None
        self._audio: AudioHandle | None = None
        self._timeline: list[Viseme] = []
        self._chunk_offset = 0.0
        self.state: SpeechState = "idle"
        self.error: str | None = None
        self.frame: SpeechFrame | None = None

    # ---------- observable state ----------
    @property
    def is_speaking(self) -> bool:
        return self.state == "speaking"

    @property
    def queue_length(self) -> int:
        return len(self._jobs)

    @property
    def timeline(self) -> tuple[Viseme, ...]:
        return tuple(self._timeline)

    def _set_state(self, state: SpeechState) -> None:
        if state == self.state:
            return
        self.state = state
        if self.on_state is not None:
            self.on_state(state)

    def _set_frame(self, frame: SpeechFrame | None) -> None:
        if frame is None and self.frame is None:
            return
        self.frame = frame
        if self.on_frame is not None:
            self.on_frame(frame)

    # ---------- public API ----------
    async def speak(self, text: str) -> SpeakResult:
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._jobs.append(_Job(text=text, future=fut))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue())
        return await fut

    def stop(self) -> None:
        jobs = ([self._current] if self._current is not None else []) + list(self._jobs)
        self._jobs.clear()
        self._current = None
        for job in jobs:
            self._resolve(job, SpeakResult(success=False, cancelled=True))

        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()

        audio, self._audio = self._audio, None
        if audio is not None:
            audio.stop()
        self._release_engine()
        self._set_frame(None)
        self._set_state("idle")

    def close(self) -> None:
        self.stop()

    # ---------- worker ----------
    def _resolve(self, job: _Job, result: SpeakResult) -> None:
        if not job.future.done():
            job.future.set_result(result)

    async def _process_queue(self) -> None:
        job: _Job | None = None
        try:
            while self._jobs:
                job = self._jobs.popleft()
                self._current = job
                result = await self._run_job(job.text)
                self._resolve(job, result)
                if self._current is job:
                    self._current = None
                job = None
        except asyncio.CancelledError:
            if job is not None:
                self._resolve(job, SpeakResult(success=False, cancelled=True))
            raise

    async def _run_job(self, text: str) -> SpeakResult:
        self.error = None
        self._set_state("thinking")
        self._timeline = []
        self._chunk_offset = 0.0

        chunks = split_into_chunks(text, self.max_chunk_length)
        for i, chunk in enumerate(chunks):
            self._set_state("thinking")
            try:
                await self._speak_chunk_with_retry(chunk)
            except Exception as e:
                # Engine and playback errors, including device failures the adapter did not wrap.
                return self._fail(e, chunk_index=i)
            if i < len(chunks) - 1:
                await asyncio.sleep(self.chunk_gap_ms / 1000.0)

        self._set_frame(None)
        self._set_state("idle")
        return SpeakResult(success=True)

    def _fail(self, err: Exception, *, chunk_index: int) -> SpeakResult:
        msg = str(err) or type(err).__name__
        self.error = msg
        audio, self._audio = self._audio, None
        if audio is not None:
            audio.stop()
        if self.logger is not None:
            self.logger.error(self.ctx, "speech", {"error": msg, "chunk": chunk_index})
        self._set_frame(None)
        self._set_state("error")
        return SpeakResult(success=False, error=msg)

    async def _speak_chunk_with_retry(self, chunk: str) -> None:
        try:
            await self._speak_chunk(chunk)
        except SpeechEngineError as e:
            if not e.disposed:
                raise
            # The session was disposed under us: drop it and try exactly once more.
            self._release_engine()
            if self.logger is not None:
                self.logger.event(self.ctx, "speech_retry", {"error": str(e)})
            await asyncio.sleep(self.disposed_retry_delay_ms / 1000.0)
            await self._speak_chunk(chunk)

    async def _speak_chunk(self, chunk: str) -> None:
        engine = self._ensure_engine()
        local: list[Viseme] = []

        def on_viseme(offset_ms: float, viseme_id: int) -> None:
            local.append((float(offset_ms), int(viseme_id)))

        ssml = build_ssml(chunk, language=self.language, voice=self.voice, pause_ms=self.inter_chunk_pause_ms)
        audio = await engine.synthesize(ssml, on_viseme=on_viseme)
        self._audio = audio

        start = self._chunk_offset
        local.sort(key=lambda v: v[0])
        self._timeline.extend((start + off, vid) for off, vid in local)
        self._set_state("speaking")
        self._set_frame(SpeechFrame(text=chunk, visemes=tuple(self._timeline), started_at=time.time()))
        try:
            await audio.play()
        finally:
            if self._audio is audio:
                self._audio = None

        last_local = local[-1][0] if local else 0.0
        dur = audio.duration_ms
        if not dur or dur <= 0:
            dur = (last_local + self.inter_chunk_pause_ms) if local else 0.0
        self._chunk_offset += max(float(dur), last_local)

    # ---------- engine session ----------
    def _ensure_engine(self) -> SpeechEngine:
        if self._engine is None:
            try:
                self._engine = self.engine_factory()
            except RuntimeError as e:
                raise SpeechEngineError(f"Could not create speech engine: {e}") from e
        return self._engine

    def _release_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.close()
        except (RuntimeError, OSError) as e:
            if self.logger is not None:
                self.logger.error(self.ctx, "speech_close", {"error": str(e)})
