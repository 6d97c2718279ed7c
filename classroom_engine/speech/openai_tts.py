from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Any

from classroom_engine.speech.chunker import ssml_to_text
from classroom_engine.speech.engine import AudioPlaybackError, SpeechEngineError, VisemeListener


@dataclass
class PcmAudioHandle:
    """16-bit little-endian PCM played through sounddevice."""

    pcm: bytes
    sample_rate: int = 24000
    channels: int = 1
    _done: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _sd: Any = field(default=None, init=False)

    @property
    def duration_ms(self) -> float | None:
        frames = len(self.pcm) // (2 * max(1, self.channels))
        if frames <= 0 or self.sample_rate <= 0:
            return None
        return frames * 1000.0 / self.sample_rate

    async def play(self) -> None:
        try:
            import numpy as np  # type: ignore
            import sounddevice as sd  # type: ignore
        except ModuleNotFoundError as e:  # pragma: no cover
            raise AudioPlaybackError(
                "Audio playback requires sounddevice and numpy. Install with: pip install -e '.[audio]'"
            ) from e
        except OSError as e:  # pragma: no cover
            # sounddevice raises OSError when the PortAudio library is missing.
            raise AudioPlaybackError(f"Audio device unavailable: {e}") from e

        dur = self.duration_ms
        if dur is None:
            return
        samples = np.frombuffer(self.pcm[: len(self.pcm) - len(self.pcm) % 2], dtype=np.int16)
        if self.channels > 1:
            samples = samples[: len(samples) - len(samples) % self.channels].reshape(-1, self.channels)

        self._done.clear()
        self._sd = sd
        try:
            sd.play(samples, samplerate=self.sample_rate, blocking=False)
        except sd.PortAudioError as e:
            raise AudioPlaybackError(f"Audio device error: {e}") from e
        try:
            # Small tail margin so the device buffer drains before we move on.
            await asyncio.wait_for(self._done.wait(), timeout=dur / 1000.0 + 0.05)
        except asyncio.TimeoutError:
            pass
        finally:
            sd.stop()

    def stop(self) -> None:
        self._done.set()
        if self._sd is not None:
            self._sd.stop()


@dataclass
class OpenAISpeechEngine:
    """OpenAI speech endpoint behind the SpeechEngine protocol.

    The endpoint takes plain text, so SSML is flattened first; it reports no
    visemes, so the listener is never called.
    """

    model: str = "gpt-4o-mini-tts"
    voice: str = "alloy"
    api_key: str | None = None
    base_url: str | None = None
    sample_rate: int = 24000

    def __post_init__(self) -> None:
        try:
            from openai import AsyncOpenAI  # type: ignore
        except ModuleNotFoundError as e:  # pragma: no cover
            raise RuntimeError("OpenAI SDK not installed. Install with: pip install -e .") from e

        key = self.api_key or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise RuntimeError("Missing OPENAI_API_KEY.")

        base_url = self.base_url or os.environ.get("OPENAI_BASE_URL")
        if base_url is not None and not str(base_url).strip():
            base_url = None

        self._client = AsyncOpenAI(api_key=key, base_url=base_url)
        self._closed = False
        self._close_task: asyncio.Task | None = None

    async def synthesize(self, ssml: str, *, on_viseme: VisemeListener) -> PcmAudioHandle:
        from openai import OpenAIError  # type: ignore

        if self._closed:
            raise SpeechEngineError("Speech session was disposed.")
        text = ssml_to_text(ssml)
        try:
            resp = await self._client.audio.speech.create(
                model=self.model,
                voice=self.voice,
                input=text,
                response_format="pcm",
            )
        except OpenAIError as e:
            raise SpeechEngineError(f"OpenAI speech request failed: {e}") from e
        return PcmAudioHandle(pcm=resp.content, sample_rate=self.sample_rate)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._close_task = loop.create_task(self._client.close())
