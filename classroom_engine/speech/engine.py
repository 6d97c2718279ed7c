from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol


Viseme = tuple[float, int]  # (offset_ms, viseme_id)
VisemeListener = Callable[[float, int], None]


class SpeechEngineError(RuntimeError):
    """Synthesis failed (engine unavailable, session disposed, bad request)."""

    @property
    def disposed(self) -> bool:
        return "disposed" in str(self).lower()


class AudioPlaybackError(RuntimeError):
    pass


class AudioHandle(Protocol):
    @property
    def duration_ms(self) -> float | None: ...

    async def play(self) -> None:
        """Start playback and return on natural completion; raise AudioPlaybackError on failure."""
        ...

    def stop(self) -> None: ...


class SpeechEngine(Protocol):
    """One live synthesizer session. The queue holds at most one at a time."""

    async def synthesize(self, ssml: str, *, on_viseme: VisemeListener) -> AudioHandle: ...

    def close(self) -> None: ...


SpeechEngineFactory = Callable[[], SpeechEngine]


@dataclass(frozen=True)
class VisemeClock:
    """Converts raw engine viseme offsets to milliseconds.

    The unit is engine specific: Azure reports 100-ns ticks (divisor 10_000),
    engines that already report milliseconds use 1.
    """

    divisor: float = 10_000.0

    def to_ms(self, raw_offset: float) -> float:
        if self.divisor <= 0:
            return float(raw_offset)
        return float(raw_offset) / self.divisor
