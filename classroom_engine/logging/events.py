from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class SessionContext:
    conversation_id: str = ""
    lesson_id: str = ""
    user_id: str = ""


@dataclass
class EventLogger:
    path: Path

    def _write(self, ctx: SessionContext, kind: str, payload: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rec = {
            "ts": time.time(),
            "kind": kind,
            "conversation_id": ctx.conversation_id,
            "lesson_id": ctx.lesson_id,
            "user_id": ctx.user_id,
            "payload": payload,
        }
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=True, default=str) + "\n")

    def event(self, ctx: SessionContext, kind: str, payload: dict) -> None:
        self._write(ctx, kind, payload)

    def error(self, ctx: SessionContext, kind: str, payload: dict) -> None:
        self._write(ctx, f"error:{kind}", payload)

    def turn_started(self, ctx: SessionContext, *, text: str) -> None:
        self._write(ctx, "turn_started", {"text": text})

    def turn_finished(self, ctx: SessionContext, *, latency_ms: int, spoken: bool) -> None:
        self._write(ctx, "turn_finished", {"latency_ms": latency_ms, "spoken": spoken})

    def transport_state(self, ctx: SessionContext, state: str, *, detail: str = "") -> None:
        self._write(ctx, "transport", {"state": state, "detail": detail})

    def lesson_progress(self, ctx: SessionContext, *, state: str, section: int | None = None) -> None:
        self._write(ctx, "lesson", {"state": state, "section": section})
