from __future__ import annotations

import json
import re
from typing import Any

from classroom_engine.chat.types import AssistantEvent, AssistantPayload


STREAM_EVENT_TYPES = {"chunk", "status", "raw", "done", "end"}

_BLOCK_SPLIT_RE = re.compile(r"\n\n+")
_DATA_PREFIX_RE = re.compile(r"^data:\s?")


def _event_from_obj(obj: Any, joined: str) -> AssistantEvent:
    if not isinstance(obj, dict):
        return AssistantEvent(type="raw", text=joined)
    t = str(obj.get("type") or "").strip().lower()
    if t == "chunk":
        text = obj.get("response")
        if text is None:
            text = obj.get("text")
        return AssistantEvent(type="chunk", text=text if isinstance(text, str) else None)
    if t == "status":
        agent = obj.get("agent")
        return AssistantEvent(type="status", agent=str(agent) if agent else None)
    if t == "raw":
        raw = obj.get("raw")
        return AssistantEvent(type="raw", text=raw if isinstance(raw, str) else None)
    return AssistantEvent(type=t or "unknown")


def parse_sse_aggregated(agg: str) -> list[AssistantEvent]:
    """Parse an SSE-like aggregated string into discrete events.

    Events are separated by blank lines; each line may carry a ``data:`` prefix.
    Blocks that are not JSON become ``raw`` events carrying the block text.
    """
    if not agg:
        return []
    events: list[AssistantEvent] = []
    for block in _BLOCK_SPLIT_RE.split(agg):
        block = block.strip()
        if not block:
            continue
        lines = [_DATA_PREFIX_RE.sub("", ln).strip() for ln in block.split("\n")]
        joined = "\n".join(ln for ln in lines if ln)
        if not joined:
            continue
        try:
            obj = json.loads(joined)
        except json.JSONDecodeError:
            events.append(AssistantEvent(type="raw", text=joined))
            continue
        events.append(_event_from_obj(obj, joined))
    return events


def events_from_payload(payload: AssistantPayload) -> list[AssistantEvent]:
    """Return the stream-relevant events of a payload.

    An empty list means the payload is one final text block (no streaming events,
    or the aggregated string could not be parsed).
    """
    try:
        events = parse_sse_aggregated(payload.aggregated)
    except (TypeError, ValueError):
        return []
    return [ev for ev in events if ev.type in STREAM_EVENT_TYPES]


def stream_text(ev: AssistantEvent) -> str | None:
    if ev.type in {"chunk", "raw"} and isinstance(ev.text, str):
        return ev.text
    return None


def final_text(payload: AssistantPayload, events: list[AssistantEvent]) -> str:
    """Pick the narration text: server content, else joined chunks, else the raw payload."""
    content = str(payload.content or "").strip()
    if content:
        return content
    if events:
        return "".join(t for t in (stream_text(ev) for ev in events) if t).strip()
    return payload.aggregated.strip()
