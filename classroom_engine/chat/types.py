from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal


Role = Literal["user", "assistant"]

TEMP_PREFIX = "temp:"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class MessageId:
    """Message identity: a server-issued id, or a locally minted temporary one."""

    value: str
    temporary: bool = False

    @classmethod
    def temp(cls, hint: str = "") -> MessageId:
        local = hint or f"{now_ms()}-{secrets.token_hex(4)}"
        return cls(value=local, temporary=True)

    @classmethod
    def confirmed(cls, value: Any) -> MessageId:
        return cls(value=str(value), temporary=False)

    @classmethod
    def parse(cls, raw: Any) -> MessageId:
        s = str(raw or "").strip()
        if s.startswith(TEMP_PREFIX):
            return cls(value=s[len(TEMP_PREFIX) :], temporary=True)
        if not s:
            return cls.temp()
        return cls(value=s, temporary=False)

    def __str__(self) -> str:
        return f"{TEMP_PREFIX}{self.value}" if self.temporary else self.value


@dataclass(frozen=True)
class Message:
    id: MessageId
    role: Role
    text: str
    timestamp: int
    sender_id: str | None = None
    conversation_id: str | None = None
    # Set on lesson section reference messages.
    slide_url: str | None = None

    @property
    def is_temporary(self) -> bool:
        return self.id.temporary


@dataclass(frozen=True)
class Section:
    id: str
    order: int
    content: str
    slide_url: str | None = None


@dataclass(frozen=True)
class Conversation:
    id: str
    name: str = ""
    created_at: int = 0


@dataclass(frozen=True)
class AssistantEvent:
    # "chunk" | "status" | "raw" | "done" | "end" | anything else the server sends
    type: str
    text: str | None = None
    agent: str | None = None


@dataclass(frozen=True)
class AssistantPayload:
    content: str | None = None
    response: str | None = None
    conversation_id: str | None = None
    session_id: str | None = None

    @property
    def aggregated(self) -> str:
        return str(self.response or self.content or "")


def parse_timestamp_ms(raw: Any, *, default: int | None = None) -> int:
    """Accept epoch seconds/ms or ISO-8601 strings; fall back to now."""
    fallback = now_ms() if default is None else default
    if raw is None or raw == "":
        return fallback
    if isinstance(raw, (int, float)):
        v = float(raw)
        # Heuristic: values below 1e11 are epoch seconds.
        return int(v * 1000) if v < 1e11 else int(v)
    s = str(raw).strip()
    try:
        return parse_timestamp_ms(float(s), default=fallback)
    except ValueError:
        pass
    try:
        return int(datetime.fromisoformat(s.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return fallback


def role_from_sender(sender: Any) -> Role:
    s = str(sender or "").strip().lower()
    return "user" if s in {"user", "client"} else "assistant"


def message_from_history(obj: dict[str, Any], *, conversation_id: str | None = None) -> Message:
    """Map a history-store record (tutor or peer chat shape) into a Message."""
    raw_id = obj.get("id") or obj.get("_id")
    mid = MessageId.confirmed(raw_id) if raw_id else MessageId.temp()
    sender = obj.get("senderType") or obj.get("type") or ""
    text = obj.get("content") or obj.get("message") or obj.get("response") or ""
    ts = parse_timestamp_ms(obj.get("timestamp") or obj.get("createdAt"))
    return Message(
        id=mid,
        role=role_from_sender(sender),
        text=str(text),
        timestamp=ts,
        sender_id=(str(obj["senderId"]) if obj.get("senderId") else None),
        conversation_id=str(obj.get("conversationId") or conversation_id or "") or None,
    )


def message_from_socket(obj: dict[str, Any], *, self_id: str | None = None) -> Message:
    """Map an inbound socket `message` payload into a confirmed Message."""
    sender_id = str(obj.get("senderId") or "").strip() or None
    role: Role = "user" if (self_id and sender_id == self_id) else "assistant"
    raw_id = obj.get("id")
    return Message(
        id=MessageId.confirmed(raw_id) if raw_id else MessageId.temp(),
        role=role,
        text=str(obj.get("content") or ""),
        timestamp=parse_timestamp_ms(obj.get("createdAt")),
        sender_id=sender_id,
        conversation_id=str(obj.get("conversationId") or "") or None,
    )


def section_from_record(obj: dict[str, Any], *, index: int = 0) -> Section:
    try:
        order = int(obj.get("order") or 0)
    except (TypeError, ValueError):
        order = 0
    url = str(obj.get("urlPdf") or obj.get("slideUrl") or obj.get("slide_url") or "").strip()
    return Section(
        id=str(obj.get("id") or f"idx{index}"),
        order=order,
        content=str(obj.get("content") or ""),
        slide_url=url or None,
    )
