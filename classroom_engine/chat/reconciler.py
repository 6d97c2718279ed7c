from __future__ import annotations

import re
from typing import Iterable

from classroom_engine.chat.types import Message


_WS_RE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([,.!?:;])")
_MD_IMAGE_RE = re.compile(r"!\[.*?\]\(.*?\)")
_PDF_LINK_RE = re.compile(r"\.pdf(\?|$|\))", re.IGNORECASE)

SECTION_ID_PREFIX = "section:"


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    t = _WS_RE.sub(" ", text).strip()
    return _SPACE_BEFORE_PUNCT_RE.sub(r"\1", t)


def merge_key(m: Message) -> str:
    norm = normalize_text(m.text)
    if not norm:
        return f"id:{m.id}"
    return f"{m.role}:{norm}"


def _wins(candidate: Message, current: Message) -> bool:
    if candidate.is_temporary != current.is_temporary:
        # Confirmed always beats temporary, never the reverse.
        return not candidate.is_temporary
    return candidate.timestamp >= current.timestamp


def merge(existing: Iterable[Message], incoming: Iterable[Message]) -> list[Message]:
    """Merge two message lists, replacing optimistic entries with confirmed ones.

    Entries are keyed by role + normalized text (or id when the text is empty).
    The result is sorted by timestamp; ties keep first-seen order.
    """
    by_key: dict[str, Message] = {}
    for m in [*existing, *incoming]:
        k = merge_key(m)
        cur = by_key.get(k)
        if cur is None or _wins(m, cur):
            by_key[k] = m
    return sorted(by_key.values(), key=lambda m: m.timestamp)


def apply_echo(existing: Iterable[Message], inbound: Message) -> list[Message]:
    """Fold a server echo into the list.

    Optimistic entries are matched on content and sender; temporary ids never
    equal server ids so id matching would leave duplicates behind.
    """
    kept = [
        m
        for m in existing
        if not (m.is_temporary and m.text == inbound.text and m.sender_id == inbound.sender_id)
    ]
    if any(m.id == inbound.id for m in kept):
        return kept
    kept.append(inbound)
    return sorted(kept, key=lambda m: m.timestamp)


def is_slide_reference(m: Message) -> bool:
    if m.slide_url:
        return True
    if m.id.value.startswith(SECTION_ID_PREFIX):
        return True
    txt = m.text or ""
    return bool(_MD_IMAGE_RE.search(txt) or _PDF_LINK_RE.search(txt))
