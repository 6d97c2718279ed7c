from __future__ import annotations

import html
import re
from xml.sax.saxutils import escape


DEFAULT_CHUNK_SIZE = 3000
DEFAULT_INTER_CHUNK_PAUSE_MS = 200

_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?\n]?")
_WORD_SPLIT_RE = re.compile(r"(\s+)")


def _split_words(sentence: str, max_len: int) -> tuple[list[str], str]:
    """Pack one oversized sentence by words; returns (full chunks, remainder)."""
    out: list[str] = []
    cur = ""
    for w in _WORD_SPLIT_RE.split(sentence):
        if not w:
            continue
        if len(cur) + len(w) <= max_len:
            cur += w
            continue
        if cur:
            out.append(cur)
        # Hard-wrap a single word that cannot fit on its own.
        while len(w) > max_len:
            out.append(w[:max_len])
            w = w[max_len:]
        cur = w
    return out, cur


def split_into_chunks(text: str, max_len: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """Split narration into engine-safe chunks.

    Sentence boundaries (``. ! ? \\n``) are preferred; a sentence longer than
    `max_len` falls back to word boundaries.
    """
    if not text or not text.strip():
        return []
    max_len = max(1, int(max_len))
    if len(text) <= max_len:
        return [text]

    sentences = _SENTENCE_RE.findall(text) or [text]
    chunks: list[str] = []
    cur = ""
    for s in sentences:
        if len(cur) + len(s) <= max_len:
            cur += s
            continue
        if cur:
            chunks.append(cur)
        if len(s) <= max_len:
            cur = s
            continue
        full, cur = _split_words(s, max_len)
        chunks.extend(full)
    if cur:
        chunks.append(cur)
    return [c.strip() for c in chunks if c.strip()]


def build_ssml(chunk: str, *, language: str, voice: str, pause_ms: int = DEFAULT_INTER_CHUNK_PAUSE_MS) -> str:
    return (
        '<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" '
        f'xmlns:mstts="http://www.w3.org/2001/mstts" xml:lang="{escape(language)}">'
        f'<voice name="{escape(voice)}">{escape(chunk)}'
        f'<break time="{max(0, int(pause_ms))}ms"/></voice></speak>'
    )


_TAG_RE = re.compile(r"<[^>]+>")


def ssml_to_text(ssml: str) -> str:
    """Recover plain text from SSML produced by `build_ssml`, for engines without SSML support."""
    return " ".join(html.unescape(_TAG_RE.sub(" ", ssml)).split())
