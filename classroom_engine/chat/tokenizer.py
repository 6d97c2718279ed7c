from __future__ import annotations

import re


MAX_DELAY_MS = 220
PER_CHAR_MS = 8
DEFAULT_BASE_DELAY_MS = 60

_TOKEN_RE = re.compile(r"\S+\s*")


def tokenize(text: str) -> list[str]:
    """Split text into words that keep their trailing whitespace.

    Leading whitespace rides on the first token so that ``"".join(tokens) == text``.
    """
    if not text:
        return []
    tokens = _TOKEN_RE.findall(text)
    if not tokens:
        return [text]
    lead = len(text) - len(text.lstrip())
    if lead:
        tokens[0] = text[:lead] + tokens[0]
    return tokens


def delay_for(token: str, base_delay_ms: int = DEFAULT_BASE_DELAY_MS) -> int:
    return min(MAX_DELAY_MS, int(base_delay_ms) + PER_CHAR_MS * len(token.strip()))
