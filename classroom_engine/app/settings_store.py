from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from classroom_engine.app.settings import AppSettings


_OPENAI_TTS_VOICE_PRESETS = {
    "alloy",
    "ash",
    "ballad",
    "coral",
    "echo",
    "sage",
    "shimmer",
    "verse",
}


def _atomic_write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(obj, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


def _deep_merge(a: dict, b: dict) -> dict:
    """Merge b into a recursively (dicts only)."""
    out = dict(a)
    for k, v in b.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _normalize_settings(settings: AppSettings) -> AppSettings:
    st = settings.streaming
    st.base_delay_ms = int(_clamp(int(st.base_delay_ms), 0, 220))
    st.refetch_delay_ms = int(_clamp(int(st.refetch_delay_ms), 0, 10_000))

    sp = settings.speech
    provider = str(sp.provider or "").strip().lower()
    if provider not in {"openai", "console"}:
        provider = "console"
    sp.provider = provider
    sp.language = str(sp.language or "").strip() or "vi-VN"
    sp.voice = str(sp.voice or "").strip() or "vi-VN-HoaiMyNeural"
    tts_model = str(sp.tts_model or "").strip()
    if not tts_model.lower().startswith("gpt-") and tts_model not in {"tts-1", "tts-1-hd"}:
        sp.tts_model = "gpt-4o-mini-tts"
    tts_voice = str(sp.tts_voice or "").strip().lower()
    sp.tts_voice = tts_voice if tts_voice in _OPENAI_TTS_VOICE_PRESETS else "alloy"
    # Provider request limit is a few thousand characters per call.
    sp.max_chunk_length = int(_clamp(int(sp.max_chunk_length), 200, 5000))
    sp.inter_chunk_pause_ms = int(_clamp(int(sp.inter_chunk_pause_ms), 0, 5000))
    sp.chunk_gap_ms = int(_clamp(int(sp.chunk_gap_ms), 0, 5000))
    sp.disposed_retry_delay_ms = int(_clamp(int(sp.disposed_retry_delay_ms), 0, 10_000))
    sp.settle_max_wait_secs = float(_clamp(float(sp.settle_max_wait_secs), 1.0, 600.0))
    sp.settle_poll_ms = int(_clamp(int(sp.settle_poll_ms), 20, 2000))
    if float(sp.viseme_offset_divisor) <= 0:
        sp.viseme_offset_divisor = 10000.0

    tr = settings.transport
    tr.api_url = str(tr.api_url or "").strip()
    tr.socket_url = str(tr.socket_url or "").strip().rstrip("/")
    ns = str(tr.namespace or "").strip() or "/chat"
    tr.namespace = ns if ns.startswith("/") else f"/{ns}"
    tr.user_id = str(tr.user_id or "").strip()
    tr.reconnect_attempts = int(_clamp(int(tr.reconnect_attempts), 0, 20))
    tr.reconnect_delay_secs = float(_clamp(float(tr.reconnect_delay_secs), 0.0, 60.0))
    tr.history_take = int(_clamp(int(tr.history_take), 1, 500))
    tr.request_timeout_secs = float(_clamp(float(tr.request_timeout_secs), 1.0, 300.0))

    le = settings.lesson
    le.slide_timeout_secs = float(_clamp(float(le.slide_timeout_secs), 0.5, 60.0))
    le.pause_min_ms = int(_clamp(int(le.pause_min_ms), 0, 60_000))
    le.pause_max_ms = int(_clamp(int(le.pause_max_ms), 0, 60_000))
    if le.pause_max_ms < le.pause_min_ms:
        le.pause_max_ms = le.pause_min_ms

    so = settings.store
    backend = str(so.backend or "").strip().lower()
    if backend not in {"graphql", "local"}:
        backend = "graphql"
    so.backend = backend
    so.local_db_path = str(so.local_db_path or "").strip() or "data/classroom.sqlite3"

    llm = settings.llm
    llm.model = str(llm.model or "").strip() or "gpt-4o-mini"
    llm.history_turns = int(_clamp(int(llm.history_turns), 0, 100))

    return settings


@dataclass
class SettingsStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._settings = self._load_or_init()

    def _load_or_init(self) -> AppSettings:
        # Start from env defaults so existing .env workflows keep working.
        defaults = AppSettings()
        defaults.streaming.base_delay_ms = _env_int("CLASSROOM_BASE_DELAY_MS", defaults.streaming.base_delay_ms)
        defaults.streaming.refetch_delay_ms = _env_int(
            "CLASSROOM_REFETCH_DELAY_MS", defaults.streaming.refetch_delay_ms
        )

        defaults.speech.provider = os.environ.get("CLASSROOM_TTS_PROVIDER", defaults.speech.provider)
        defaults.speech.language = os.environ.get("CLASSROOM_SPEECH_LANGUAGE", defaults.speech.language)
        defaults.speech.voice = os.environ.get("CLASSROOM_SPEECH_VOICE", defaults.speech.voice)
        defaults.speech.tts_model = os.environ.get("CLASSROOM_TTS_MODEL", defaults.speech.tts_model)
        defaults.speech.tts_voice = os.environ.get("CLASSROOM_TTS_VOICE", defaults.speech.tts_voice)
        defaults.speech.max_chunk_length = _env_int(
            "CLASSROOM_MAX_CHUNK_LENGTH", defaults.speech.max_chunk_length
        )

        defaults.transport.api_url = os.environ.get("CLASSROOM_API_URL", defaults.transport.api_url)
        defaults.transport.socket_url = os.environ.get("CLASSROOM_SOCKET_URL", defaults.transport.socket_url)
        defaults.transport.user_id = os.environ.get("CLASSROOM_USER_ID", defaults.transport.user_id)
        defaults.transport.reconnect_attempts = _env_int(
            "CLASSROOM_RECONNECT_ATTEMPTS", defaults.transport.reconnect_attempts
        )
        defaults.transport.reconnect_delay_secs = _env_float(
            "CLASSROOM_RECONNECT_DELAY_SECS", defaults.transport.reconnect_delay_secs
        )

        defaults.lesson.slide_timeout_secs = _env_float(
            "CLASSROOM_SLIDE_TIMEOUT_SECS", defaults.lesson.slide_timeout_secs
        )

        defaults.store.backend = os.environ.get("CLASSROOM_STORE_BACKEND", defaults.store.backend)
        defaults.store.local_db_path = os.environ.get("CLASSROOM_DB_PATH", defaults.store.local_db_path)
        defaults.llm.model = os.environ.get("CLASSROOM_LLM_MODEL", defaults.llm.model)

        if not self.path.exists():
            defaults = _normalize_settings(defaults)
            _atomic_write_json(self.path, defaults.model_dump())
            return defaults

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            defaults = _normalize_settings(defaults)
            _atomic_write_json(self.path, defaults.model_dump())
            return defaults

        # Merge to allow forward-compatible additions.
        merged = _deep_merge(defaults.model_dump(), raw if isinstance(raw, dict) else {})
        settings = _normalize_settings(AppSettings.model_validate(merged))
        # Normalize: always write back once so file is self-healing.
        _atomic_write_json(self.path, settings.model_dump())
        return settings

    def get(self) -> AppSettings:
        with self._lock:
            return AppSettings.model_validate(self._settings.model_dump())

    def update(self, patch: dict[str, Any]) -> AppSettings:
        with self._lock:
            merged = _deep_merge(self._settings.model_dump(), patch)
            settings = _normalize_settings(AppSettings.model_validate(merged))
            self._settings = settings
            _atomic_write_json(self.path, settings.model_dump())
            # Detached copy built under the lock; self.get() would deadlock here.
            return AppSettings.model_validate(settings.model_dump())
