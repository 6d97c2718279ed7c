from __future__ import annotations

from pydantic import BaseModel, Field


class StreamingSettings(BaseModel):
    # Pacer base delay per token; the per-char factor and ceiling are fixed.
    base_delay_ms: int = 60
    # History refetch after a streamed turn finishes.
    refetch_delay_ms: int = 300


class SpeechSettings(BaseModel):
    # Speech engine:
    # - openai: OpenAI speech endpoint + sounddevice playback
    # - console: prints chunks and simulates timing (no audio device needed)
    provider: str = "console"  # "openai" | "console"
    language: str = "vi-VN"
    voice: str = "vi-VN-HoaiMyNeural"
    tts_model: str = "gpt-4o-mini-tts"
    tts_voice: str = "alloy"

    max_chunk_length: int = 3000
    inter_chunk_pause_ms: int = 200
    chunk_gap_ms: int = 60
    disposed_retry_delay_ms: int = 500

    # Lesson narration waits for playback to settle, bounded.
    settle_max_wait_secs: float = 120.0
    settle_poll_ms: int = 150

    # Raw engine viseme offset units per millisecond (100-ns ticks -> 10000).
    viseme_offset_divisor: float = 10000.0


class TransportSettings(BaseModel):
    api_url: str = "http://localhost:4000/graphql"
    socket_url: str = "http://localhost:4000"
    namespace: str = "/chat"
    user_id: str = ""

    reconnect_attempts: int = 5
    reconnect_delay_secs: float = 1.0
    history_take: int = 50
    request_timeout_secs: float = 30.0


class LessonSettings(BaseModel):
    slide_timeout_secs: float = 8.0
    pause_min_ms: int = 1000
    pause_max_ms: int = 3000


class StoreSettings(BaseModel):
    # History backend:
    # - graphql: remote course backend
    # - local: SQLite file, replies from the configured LLM
    backend: str = "graphql"  # "graphql" | "local"
    local_db_path: str = "data/classroom.sqlite3"


class LLMSettings(BaseModel):
    # Only used by the local store.
    model: str = "gpt-4o-mini"
    system_prompt: str = (
        "You are a patient classroom tutor. Answer the student's question clearly and briefly, "
        "in the language the student used. If a lesson context is given, stay within it."
    )
    history_turns: int = 12


class AppSettings(BaseModel):
    version: int = 1
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    speech: SpeechSettings = Field(default_factory=SpeechSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    lesson: LessonSettings = Field(default_factory=LessonSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
