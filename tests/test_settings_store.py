import json

from classroom_engine.app.settings_store import SettingsStore


def test_creates_file_with_env_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("CLASSROOM_RECONNECT_ATTEMPTS", "7")
    monkeypatch.setenv("CLASSROOM_STORE_BACKEND", "local")
    path = tmp_path / "settings.json"
    store = SettingsStore(path=path)

    s = store.get()
    assert s.transport.reconnect_attempts == 7
    assert s.store.backend == "local"
    assert json.loads(path.read_text(encoding="utf-8"))["transport"]["reconnect_attempts"] == 7


def test_update_merges_and_normalizes(tmp_path):
    store = SettingsStore(path=tmp_path / "settings.json")
    s = store.update(
        {
            "lesson": {"pause_min_ms": 2000, "pause_max_ms": 500},
            "speech": {"provider": "azure", "tts_voice": "Nope", "max_chunk_length": 999999},
            "transport": {"namespace": "chat", "socket_url": "http://h:1/"},
        }
    )
    assert s.lesson.pause_max_ms == 2000
    assert s.speech.provider == "console"
    assert s.speech.tts_voice == "alloy"
    assert s.speech.max_chunk_length == 5000
    assert s.transport.namespace == "/chat"
    assert s.transport.socket_url == "http://h:1"
    # Untouched sections keep their defaults.
    assert s.streaming.base_delay_ms == 60

    reopened = SettingsStore(path=tmp_path / "settings.json").get()
    assert reopened.lesson.pause_max_ms == 2000


def test_corrupt_file_self_heals(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")
    s = SettingsStore(path=path).get()
    assert s.version == 1
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1


def test_get_returns_detached_copy(tmp_path):
    store = SettingsStore(path=tmp_path / "settings.json")
    s = store.get()
    s.lesson.slide_timeout_secs = 99
    assert store.get().lesson.slide_timeout_secs == 8.0
