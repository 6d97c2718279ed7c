import asyncio

from fakes import FakeHistoryStore, FakeSpeechEngine, confirmed

from classroom_engine.app.settings import AppSettings
from classroom_engine.chat.types import AssistantPayload, now_ms
from classroom_engine.classroom.controller import build_controller
from classroom_engine.logging.events import EventLogger


SSE = (
    'data: {"type": "status", "agent": "Tutor"}\n\n'
    'data: {"type": "chunk", "response": "Hello "}\n\n'
    'data: {"type": "chunk", "response": "class."}\n\n'
)


def _settings() -> AppSettings:
    s = AppSettings()
    s.streaming.base_delay_ms = 0
    s.streaming.refetch_delay_ms = 0
    s.speech.chunk_gap_ms = 0
    s.transport.user_id = "u1"
    return s


def test_send_text_streams_speaks_and_reconciles(tmp_path):
    async def run():
        engine = FakeSpeechEngine()
        store = FakeHistoryStore(payload=AssistantPayload(response=SSE))
        logger = EventLogger(path=tmp_path / "events.jsonl")
        controller = build_controller(_settings(), store=store, engine_factory=lambda: engine, logger=logger)
        views = []
        controller.subscribe(views.append)
        await controller.select_conversation("conv1")
        store.fetched.clear()

        t = now_ms()
        store.history = [
            confirmed("m1", "hi", t, sender="u1"),
            confirmed("m2", "Hello class.", t + 1, role="assistant"),
        ]
        narration = await controller.send_text("  hi ")
        assert narration == "Hello class."
        assert store.posted == [("conv1", "hi")]
        assert engine.spoken == ["Hello class."]
        assert any(v.status_text == "Agent: Tutor" for v in views)
        assert any(v.is_thinking for v in views)

        await controller.streaming.wait_idle()
        await asyncio.wait_for(store.fetched.wait(), timeout=1.0)
        await asyncio.sleep(0)

        msgs = controller.messages.snapshot()
        assert [(m.role, m.text) for m in msgs] == [("user", "hi"), ("assistant", "Hello class.")]
        assert not any(m.is_temporary for m in msgs)
        assert not controller.view.is_streaming
        await controller.close()

        kinds = [line for line in (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()]
        assert any('"turn_started"' in k for k in kinds)
        assert any('"turn_finished"' in k for k in kinds)

    asyncio.run(run())


def test_blank_input_and_missing_conversation():
    async def run():
        store = FakeHistoryStore()
        controller = build_controller(_settings(), store=store, engine_factory=FakeSpeechEngine)
        assert await controller.send_text("   ") is None
        assert await controller.send_text("hello") is None
        assert controller.view.error == "Select a conversation first."
        assert store.posted == []
        await controller.close()

    asyncio.run(run())


def test_create_conversation_selects_it():
    async def run():
        store = FakeHistoryStore()
        controller = build_controller(_settings(), store=store, engine_factory=FakeSpeechEngine)
        conv = await controller.create_conversation("Algebra")
        assert conv is not None
        assert controller.conversation_id == conv.id
        assert [c.name for c in await controller.list_conversations()] == ["Algebra"]
        assert await controller.create_conversation("  ") is None
        await controller.close()

    asyncio.run(run())


def test_speech_failure_surfaces_in_view():
    async def run():
        store = FakeHistoryStore(payload=AssistantPayload(content="Answer."))
        controller = build_controller(
            _settings(), store=store, engine_factory=lambda: FakeSpeechEngine(fail="device busy")
        )
        await controller.select_conversation("conv1")
        assert await controller.send_text("q") == "Answer."
        assert controller.view.error == "device busy"
        await controller.close()

    asyncio.run(run())
