from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from classroom_engine.app.settings import AppSettings
from classroom_engine.app.settings_store import SettingsStore
from classroom_engine.chat.message_list import MessageList
from classroom_engine.chat.reconciler import is_slide_reference
from classroom_engine.classroom.controller import ClassroomController, ClassroomView, build_controller
from classroom_engine.llm.openai_provider import DummyLLM, OpenAIChatLLM
from classroom_engine.logging.events import EventLogger
from classroom_engine.speech.chunker import ssml_to_text
from classroom_engine.speech.engine import SpeechEngineFactory, VisemeClock, VisemeListener
from classroom_engine.speech.openai_tts import OpenAISpeechEngine
from classroom_engine.state.store import SqlHistoryStore
from classroom_engine.transport.chat_socket import ChatSocketSession, ConversationSession
from classroom_engine.transport.graphql_store import GraphQLHistoryStore
from classroom_engine.transport.history_store import HistoryStore


# Raw viseme ticks per word for the console engine (100-ns units).
_CONSOLE_TICKS_PER_WORD = 1_200_000


@dataclass
class ConsoleAudioHandle:
    text: str
    duration_ms: float | None
    _done: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    async def play(self) -> None:
        print(f"[speech] {self.text}")
        try:
            await asyncio.wait_for(self._done.wait(), timeout=(self.duration_ms or 0.0) / 1000.0)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._done.set()


@dataclass
class ConsoleSpeechEngine:
    """Prints narration instead of playing it; emits one viseme per word."""

    clock: VisemeClock = field(default_factory=VisemeClock)
    _closed: bool = False

    async def synthesize(self, ssml: str, *, on_viseme: VisemeListener) -> ConsoleAudioHandle:
        text = ssml_to_text(ssml)
        words = text.split()
        for i, w in enumerate(words):
            on_viseme(self.clock.to_ms(i * _CONSOLE_TICKS_PER_WORD), len(w) % 22)
        dur = self.clock.to_ms(len(words) * _CONSOLE_TICKS_PER_WORD)
        return ConsoleAudioHandle(text=text, duration_ms=dur)

    def close(self) -> None:
        self._closed = True


def _try_load_dotenv() -> None:
    try:
        from dotenv import load_dotenv  # type: ignore

        root = Path(__file__).resolve().parents[1]
        # Do not clobber existing env vars (e.g. when running under a process manager).
        dotenv_path = root / ".env"
        load_dotenv(dotenv_path=dotenv_path, override=False)

        # openai-python treats OPENAI_BASE_URL as authoritative if present.
        # An empty value results in "Request URL is missing http/https" errors.
        base_url = os.environ.get("OPENAI_BASE_URL")
        if base_url is not None and not base_url.strip():
            os.environ.pop("OPENAI_BASE_URL", None)
    except ModuleNotFoundError:
        return


def _build_llm_provider(settings: AppSettings) -> Any:
    model = settings.llm.model
    if str(os.environ.get("OPENAI_API_KEY") or "").strip():
        print(f"[llm] Using openai ({model})")
        return OpenAIChatLLM(model=model)
    print("[llm] No OpenAI API key. Using dummy fallback model.")
    return DummyLLM()


def _build_engine_factory(settings: AppSettings) -> SpeechEngineFactory:
    sp = settings.speech
    if sp.provider == "openai":
        print(f"[speech] Using openai ({sp.tts_model}, voice={sp.tts_voice})")
        return lambda: OpenAISpeechEngine(model=sp.tts_model, voice=sp.tts_voice)
    print("[speech] Using console narration.")
    clock = VisemeClock(divisor=sp.viseme_offset_divisor)
    return lambda: ConsoleSpeechEngine(clock=clock)


def _build_store(settings: AppSettings, root: Path) -> HistoryStore:
    if settings.store.backend == "local":
        db_path = Path(settings.store.local_db_path)
        if not db_path.is_absolute():
            db_path = root / db_path
        return SqlHistoryStore(
            db_path=db_path,
            llm=_build_llm_provider(settings),
            system_prompt=settings.llm.system_prompt,
            history_turns=settings.llm.history_turns,
        )
    return GraphQLHistoryStore(
        endpoint=settings.transport.api_url,
        timeout_secs=settings.transport.request_timeout_secs,
    )


class ConsoleRenderer:
    """Prints view changes worth a line: status, errors, lesson state, slides."""

    def __init__(self, controller: ClassroomController) -> None:
        self.controller = controller
        self._status = ""
        self._error: str | None = None
        self._lesson = controller.lesson.state
        self._slides: set[str] = set()

    def __call__(self, view: ClassroomView) -> None:
        if view.status_text and view.status_text != self._status:
            print(f"[status] {view.status_text}")
        self._status = view.status_text
        if view.error and view.error != self._error:
            print(f"[error] {view.error}")
        self._error = view.error
        if view.lesson_state != self._lesson:
            print(f"[lesson] {view.lesson_state}")
            self._lesson = view.lesson_state
        for m in view.messages:
            key = str(m.id)
            if key in self._slides or not is_slide_reference(m):
                continue
            self._slides.add(key)
            print(f"[slide] {m.slide_url or m.text}")
            # A terminal shows the reference as soon as it is printed.
            asyncio.get_running_loop().call_soon(self.controller.slide_rendered, m.id)


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def run_chat_mode(controller: ClassroomController, *, conversation_id: str | None, lesson_id: str | None) -> None:
    controller.lesson_id = lesson_id
    if conversation_id:
        await controller.select_conversation(conversation_id)
    else:
        conv = await controller.create_conversation("Classroom session")
        if conv is None:
            return
        print(f"[chat] Conversation {conv.id}")

    print("Chat mode. Commands: /new <name>, /list, /use <id>, /lesson <id>, /stop, /quit")
    lesson_task: asyncio.Task | None = None
    while True:
        line = await _read_line("you> ")
        if line is None:
            break
        line = line.strip()
        if not line:
            continue
        if line == "/quit":
            break
        if line == "/list":
            for c in await controller.list_conversations():
                print(f"  {c.id}  {c.name}")
            continue
        if line.startswith("/new "):
            conv = await controller.create_conversation(line[5:])
            if conv is not None:
                print(f"[chat] Conversation {conv.id}")
            continue
        if line.startswith("/use "):
            await controller.select_conversation(line[5:].strip())
            for m in controller.messages.snapshot():
                print(f"  {m.role}: {m.text}")
            continue
        if line.startswith("/lesson "):
            lesson_task = asyncio.create_task(controller.start_lesson(line[8:].strip()))
            continue
        if line == "/stop":
            controller.stop_lesson()
            continue

        reply = await controller.send_text(line)
        if reply:
            await controller.streaming.wait_idle()
            print(f"tutor> {reply}")
        elif controller.input_disabled:
            print("[chat] Lesson in progress; type /stop to interrupt.")

    if lesson_task is not None and not lesson_task.done():
        controller.stop_lesson()
        await lesson_task


async def run_lesson_mode(controller: ClassroomController, *, conversation_id: str | None, lesson_id: str) -> None:
    if conversation_id:
        await controller.select_conversation(conversation_id)
    print("Lesson mode. Ctrl+C to stop.")
    task = asyncio.create_task(controller.start_lesson(lesson_id))
    try:
        outcome = await asyncio.shield(task)
    except asyncio.CancelledError:
        controller.stop_lesson()
        outcome = await task
    print(f"[lesson] {outcome.state} after {outcome.sections_played} section(s)")


async def run_peer_mode(settings: AppSettings, store: GraphQLHistoryStore, *, conversation_id: str, logger: EventLogger) -> None:
    tr = settings.transport
    messages = MessageList()

    def on_state(s: ConversationSession) -> None:
        detail = f" ({s.last_error})" if s.transport_state == "error" and s.last_error else ""
        print(f"[socket] {s.transport_state}{detail}")

    session = ChatSocketSession(
        url=tr.socket_url,
        store=store,
        messages=messages,
        namespace=tr.namespace,
        user_id=tr.user_id or None,
        reconnect_attempts=tr.reconnect_attempts,
        reconnect_delay_secs=tr.reconnect_delay_secs,
        history_take=tr.history_take,
        on_state=on_state,
        on_message=lambda m: print(f"{'me' if m.role == 'user' else m.sender_id or 'peer'}> {m.text}"),
        logger=logger,
    )
    try:
        await session.select_conversation(conversation_id)
        for m in messages.snapshot():
            print(f"  {m.sender_id or m.role}: {m.text}")
        print("Peer chat. Type a message; /quit to exit.")
        while True:
            line = await _read_line("")
            if line is None or line.strip() == "/quit":
                break
            await session.send_message(line)
    finally:
        await session.close()


async def _run(args: argparse.Namespace, settings: AppSettings, root: Path) -> None:
    logger = EventLogger(path=root / "data" / "events.jsonl")
    store = _build_store(settings, root)
    try:
        if args.mode == "peer":
            if not isinstance(store, GraphQLHistoryStore):
                raise SystemExit("Peer chat needs the graphql store backend.")
            if not args.conversation_id:
                raise SystemExit("Peer chat needs --conversation-id.")
            await run_peer_mode(settings, store, conversation_id=args.conversation_id, logger=logger)
            return

        if args.sections_file and isinstance(store, SqlHistoryStore):
            records = json.loads(Path(args.sections_file).read_text(encoding="utf-8"))
            n = await store.import_sections(args.lesson_id or "demo", records if isinstance(records, list) else [])
            print(f"[store] Imported {n} section(s) into lesson {args.lesson_id or 'demo'}")

        controller = build_controller(settings, store=store, engine_factory=_build_engine_factory(settings), logger=logger)
        controller.subscribe(ConsoleRenderer(controller))
        try:
            if args.mode == "lesson":
                if not args.lesson_id:
                    raise SystemExit("Lesson mode needs --lesson-id.")
                await run_lesson_mode(controller, conversation_id=args.conversation_id, lesson_id=args.lesson_id)
            else:
                await run_chat_mode(controller, conversation_id=args.conversation_id, lesson_id=args.lesson_id)
        finally:
            await controller.close()
    finally:
        await store.aclose()


def main():
    _try_load_dotenv()

    # Reconnect chatter from the socket libraries drowns the console.
    logging.getLogger("socketio").setLevel(logging.CRITICAL)
    logging.getLogger("engineio").setLevel(logging.CRITICAL)

    root = Path(__file__).resolve().parents[1]
    (root / "data").mkdir(parents=True, exist_ok=True)
    settings_store = SettingsStore(path=root / "data" / "settings.json")
    stored = settings_store.get()

    ap = argparse.ArgumentParser()
    ap.add_argument("--mode", choices=["chat", "lesson", "peer"], default="chat")
    ap.add_argument("--conversation-id", default=None)
    ap.add_argument("--lesson-id", default=None)
    ap.add_argument("--sections-file", default=None, help="JSON list of sections to load into the local store")
    ap.add_argument("--store", choices=["graphql", "local"], default=stored.store.backend)
    ap.add_argument("--tts", choices=["openai", "console"], default=stored.speech.provider)
    ap.add_argument("--api-url", default=stored.transport.api_url)
    ap.add_argument("--socket-url", default=stored.transport.socket_url)
    ap.add_argument("--user-id", default=stored.transport.user_id)
    args = ap.parse_args()

    # Persist CLI overrides so later runs start from the same configuration.
    patch: dict[str, dict[str, object]] = {}
    if args.store != stored.store.backend:
        patch.setdefault("store", {})["backend"] = args.store
    if args.tts != stored.speech.provider:
        patch.setdefault("speech", {})["provider"] = args.tts
    if args.api_url != stored.transport.api_url:
        patch.setdefault("transport", {})["api_url"] = args.api_url
    if args.socket_url != stored.transport.socket_url:
        patch.setdefault("transport", {})["socket_url"] = args.socket_url
    if args.user_id != stored.transport.user_id:
        patch.setdefault("transport", {})["user_id"] = args.user_id
    if patch:
        settings_store.update(patch)

    try:
        asyncio.run(_run(args, settings_store.get(), root))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
