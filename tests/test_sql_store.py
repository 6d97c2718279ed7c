import asyncio

import pytest

from classroom_engine.llm.openai_provider import LLMError
from classroom_engine.state.store import SqlHistoryStore
from classroom_engine.transport.history_store import HistoryStoreError


class ScriptedLLM:
    def __init__(self, reply: str = "Because of the chain rule.", fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.prompts: list[str] = []

    async def complete(self, *, system: str, user: str, temperature: float = 0.2) -> str:
        self.prompts.append(user)
        if self.fail:
            raise LLMError("rate limited")
        return self.reply


def test_post_message_stores_both_turns(tmp_path):
    async def run():
        llm = ScriptedLLM()
        store = SqlHistoryStore(db_path=tmp_path / "db" / "classroom.sqlite3", llm=llm)
        try:
            conv = await store.create_conversation("Calculus", user_id="u1")
            assert [c.id for c in await store.list_conversations("u1")] == [conv.id]
            assert await store.list_conversations("someone-else") == []

            payload = await store.post_message(conv.id, "Why?", user_id="u1")
            assert payload.content == "Because of the chain rule."

            await store.post_message(conv.id, "And then?", user_id="u1")
            assert "Recent conversation:\nuser: Why?" in llm.prompts[-1]
            assert llm.prompts[-1].endswith("Student: And then?")

            history = await store.fetch_history(conv.id)
            assert [(m.role, m.text) for m in history] == [
                ("user", "Why?"),
                ("assistant", "Because of the chain rule."),
                ("user", "And then?"),
                ("assistant", "Because of the chain rule."),
            ]
            assert [m.timestamp for m in history] == sorted(m.timestamp for m in history)
            assert not any(m.is_temporary for m in history)
            assert len(await store.fetch_history(conv.id, take=2)) == 2

            assert await store.clear_conversation(conv.id) == 4
        finally:
            await store.aclose()

    asyncio.run(run())


def test_sections_import_and_lesson_context(tmp_path):
    async def run():
        llm = ScriptedLLM()
        store = SqlHistoryStore(db_path=tmp_path / "classroom.sqlite3", llm=llm, history_turns=0)
        try:
            n = await store.import_sections(
                "L1",
                [
                    {"order": 2, "content": "Limits."},
                    {"order": 1, "content": "Functions.", "urlPdf": "https://x/1.pdf"},
                    {"order": 3, "content": "   "},
                ],
            )
            assert n == 2
            sections = await store.fetch_sections("L1")
            assert [(s.order, s.content, s.slide_url) for s in sections] == [
                (1, "Functions.", "https://x/1.pdf"),
                (2, "Limits.", None),
            ]

            conv = await store.create_conversation("Lesson", user_id="u1")
            await store.post_message(conv.id, "Recap?", lesson_id="L1")
            assert llm.prompts[-1].startswith("Lesson context:\nFunctions.\n\nLimits.")
        finally:
            await store.aclose()

    asyncio.run(run())


def test_errors_surface_as_history_store_errors(tmp_path):
    async def run():
        store = SqlHistoryStore(db_path=tmp_path / "classroom.sqlite3", llm=ScriptedLLM(fail=True))
        try:
            with pytest.raises(HistoryStoreError):
                await store.post_message("missing", "hi")
            conv = await store.create_conversation("x", user_id="u1")
            with pytest.raises(HistoryStoreError, match="rate limited"):
                await store.post_message(conv.id, "hi")
        finally:
            await store.aclose()

    asyncio.run(run())


def test_database_failures_surface_as_history_store_errors(tmp_path):
    async def run():
        # A directory where the database file should be cannot be opened by SQLite.
        db_path = tmp_path / "not-a-file.sqlite3"
        db_path.mkdir()
        store = SqlHistoryStore(db_path=db_path, llm=ScriptedLLM())
        try:
            with pytest.raises(HistoryStoreError, match="Local store error"):
                await store.fetch_history("c1")
            with pytest.raises(HistoryStoreError):
                await store.create_conversation("x", user_id="u1")
            with pytest.raises(HistoryStoreError):
                await store.fetch_sections("L1")
        finally:
            await store.aclose()

    asyncio.run(run())
