import asyncio
import json

import httpx
import pytest

from classroom_engine.transport.graphql_store import GraphQLHistoryStore
from classroom_engine.transport.history_store import HistoryStoreError


def _op(request: httpx.Request) -> str:
    body = json.loads(request.content)
    q = body["query"]
    for name in ("refresh", "createSocketToken", "getSectionByLesson", "messagesByConversation", "createMessage"):
        if name in q:
            return name
    return "other"


def test_401_refreshes_once_and_replays():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        op = _op(request)
        calls.append(op)
        if op == "createSocketToken" and calls.count("createSocketToken") == 1:
            return httpx.Response(401, json={"errors": [{"message": "Unauthorized"}]})
        if op == "refresh":
            return httpx.Response(200, json={"data": {"refresh": {"success": True, "message": "ok"}}})
        return httpx.Response(200, json={"data": {"createSocketToken": "tok-2"}})

    async def run():
        store = GraphQLHistoryStore(endpoint="http://api.test/graphql", transport=httpx.MockTransport(handler))
        try:
            assert await store.create_socket_token() == "tok-2"
        finally:
            await store.aclose()

    asyncio.run(run())
    assert calls == ["createSocketToken", "refresh", "createSocketToken"]


def test_failed_refresh_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        if _op(request) == "refresh":
            return httpx.Response(200, json={"data": {"refresh": {"success": False}}})
        return httpx.Response(401, json={})

    async def run():
        store = GraphQLHistoryStore(endpoint="http://api.test/graphql", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(HistoryStoreError):
                await store.fetch_history("c1")
        finally:
            await store.aclose()

    asyncio.run(run())


def test_graphql_errors_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Lesson not found"}], "data": None})

    async def run():
        store = GraphQLHistoryStore(endpoint="http://api.test/graphql", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(HistoryStoreError, match="Lesson not found"):
                await store.fetch_sections("L1")
        finally:
            await store.aclose()

    asyncio.run(run())


def test_history_sections_and_post_are_mapped():
    def handler(request: httpx.Request) -> httpx.Response:
        op = _op(request)
        if op == "messagesByConversation":
            rows = [
                {"id": "1", "content": "hi", "senderType": "user", "timestamp": 1_700_000_000},
                {"id": "2", "response": "hello", "senderType": "assistant", "timestamp": "2024-01-01T00:00:00Z"},
            ]
            return httpx.Response(200, json={"data": {"messagesByConversation": rows}})
        if op == "getSectionByLesson":
            sec = {"id": "s1", "order": 1, "content": "Intro", "urlPdf": "https://x/a.pdf"}
            return httpx.Response(200, json={"data": {"getSectionByLesson": sec}})
        if op == "createMessage":
            variables = json.loads(request.content)["variables"]["data"]
            assert variables["question"] == "why?"
            assert variables["lesson_id"] == "L1"
            return httpx.Response(200, json={"data": {"createMessage": {"content": None, "response": "data: x"}}})
        return httpx.Response(404)

    async def run():
        store = GraphQLHistoryStore(endpoint="http://api.test/graphql", transport=httpx.MockTransport(handler))
        try:
            msgs = await store.fetch_history("c1")
            assert [(m.role, m.text, m.timestamp) for m in msgs] == [
                ("user", "hi", 1_700_000_000_000),
                ("assistant", "hello", 1_704_067_200_000),
            ]
            assert not any(m.is_temporary for m in msgs)

            sections = await store.fetch_sections("L1")
            assert [(s.id, s.slide_url) for s in sections] == [("s1", "https://x/a.pdf")]

            payload = await store.post_message("c1", "why?", lesson_id="L1", user_id="u1")
            assert payload.aggregated == "data: x"
        finally:
            await store.aclose()

    asyncio.run(run())
