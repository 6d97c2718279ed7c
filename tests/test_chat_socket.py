import asyncio

from fakes import FakePeerStore, FakeSocketClient, confirmed

from classroom_engine.chat.message_list import MessageList
from classroom_engine.transport.chat_socket import ChatSocketSession, looks_like_auth_error


def _session(store, clients, errors, **kw):
    states = []
    session = ChatSocketSession(
        url="http://chat.test",
        store=store,
        messages=MessageList(),
        user_id="u1",
        reconnect_attempts=kw.pop("reconnect_attempts", 5),
        reconnect_delay_secs=0,
        client_factory=lambda: FakeSocketClient(clients, errors),
        on_state=lambda s: states.append(s.transport_state),
        **kw,
    )
    return session, states


def test_auth_error_detection():
    assert looks_like_auth_error("jwt expired")
    assert looks_like_auth_error("Unauthorized")
    assert not looks_like_auth_error("xhr poll error")


def test_reconnect_attempts_are_bounded():
    async def run():
        clients = []
        errors = ["xhr poll error"] * 5 + ["xhr poll error"] * 10
        session, states = _session(FakePeerStore(), clients, errors, reconnect_attempts=5)
        ok = await session.connect()

        assert ok is False
        assert session.connect_attempts == 6
        assert len(clients) == 6
        assert session.session.transport_state == "error"
        assert session.session.last_error == "xhr poll error"
        assert states[0] == "connecting"
        assert states[-1] == "error"
        assert all(c.disconnects == 1 for c in clients)
        assert all(c.handlers == {} for c in clients)

    asyncio.run(run())


def test_auth_error_refreshes_token_once():
    async def run():
        clients = []
        store = FakePeerStore(tokens=["old", "new"])
        session, _ = _session(store, clients, ["jwt expired"])
        assert await session.connect()

        assert store.token_calls == 2
        assert clients[0].auth == {"token": "old"}
        assert clients[1].auth == {"token": "new"}
        assert session.session.auth_token == "new"
        assert session.connected
        assert clients[0].disconnects == 1

    asyncio.run(run())


def test_select_conversation_loads_history_and_joins():
    async def run():
        clients = []
        store = FakePeerStore(
            history=[confirmed("1", "hey", 100, role="assistant", sender="u1"), confirmed("2", "yo", 200, role="assistant", sender="u2")]
        )
        session, _ = _session(store, clients, [])
        await session.select_conversation("conv1")

        msgs = session.messages.snapshot()
        assert [(m.role, m.text) for m in msgs] == [("user", "hey"), ("assistant", "yo")]
        assert clients[0].emitted == [("joinConversation", {"conversationId": "conv1"})]

        await clients[0].trigger("joined", {"conversationId": "conv1"})
        assert session.session.joined_room == "conv1"

        # Switching while connected re-joins on the same socket.
        await session.select_conversation("conv2")
        assert len(clients) == 1
        assert clients[0].emitted[-1] == ("joinConversation", {"conversationId": "conv2"})

        await session.select_conversation(None)
        assert session.messages.snapshot() == []
        await session.close()

    asyncio.run(run())


def test_optimistic_send_is_reconciled_by_echo():
    async def run():
        clients = []
        session, _ = _session(FakePeerStore(), clients, [])
        assert await session.send_message("hello") is None

        await session.select_conversation("conv1")
        assert await session.send_message("   ") is None
        sent = await session.send_message(" hello ")
        assert sent is not None and sent.is_temporary
        assert clients[0].emitted[-1] == ("sendMessage", {"conversationId": "conv1", "content": "hello"})
        assert len(session.messages) == 1

        await clients[0].trigger(
            "message",
            {"id": "srv9", "content": "hello", "senderId": "u1", "conversationId": "conv1", "createdAt": 2_000_000_000_000},
        )
        msgs = session.messages.snapshot()
        assert len(msgs) == 1
        assert str(msgs[0].id) == "srv9"
        assert msgs[0].role == "user"

        await clients[0].trigger("message", {"id": "p1", "content": "hi back", "senderId": "u2"})
        assert ("assistant", "hi back") in [(m.role, m.text) for m in session.messages.snapshot()]

    asyncio.run(run())


def test_close_is_idempotent():
    async def run():
        clients = []
        session, states = _session(FakePeerStore(), clients, [])
        assert await session.connect(token="given")
        await session.close()
        await session.close()
        assert clients[0].disconnects == 1
        assert states.count("disconnected") == 1
        assert await session.connect() is False

    asyncio.run(run())


def test_mid_session_drop_retries_then_surfaces_error():
    async def run():
        clients = []
        errors = []
        session, states = _session(FakePeerStore(), clients, errors, reconnect_attempts=2)
        assert await session.connect(token="tok")

        errors.extend(["transport close"] * 10)
        await clients[0].trigger("disconnect", "transport close")
        assert session.recovering
        while session.recovering:
            await asyncio.sleep(0)

        assert session.connect_attempts == 1 + 3
        assert session.session.transport_state == "error"
        assert session.session.last_error == "transport close"
        assert states[-1] == "error"
        assert "disconnected" in states
        await session.close()

    asyncio.run(run())


def test_mid_session_drop_reconnects_and_rejoins():
    async def run():
        clients = []
        errors = []
        session, _ = _session(FakePeerStore(), clients, errors)
        await session.select_conversation("conv1")

        errors.append("transport close")
        await clients[0].trigger("disconnect", "transport close")
        while session.recovering:
            await asyncio.sleep(0)

        assert session.connected
        assert len(clients) == 3
        assert clients[-1].emitted == [("joinConversation", {"conversationId": "conv1"})]
        await session.close()

    asyncio.run(run())
