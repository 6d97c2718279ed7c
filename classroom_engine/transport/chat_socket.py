from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Literal

import socketio

from classroom_engine.chat.message_list import MessageList
from classroom_engine.chat.types import Message, MessageId, message_from_socket, now_ms
from classroom_engine.logging.events import EventLogger, SessionContext
from classroom_engine.transport.history_store import PeerChatStore


TransportState = Literal["disconnected", "connecting", "connected", "error"]

_AUTH_HINTS = ("auth", "token", "unauthorized", "jwt", "401")


def looks_like_auth_error(err: str) -> bool:
    low = str(err or "").lower()
    return any(h in low for h in _AUTH_HINTS)


@dataclass
class ConversationSession:
    conversation_id: str | None = None
    transport_state: TransportState = "disconnected"
    auth_token: str | None = None
    last_error: str | None = None
    joined_room: str | None = None


@dataclass
class ChatSocketSession:
    """Realtime peer chat over Socket.IO.

    Lifecycle:
    - `select_conversation` loads history, then joins the room (connecting first if needed).
    - `connect` replaces any previous client; failures are retried a bounded number
      of times, refreshing the token once when the error looks auth related.
    - `close` tears everything down exactly once.
    """

    url: str
    store: PeerChatStore
    messages: MessageList
    namespace: str = "/chat"
    user_id: str | None = None
    reconnect_attempts: int = 5
    reconnect_delay_secs: float = 1.0
    history_take: int = 50
    client_factory: Callable[[], Any] | None = None
    on_state: Callable[[ConversationSession], None] | None = None
    on_message: Callable[[Message], None] | None = None
    logger: EventLogger | None = None

    session: ConversationSession = field(default_factory=ConversationSession, init=False)

    def __post_init__(self) -> None:
        self._client: Any = None
        self._closed = False
        self._last_connect_error: str | None = None
        self._recover_task: asyncio.Task | None = None
        self.connect_attempts = 0

    @property
    def connected(self) -> bool:
        return self._client is not None and self.session.transport_state == "connected"

    @property
    def _self_id(self) -> str:
        return self.user_id or "me"

    def _ctx(self) -> SessionContext:
        return SessionContext(conversation_id=self.session.conversation_id or "", user_id=self.user_id or "")

    def _set_state(self, state: TransportState, *, detail: str = "") -> None:
        self.session.transport_state = state
        if self.logger is not None:
            self.logger.transport_state(self._ctx(), state, detail=detail)
        if self.on_state is not None:
            self.on_state(self.session)

    # ---------- client lifecycle ----------
    def _new_client(self) -> Any:
        if self.client_factory is not None:
            return self.client_factory()
        # Mid-session drops go through the same bounded loop as `connect`.
        return socketio.AsyncClient(reconnection=False, logger=False)

    def _wire(self, client: Any) -> None:
        ns = self.namespace

        async def on_connect() -> None:
            self._set_state("connected")
            if self.session.conversation_id:
                await self._emit(client, "joinConversation", {"conversationId": self.session.conversation_id})

        async def on_disconnect(*_args: Any) -> None:
            if client is self._client and not self._closed:
                self._set_state("disconnected")
                self._start_recovery()

        async def on_message(data: Any) -> None:
            if not isinstance(data, dict):
                return
            msg = message_from_socket(data, self_id=self._self_id)
            self.messages.apply_echo(msg)
            if self.on_message is not None:
                self.on_message(msg)

        async def on_joined(data: Any) -> None:
            room = data.get("conversationId") if isinstance(data, dict) else None
            self.session.joined_room = str(room) if room else self.session.conversation_id

        async def on_error(data: Any) -> None:
            self.session.last_error = str(data)
            if self.logger is not None:
                self.logger.error(self._ctx(), "socket", {"error": str(data)})

        async def on_connect_error(data: Any = None) -> None:
            if isinstance(data, dict):
                self._last_connect_error = str(data.get("message") or data)
            else:
                self._last_connect_error = str(data or "connect_error")

        client.on("connect", on_connect, namespace=ns)
        client.on("disconnect", on_disconnect, namespace=ns)
        client.on("message", on_message, namespace=ns)
        client.on("joined", on_joined, namespace=ns)
        client.on("error", on_error, namespace=ns)
        client.on("connect_error", on_connect_error, namespace=ns)

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        client.handlers.clear()
        await client.disconnect()

    async def _emit(self, client: Any, event: str, data: dict[str, Any]) -> bool:
        try:
            await client.emit(event, data, namespace=self.namespace)
        except socketio.exceptions.SocketIOError as e:
            self.session.last_error = f"{event} failed: {e}"
            if self.logger is not None:
                self.logger.error(self._ctx(), "socket_emit", {"event": event, "error": str(e)})
            return False
        return True

    async def _attempt(self, token: str) -> str | None:
        """One connection attempt on a fresh client; returns an error text on failure."""
        await self._teardown()
        client = self._new_client()
        self._wire(client)
        self._client = client
        self._last_connect_error = None
        self.connect_attempts += 1
        try:
            await client.connect(
                self.url,
                auth={"token": token},
                namespaces=[self.namespace],
                transports=["websocket"],
            )
        except socketio.exceptions.ConnectionError as e:
            return self._last_connect_error or str(e) or "connection failed"
        if self.session.transport_state != "connected":
            self._set_state("connected")
        return None

    def _start_recovery(self) -> None:
        if self._recover_task is not None and not self._recover_task.done():
            return
        self._recover_task = asyncio.create_task(self._recover())

    async def _recover(self) -> None:
        if self.logger is not None:
            self.logger.event(self._ctx(), "socket_dropped", {})
        # Exhausted retries leave the session in state `error` with `last_error` set.
        await self.connect(self.session.auth_token)

    @property
    def recovering(self) -> bool:
        return self._recover_task is not None and not self._recover_task.done()

    def _give_up(self, err: str) -> bool:
        self.session.last_error = err
        self._set_state("error", detail=err)
        return False

    async def connect(self, token: str | None = None) -> bool:
        if self._closed:
            return False
        self._set_state("connecting")
        if token is None:
            try:
                token = await self.store.create_socket_token()
            except RuntimeError as e:
                return self._give_up(f"Could not obtain socket token: {e}")
        self.session.auth_token = token

        retries = 0
        token_refreshed = False
        while True:
            err = await self._attempt(token)
            if err is None:
                self.session.last_error = None
                return True
            if self._closed:
                return False
            if retries >= self.reconnect_attempts:
                await self._teardown()
                return self._give_up(err)
            retries += 1
            if not token_refreshed and looks_like_auth_error(err):
                token_refreshed = True
                try:
                    token = await self.store.create_socket_token()
                except RuntimeError as e:
                    await self._teardown()
                    return self._give_up(f"Token refresh failed: {e}")
                self.session.auth_token = token
            if self.logger is not None:
                self.logger.event(self._ctx(), "socket_retry", {"attempt": retries, "error": err})
            await asyncio.sleep(self.reconnect_delay_secs)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._recover_task = self._recover_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        await self._teardown()
        self._set_state("disconnected")

    # ---------- conversation ----------
    def _own(self, m: Message) -> Message:
        if m.sender_id and m.sender_id == self._self_id and m.role != "user":
            return replace(m, role="user")
        return m

    async def select_conversation(self, conversation_id: str | None) -> None:
        self.session.conversation_id = conversation_id
        self.session.joined_room = None
        if not conversation_id:
            self.messages.reset([])
            return

        try:
            history = await self.store.fetch_peer_messages(conversation_id, take=self.history_take)
        except RuntimeError as e:
            self.session.last_error = f"Could not load history: {e}"
            if self.logger is not None:
                self.logger.error(self._ctx(), "history", {"error": str(e)})
            history = None
        if self.session.conversation_id != conversation_id:
            # Switched again while loading.
            return
        if history is not None:
            self.messages.reset([self._own(m) for m in history])

        if self.connected:
            await self._emit(self._client, "joinConversation", {"conversationId": conversation_id})
        elif not self.recovering:
            await self.connect()

    async def send_message(self, content: str) -> Message | None:
        text = str(content or "").strip()
        cid = self.session.conversation_id
        if not text or not cid or self._client is None:
            return None
        msg = Message(
            id=MessageId.temp(),
            role="user",
            text=text,
            timestamp=now_ms(),
            sender_id=self._self_id,
            conversation_id=cid,
        )
        self.messages.add(msg)
        await self._emit(self._client, "sendMessage", {"conversationId": cid, "content": text})
        return msg
