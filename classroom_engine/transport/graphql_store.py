from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx

from classroom_engine.chat.types import (
    AssistantPayload,
    Conversation,
    Message,
    Section,
    message_from_history,
    parse_timestamp_ms,
    section_from_record,
)
from classroom_engine.transport.history_store import HistoryStoreError


_MESSAGES_BY_CONVERSATION = """
query MessagesByConversation($conversationId: String!) {
  messagesByConversation(conversationId: $conversationId) {
    content conversationId id message response senderType timestamp type agent
  }
}
"""

_GET_MESSAGES = """
query GetMessages($conversationId: String!, $take: Int) {
  getMessages(conversationId: $conversationId, take: $take) {
    content conversationId createdAt id read senderId
  }
}
"""

_SECTIONS_BY_LESSON = """
query Query($lessonId: String!) {
  getSectionByLesson(lessonId: $lessonId) { urlPdf order lessonId id content createdAt }
}
"""

_CREATE_MESSAGE = """
mutation CreateMessage($data: CreateMessage2Input!) {
  createMessage(data: $data) {
    agent content conversationId id message response senderType timestamp type
  }
}
"""

_CREATE_CONVERSATION = """
mutation CreateConversation($name: String!, $userId: String!) {
  createConversation(name: $name, userId: $userId) { id name createdAt }
}
"""

_MY_CONVERSATIONS = """
query GetMyConversations { getMyConversations { id name createdAt } }
"""

_CREATE_SOCKET_TOKEN = "mutation Mutation { createSocketToken }"

_REFRESH = "mutation Refresh { refresh { success message } }"


def _conversation(obj: dict[str, Any]) -> Conversation:
    return Conversation(
        id=str(obj.get("id") or ""),
        name=str(obj.get("name") or obj.get("title") or ""),
        created_at=parse_timestamp_ms(obj.get("createdAt"), default=0),
    )


@dataclass
class GraphQLHistoryStore:
    """GraphQL backend client.

    Auth rides on cookies kept by the underlying httpx client. A 401 triggers a
    single shared `refresh` mutation and one replay of the failed request.
    """

    endpoint: str
    timeout_secs: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None
    _refresh_task: asyncio.Task | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=self.timeout_secs,
            transport=self.transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, query: str, variables: dict[str, Any] | None) -> httpx.Response:
        body: dict[str, Any] = {"query": query}
        if variables is not None:
            body["variables"] = variables
        try:
            return await self._client.post(self.endpoint, json=body)
        except httpx.HTTPError as e:
            raise HistoryStoreError(f"History store request failed: {e}") from e

    async def _refresh(self) -> bool:
        # Concurrent 401s wait on the same refresh instead of issuing their own.
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> bool:
        resp = await self._send(_REFRESH, None)
        if resp.status_code >= 400:
            return False
        try:
            data = resp.json()
        except ValueError:
            return False
        refresh = ((data or {}).get("data") or {}).get("refresh") or {}
        return bool(refresh.get("success"))

    async def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self._send(query, variables)
        if resp.status_code == 401:
            if not await self._refresh():
                raise HistoryStoreError("Session expired and token refresh failed.")
            resp = await self._send(query, variables)

        try:
            data = resp.json()
        except ValueError as e:
            raise HistoryStoreError(f"Invalid response from history store (HTTP {resp.status_code}).") from e

        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {"message": str(errors[0])}
            raise HistoryStoreError(str(first.get("message") or "GraphQL error"))
        if resp.status_code >= 400:
            raise HistoryStoreError(f"History store returned HTTP {resp.status_code}.")
        out = data.get("data") if isinstance(data, dict) else None
        return out if isinstance(out, dict) else {}

    # ---------- HistoryStore ----------
    async def fetch_history(self, conversation_id: str, *, take: int = 50) -> list[Message]:
        data = await self.execute(_MESSAGES_BY_CONVERSATION, {"conversationId": conversation_id})
        rows = data.get("messagesByConversation") or []
        msgs = [message_from_history(r, conversation_id=conversation_id) for r in rows if isinstance(r, dict)]
        return msgs[-take:] if take > 0 else msgs

    async def fetch_sections(self, lesson_id: str) -> list[Section]:
        data = await self.execute(_SECTIONS_BY_LESSON, {"lessonId": lesson_id})
        raw = data.get("getSectionByLesson")
        if isinstance(raw, dict):
            raw = [raw]
        if not isinstance(raw, list):
            return []
        return [section_from_record(r, index=i) for i, r in enumerate(raw) if isinstance(r, dict)]

    async def post_message(
        self,
        conversation_id: str,
        text: str,
        *,
        lesson_id: str | None = None,
        user_id: str | None = None,
    ) -> AssistantPayload:
        data = await self.execute(
            _CREATE_MESSAGE,
            {
                "data": {
                    "conversationId": conversation_id,
                    "lesson_id": lesson_id,
                    "question": text,
                    "messages": None,
                    "user_id": user_id,
                }
            },
        )
        obj = data.get("createMessage") or {}
        if not isinstance(obj, dict):
            raise HistoryStoreError("createMessage returned an unexpected payload.")
        return AssistantPayload(
            content=obj.get("content"),
            response=obj.get("response"),
            conversation_id=obj.get("conversationId"),
            session_id=obj.get("sessionId"),
        )

    async def create_conversation(self, name: str, *, user_id: str) -> Conversation:
        data = await self.execute(_CREATE_CONVERSATION, {"name": name, "userId": user_id})
        obj = data.get("createConversation")
        if not isinstance(obj, dict) or not obj.get("id"):
            raise HistoryStoreError("createConversation returned no conversation.")
        return _conversation(obj)

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        data = await self.execute(_MY_CONVERSATIONS)
        rows = data.get("getMyConversations") or []
        return [_conversation(r) for r in rows if isinstance(r, dict)]

    # ---------- PeerChatStore ----------
    async def fetch_peer_messages(self, conversation_id: str, *, take: int = 50) -> list[Message]:
        data = await self.execute(_GET_MESSAGES, {"conversationId": conversation_id, "take": take})
        rows = data.get("getMessages") or []
        return [message_from_history(r, conversation_id=conversation_id) for r in rows if isinstance(r, dict)]

    async def create_socket_token(self) -> str:
        data = await self.execute(_CREATE_SOCKET_TOKEN)
        token = data.get("createSocketToken")
        if not token:
            raise HistoryStoreError("Backend returned no socket token.")
        return str(token)
