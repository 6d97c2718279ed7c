from __future__ import annotations

from typing import Protocol

from classroom_engine.chat.types import AssistantPayload, Conversation, Message, Section


class HistoryStoreError(RuntimeError):
    """A history-store call failed (network, auth, GraphQL error, bad payload)."""


class HistoryStore(Protocol):
    async def fetch_history(self, conversation_id: str, *, take: int = 50) -> list[Message]: ...

    async def fetch_sections(self, lesson_id: str) -> list[Section]: ...

    async def post_message(
        self,
        conversation_id: str,
        text: str,
        *,
        lesson_id: str | None = None,
        user_id: str | None = None,
    ) -> AssistantPayload: ...

    async def create_conversation(self, name: str, *, user_id: str) -> Conversation: ...

    async def list_conversations(self, user_id: str) -> list[Conversation]: ...

    async def aclose(self) -> None: ...


class PeerChatStore(Protocol):
    """What the chat socket needs from the backend: history and a socket token."""

    async def fetch_peer_messages(self, conversation_id: str, *, take: int = 50) -> list[Message]: ...

    async def create_socket_token(self) -> str: ...
