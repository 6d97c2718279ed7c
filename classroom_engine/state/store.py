from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_engine.chat.types import (
    AssistantPayload,
    Conversation,
    Message,
    MessageId,
    Section,
    now_ms,
    role_from_sender,
)
from classroom_engine.llm.openai_provider import LLMError, LLMProvider
from classroom_engine.state import models
from classroom_engine.state.db import make_db
from classroom_engine.transport.history_store import HistoryStoreError


_DEFAULT_SYSTEM_PROMPT = "You are a patient classroom tutor. Answer clearly and briefly."


def _to_message(row: models.Message) -> Message:
    return Message(
        id=MessageId.confirmed(row.id),
        role=role_from_sender(row.sender_type),
        text=str(row.content or ""),
        timestamp=int(row.timestamp or 0),
        sender_id=row.sender_id,
        conversation_id=row.conversation_id,
    )


def _to_conversation(row: models.Conversation) -> Conversation:
    return Conversation(id=row.id, name=row.name, created_at=int(row.created_ms or 0))


@dataclass
class SqlHistoryStore:
    """SQLite-backed history store for offline use.

    - Same HistoryStore contract as the remote backend.
    - Assistant replies come from the configured LLMProvider.
    - Each post is one transaction for the user turn and one for the reply.
    """

    db_path: Path
    llm: LLMProvider
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    history_turns: int = 12

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = make_db(self.db_path)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            engine = self._db.engine()
            async with engine.begin() as conn:
                await conn.run_sync(models.Base.metadata.create_all)
            self._schema_ready = True

    async def aclose(self) -> None:
        await self._db.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Session on a ready schema; database failures surface as HistoryStoreError."""
        try:
            await self.ensure_schema()
            async with self._db.sessionmaker()() as sess:
                yield sess
        except SQLAlchemyError as e:
            raise HistoryStoreError(f"Local store error: {e}") from e

    # ---------- HistoryStore ----------
    async def fetch_history(self, conversation_id: str, *, take: int = 50) -> list[Message]:
        async with self._session() as sess:
            q = (
                select(models.Message)
                .where(models.Message.conversation_id == conversation_id)
                .order_by(models.Message.timestamp.desc(), models.Message.id.desc())
                .limit(max(1, int(take)))
            )
            rows = (await sess.execute(q)).scalars().all()
            return [_to_message(r) for r in reversed(rows)]

    async def fetch_sections(self, lesson_id: str) -> list[Section]:
        async with self._session() as sess:
            q = (
                select(models.Section)
                .where(models.Section.lesson_id == lesson_id)
                .order_by(models.Section.order.asc(), models.Section.created_at.asc())
            )
            rows = (await sess.execute(q)).scalars().all()
            return [
                Section(id=r.id, order=int(r.order or 0), content=str(r.content or ""), slide_url=r.url_pdf)
                for r in rows
            ]

    async def post_message(
        self,
        conversation_id: str,
        text: str,
        *,
        lesson_id: str | None = None,
        user_id: str | None = None,
    ) -> AssistantPayload:
        question = str(text or "").strip()
        if not question:
            raise HistoryStoreError("Cannot post an empty message.")

        async with self._session() as sess:
            async with sess.begin():
                conv = await sess.get(models.Conversation, conversation_id)
                if conv is None:
                    raise HistoryStoreError(f"Unknown conversation: {conversation_id}")
                last_ts = (
                    await sess.execute(
                        select(func.max(models.Message.timestamp)).where(
                            models.Message.conversation_id == conversation_id
                        )
                    )
                ).scalar()
                # Timestamps stay strictly increasing within a conversation.
                user_ts = max(now_ms(), int(last_ts or 0) + 1)
                sess.add(
                    models.Message(
                        conversation_id=conversation_id,
                        sender_type="user",
                        sender_id=user_id,
                        lesson_id=lesson_id,
                        content=question,
                        timestamp=user_ts,
                    )
                )

        prompt = await self._build_prompt(conversation_id, question, lesson_id=lesson_id)
        try:
            reply = await self.llm.complete(system=self.system_prompt, user=prompt)
        except LLMError as e:
            raise HistoryStoreError(f"Tutor reply failed: {e}") from e
        reply = reply.strip() or "..."

        async with self._session() as sess:
            async with sess.begin():
                sess.add(
                    models.Message(
                        conversation_id=conversation_id,
                        sender_type="assistant",
                        lesson_id=lesson_id,
                        content=reply,
                        # Keep the reply strictly after the question.
                        timestamp=max(now_ms(), user_ts + 1),
                    )
                )
        return AssistantPayload(content=reply, conversation_id=conversation_id)

    async def _build_prompt(self, conversation_id: str, question: str, *, lesson_id: str | None) -> str:
        parts: list[str] = []
        if lesson_id:
            sections = await self.fetch_sections(lesson_id)
            if sections:
                ctx = "\n\n".join(s.content for s in sections if s.content.strip())
                parts.append(f"Lesson context:\n{ctx[:6000]}")
        if self.history_turns > 0:
            # The question itself was just stored; leave it out of the transcript.
            history = await self.fetch_history(conversation_id, take=self.history_turns + 1)
            history = history[:-1]
            if history:
                lines = [f"{m.role}: {m.text}" for m in history]
                parts.append("Recent conversation:\n" + "\n".join(lines))
        parts.append(f"Student: {question}")
        return "\n\n".join(parts)

    async def create_conversation(self, name: str, *, user_id: str) -> Conversation:
        title = str(name or "").strip() or "New conversation"
        async with self._session() as sess:
            async with sess.begin():
                row = models.Conversation(user_id=str(user_id or ""), name=title[:255], created_ms=now_ms())
                sess.add(row)
                await sess.flush()
                return _to_conversation(row)

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        async with self._session() as sess:
            q = (
                select(models.Conversation)
                .where(models.Conversation.user_id == str(user_id or ""))
                .order_by(models.Conversation.created_ms.desc())
            )
            rows = (await sess.execute(q)).scalars().all()
            return [_to_conversation(r) for r in rows]

    # ---------- seeding ----------
    async def import_sections(self, lesson_id: str, records: Iterable[dict[str, Any]]) -> int:
        """Replace a lesson's sections. Returns number of sections written."""
        cleaned: list[dict[str, Any]] = []
        for i, r in enumerate(records or []):
            if not isinstance(r, dict):
                continue
            content = str(r.get("content") or "").strip()
            if not content:
                continue
            try:
                order = int(r.get("order", i))
            except (TypeError, ValueError):
                order = i
            url = str(r.get("urlPdf") or r.get("slide_url") or "").strip() or None
            cleaned.append({"order": order, "content": content, "url_pdf": url})

        async with self._session() as sess:
            async with sess.begin():
                await sess.execute(delete(models.Section).where(models.Section.lesson_id == lesson_id))
                for c in cleaned:
                    sess.add(models.Section(lesson_id=lesson_id, **c))
        return len(cleaned)

    async def clear_conversation(self, conversation_id: str) -> int:
        """Delete all messages of a conversation. Returns number of rows deleted."""
        async with self._session() as sess:
            async with sess.begin():
                q = select(func.count()).select_from(models.Message).where(
                    models.Message.conversation_id == conversation_id
                )
                n = int((await sess.execute(q)).scalar() or 0)
                await sess.execute(delete(models.Message).where(models.Message.conversation_id == conversation_id))
                return n
