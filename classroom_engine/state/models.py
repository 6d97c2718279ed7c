from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def gen_uuid() -> str:
    return str(uuid4())


def _created_at() -> Column[DateTime]:
    return Column(DateTime, nullable=False, server_default=func.now())


def _updated_at() -> Column[DateTime]:
    return Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_ms = Column(BigInteger, nullable=False)
    created_at = _created_at()
    updated_at = _updated_at()


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    # "user" | "assistant"
    sender_type = Column(String(20), nullable=False)
    sender_id = Column(String(64), nullable=True)
    lesson_id = Column(String(64), nullable=True)
    content = Column(Text, nullable=False)
    # Epoch ms; ordering key shared with the remote backend.
    timestamp = Column(BigInteger, nullable=False, index=True)
    created_at = _created_at()

    conversation = relationship("Conversation")


class Section(Base):
    __tablename__ = "sections"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    lesson_id = Column(String(64), nullable=False, index=True)
    order = Column("order", Integer, nullable=False, server_default="0")
    content = Column(Text, nullable=False)
    url_pdf = Column(String(1024), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()
