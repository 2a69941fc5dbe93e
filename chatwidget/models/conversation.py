"""Conversation and Message SQLModel definitions for the chat widget.

Models:
- Conversation: Chat thread owned by one principal, linked to one assistant
- Message: Individual turn in a conversation
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(SQLModel, table=True):
    """
    Conversation (thread) entity.

    Ownership: Each conversation belongs to exactly one principal via user_id,
    which never changes after creation. The provider-side thread handle lives
    in metadata under "openai_thread_id" and is backfilled lazily.
    """
    __tablename__ = "conversation"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    user_id: str = Field(index=True, nullable=False)
    assistant_id: Optional[str] = Field(default=None, index=True)
    title: Optional[str] = Field(max_length=255, default=None)
    # "metadata" is reserved on declarative classes, so the attribute is "meta"
    meta: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column("metadata", JSON, nullable=True)
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def provider_thread_id(self) -> Optional[str]:
        return (self.meta or {}).get("openai_thread_id")


class Message(SQLModel, table=True):
    """
    Message (turn) entity.

    Role: "user" or "assistant". Assistant turns carry no user_id.
    Turns are insert-only and ordered by created_at within a conversation.
    """
    __tablename__ = "message"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    conversation_id: str = Field(foreign_key="conversation.id", index=True, nullable=False)
    role: str = Field(default="user", max_length=20)
    content: Optional[str] = Field(default=None)
    user_id: Optional[str] = Field(default=None, index=True)
    assistant_id: Optional[str] = Field(default=None)
    meta: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column("metadata", JSON, nullable=True)
    )
    completed: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
