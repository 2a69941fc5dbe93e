"""Assistant configuration SQLModel definition.

Each widget section is backed by one assistant configuration. The provider
assistant handle (openai_assistant_id) is created on first use and stored here,
so the relational store stays the single source of truth for it.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from chatwidget.models.conversation import new_id, utcnow


class AssistantConfig(SQLModel, table=True):
    __tablename__ = "assistant_config"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None)
    openai_assistant_id: Optional[str] = Field(default=None)
    system_prompt: Optional[str] = Field(default=None)  # provider instructions
    user_prompt: Optional[str] = Field(default=None)  # prefix for user messages
    welcome_message: Optional[list[str]] = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    created_at: datetime = Field(default_factory=utcnow)
