"""Attachment SQLModel definition.

An attachment is a file a principal uploaded earlier. Rows are immutable once
stored; the chat core only checks existence and ownership before reuse.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from chatwidget.models.conversation import new_id, utcnow


class Attachment(SQLModel, table=True):
    __tablename__ = "attachment"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    user_id: str = Field(index=True, nullable=False)
    storage_path: str = Field(nullable=False)
    filename: str = Field(max_length=255)
    mime_type: Optional[str] = Field(default=None, max_length=255)
    size_bytes: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
