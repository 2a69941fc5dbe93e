"""FastAPI dependencies shared by the chat routes."""
from functools import lru_cache
from typing import Iterator, Optional

from fastapi import Header
from sqlmodel import Session

from chatwidget.config import settings
from chatwidget.core.errors import Unauthorized
from chatwidget.database import get_session
from chatwidget.providers.openai_assistants import OpenAIAssistantProvider
from chatwidget.services.chat_service import ChatService
from chatwidget.storage.blob import LocalBlobStorage


def get_db() -> Iterator[Session]:
    """Database session for one request."""
    yield from get_session()


def get_current_user(
    x_principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
) -> str:
    """
    Resolve the principal a request acts for.

    Authentication happens upstream (embed proxy); this only reads the
    principal it forwards, falling back to the configured widget user.

    Raises:
        Unauthorized: No principal available
    """
    principal = (x_principal_id or "").strip() or settings.CHAT_WIDGET_USER_ID
    if not principal:
        raise Unauthorized("No principal provided")
    return principal


@lru_cache
def get_chat_service() -> ChatService:
    """Process-wide chat service (stateless apart from its clients)."""
    return ChatService(
        provider=OpenAIAssistantProvider(),
        storage=LocalBlobStorage(settings.BLOB_STORAGE_ROOT),
    )
