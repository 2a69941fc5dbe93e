"""Conversation titles derived from the first assistant answer."""
from typing import Optional
import logging

from sqlmodel import Session

from chatwidget.config import settings
from chatwidget.models.conversation import Conversation
from chatwidget.providers.base import AssistantProvider
from chatwidget.services import conversation_store

logger = logging.getLogger(__name__)


def fallback_title(text: str, max_length: Optional[int] = None) -> str:
    """
    First non-empty line of text, cut at a word boundary with "..." if too long.

    >>> fallback_title("Hello.\\nMore context here.")
    'Hello.'
    """
    max_length = max_length or settings.TITLE_MAX_LENGTH
    first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
    if len(first_line) <= max_length:
        return first_line

    cut = first_line[:max_length]
    if not first_line[max_length].isspace():
        boundary = cut.rfind(" ")
        if boundary > 0:
            cut = cut[:boundary]
    return cut.rstrip() + "..."



def is_placeholder(title: Optional[str]) -> bool:
    return not title or not title.strip() or title.strip() in settings.TITLE_PLACEHOLDERS


def needs_title(conversation: Conversation, is_new: bool) -> bool:
    return is_new or is_placeholder(conversation.title)


def summarize_title(provider: AssistantProvider, text: str) -> str:
    """Ask the provider for a title; any failure yields the fallback."""
    title = fallback_title(text)
    try:
        summary = provider.summarize_title(text).strip().strip('"').strip()
    except Exception as e:
        logger.warning(f"Title summarization failed, using fallback: {str(e)}")
        return title
    if not summary:
        return title
    return fallback_title(summary)


def maybe_retitle(
    session: Session,
    provider: AssistantProvider,
    conversation_id: str,
    assistant_text: str,
    is_new: bool = False,
) -> Optional[str]:
    """
    Retitle a conversation that is new or still carries a placeholder title.

    Returns:
        The new title, or None when the title was left unchanged
    """
    conversation = conversation_store.get_conversation(session, conversation_id)
    if conversation is None or not needs_title(conversation, is_new):
        return None

    title = summarize_title(provider, assistant_text)
    if is_placeholder(title) or title == conversation.title:
        return None

    conversation_store.update_conversation(session, conversation, title=title)
    logger.info(f"Conversation retitled: conversation={conversation_id}, title={title!r}")
    return title
