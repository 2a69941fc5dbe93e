"""Relational store operations for conversations, turns and attachments.

Every function takes an open Session and commits its own write. Turns are
insert-only: nothing here updates or deletes a stored message.
"""
from typing import Any, Optional

from sqlmodel import Session, select

from chatwidget.core.errors import InvalidArgument, NotFound
from chatwidget.models.assistant import AssistantConfig
from chatwidget.models.attachment import Attachment
from chatwidget.models.conversation import Conversation, Message, utcnow

VALID_ROLES = ("user", "assistant")


def create_conversation(
    session: Session,
    user_id: str,
    assistant_id: Optional[str] = None,
    title: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Conversation:
    """Insert a new conversation owned by user_id."""
    conversation = Conversation(
        user_id=user_id,
        assistant_id=assistant_id,
        title=title,
        meta=dict(metadata) if metadata else None,
    )
    session.add(conversation)
    session.commit()
    session.refresh(conversation)
    return conversation


def get_conversation(session: Session, conversation_id: str) -> Optional[Conversation]:
    """Fetch a conversation by id regardless of owner (ownership is checked by the caller)."""
    return session.get(Conversation, conversation_id)


def list_conversations(
    session: Session,
    user_id: str,
    assistant_id: Optional[str] = None,
) -> list[Conversation]:
    """List a principal's conversations, most recently updated first."""
    statement = select(Conversation).where(Conversation.user_id == user_id)
    if assistant_id is not None:
        statement = statement.where(Conversation.assistant_id == assistant_id)
    statement = statement.order_by(Conversation.updated_at.desc())
    return list(session.exec(statement).all())


def update_conversation(
    session: Session,
    conversation: Conversation,
    title: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Conversation:
    """
    Update title and/or merge metadata keys, bumping updated_at.

    The owning principal is never touched.
    """
    if title is not None:
        conversation.title = title
    if metadata:
        # JSON columns only notice reassignment, not in-place mutation
        conversation.meta = {**(conversation.meta or {}), **metadata}
    conversation.updated_at = utcnow()
    session.add(conversation)
    session.commit()
    session.refresh(conversation)
    return conversation


def append_turn(
    session: Session,
    conversation_id: str,
    role: str,
    content: str,
    user_id: Optional[str] = None,
    assistant_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Message:
    """
    Append a completed turn to a conversation.

    Args:
        session: Database session
        conversation_id: Owning conversation
        role: "user" or "assistant"
        content: Turn text, must be non-empty
        user_id: Owning principal (None for assistant turns)
        assistant_id: Linked assistant configuration, if any
        metadata: Structured metadata (provider message/run ids, ...)

    Returns:
        Stored Message with generated id and timestamp

    Raises:
        InvalidArgument: Empty content/conversation id, unknown role, or a
            transient "thinking" placeholder
        NotFound: Conversation does not exist
    """
    if not conversation_id:
        raise InvalidArgument("conversation id is required")
    if not content or not content.strip():
        raise InvalidArgument("content must not be empty")
    if role not in VALID_ROLES:
        raise InvalidArgument(f"role must be one of {', '.join(VALID_ROLES)}")
    if metadata and metadata.get("thinking"):
        raise InvalidArgument("thinking placeholders are not persisted")
    conversation = session.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found")

    message = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
        user_id=user_id if role == "user" else None,
        assistant_id=assistant_id,
        meta=dict(metadata) if metadata else None,
        completed=True,
    )
    conversation.updated_at = utcnow()
    session.add(message)
    session.add(conversation)
    session.commit()
    session.refresh(message)
    return message


def list_turns(session: Session, conversation_id: str) -> list[Message]:
    """List turns of a conversation in creation order."""
    statement = select(Message).where(
        Message.conversation_id == conversation_id
    ).order_by(Message.created_at)
    return list(session.exec(statement).all())


def get_attachment(session: Session, attachment_id: str) -> Optional[Attachment]:
    return session.get(Attachment, attachment_id)


def get_assistant_config(session: Session, assistant_id: str) -> Optional[AssistantConfig]:
    return session.get(AssistantConfig, assistant_id)


def update_assistant_config(
    session: Session,
    assistant: AssistantConfig,
    openai_assistant_id: str,
) -> AssistantConfig:
    """Store the provider assistant handle on its configuration row."""
    assistant.openai_assistant_id = openai_assistant_id
    session.add(assistant)
    session.commit()
    session.refresh(assistant)
    return assistant
