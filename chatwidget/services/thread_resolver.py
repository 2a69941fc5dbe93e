"""Thread resolution: settle which conversation a chat turn belongs to."""
from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from chatwidget.core.errors import StorageError
from chatwidget.models.conversation import Conversation
from chatwidget.providers.base import AssistantProvider
from chatwidget.services import conversation_store
from chatwidget.services.authorization import ResourceKind, authorize

logger = logging.getLogger(__name__)


@dataclass
class ResolvedThread:
    conversation_id: str
    provider_thread_id: str
    is_new: bool


def resolve_thread(
    session: Session,
    provider: AssistantProvider,
    principal: str,
    assistant_id: Optional[str],
    thread_id: Optional[str] = None,
    conversation: Optional[Conversation] = None,
) -> ResolvedThread:
    """
    Validate an existing conversation or provision a new one.

    Args:
        session: Database session
        provider: LLM provider used to create remote threads
        principal: Owning principal
        assistant_id: Assistant configuration the conversation is linked to
        thread_id: Existing conversation id, or None for a new conversation
        conversation: Already-authorized conversation (skips the lookup)

    Returns:
        ResolvedThread with local id, provider handle and is_new flag

    Raises:
        NotFound / AccessDenied: thread_id missing or not owned by principal
        ProviderError: Remote thread creation failed
        StorageError: New conversation could not be stored
    """
    if thread_id or conversation is not None:
        if conversation is None:
            conversation = authorize(session, principal, thread_id, ResourceKind.CONVERSATION)
        provider_thread_id = conversation.provider_thread_id
        if not provider_thread_id:
            provider_thread_id = provider.create_thread()
            try:
                conversation_store.update_conversation(
                    session,
                    conversation,
                    metadata={"openai_thread_id": provider_thread_id},
                )
            except SQLAlchemyError as e:
                # The handle is still usable for this request
                session.rollback()
                logger.warning(
                    f"Backfill of provider thread failed for conversation={conversation.id}: {str(e)}"
                )
        return ResolvedThread(
            conversation_id=conversation.id,
            provider_thread_id=provider_thread_id,
            is_new=False,
        )

    provider_thread_id = provider.create_thread()
    try:
        conversation = conversation_store.create_conversation(
            session,
            user_id=principal,
            assistant_id=assistant_id,
            metadata={"openai_thread_id": provider_thread_id},
        )
    except SQLAlchemyError as e:
        session.rollback()
        # Remote thread is left orphaned; it is never linked locally
        logger.error(
            f"Conversation insert failed for user={principal}, orphaned provider thread={provider_thread_id}: {str(e)}"
        )
        raise StorageError("Failed to create conversation") from e

    logger.info(
        f"Conversation created: user={principal}, conversation={conversation.id}, thread={provider_thread_id}"
    )
    return ResolvedThread(
        conversation_id=conversation.id,
        provider_thread_id=provider_thread_id,
        is_new=True,
    )
