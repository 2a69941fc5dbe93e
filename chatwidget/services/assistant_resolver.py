"""Resolve an assistant configuration to a provider assistant handle."""
import logging

from sqlmodel import Session

from chatwidget.config import settings
from chatwidget.core.errors import InvalidArgument, NotFound
from chatwidget.models.assistant import AssistantConfig
from chatwidget.providers.base import AssistantProvider
from chatwidget.services import conversation_store

logger = logging.getLogger(__name__)


def load_assistant(session: Session, assistant_id: str) -> AssistantConfig:
    """Fetch an assistant configuration or raise NotFound."""
    if not assistant_id:
        raise InvalidArgument("assistantId is required")
    assistant = conversation_store.get_assistant_config(session, assistant_id)
    if assistant is None:
        raise NotFound("Assistant not found")
    return assistant


def resolve_provider_assistant(
    session: Session,
    provider: AssistantProvider,
    assistant: AssistantConfig,
) -> str:
    """
    Return the provider assistant handle for a configuration.

    The handle is created on first use and stored on the configuration row;
    afterwards it is verified against the provider on every call and
    replaced when the provider no longer has it.
    """
    if assistant.openai_assistant_id:
        try:
            provider.get_assistant(assistant.openai_assistant_id)
            return assistant.openai_assistant_id
        except NotFound:
            logger.warning(
                f"Provider assistant {assistant.openai_assistant_id} is gone, recreating: assistant={assistant.id}"
            )

    handle = provider.create_assistant(
        name=assistant.name,
        instructions=assistant.system_prompt or "",
        model=settings.OPENAI_MODEL,
    )
    conversation_store.update_assistant_config(session, assistant, handle)
    logger.info(f"Provider assistant created: assistant={assistant.id}, handle={handle}")
    return handle
