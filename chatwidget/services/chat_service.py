"""Chat service layer for the website chat widget.

Handles:
- Turn preparation (ownership checks, assistant/thread/attachment resolution,
  user turn storage) before a streamed answer starts
- Post-stream work (assistant turn storage, conversation retitling)
- Welcome provisioning for new conversations
"""
from dataclasses import dataclass
from typing import Any, Callable, Optional
import json
import logging

from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from chatwidget.config import settings
from chatwidget.core.errors import InvalidArgument, Unauthorized
from chatwidget.database import engine
from chatwidget.models.assistant import AssistantConfig
from chatwidget.models.conversation import Conversation, Message
from chatwidget.providers.base import AssistantProvider
from chatwidget.services import conversation_store
from chatwidget.services.assistant_resolver import load_assistant, resolve_provider_assistant
from chatwidget.services.attachment_resolver import resolve_attachment
from chatwidget.services.authorization import ResourceKind, authorize
from chatwidget.services.run_orchestrator import AssistantRun
from chatwidget.services.thread_resolver import resolve_thread
from chatwidget.services.title_summarizer import maybe_retitle
from chatwidget.storage.blob import BlobStorage

logger = logging.getLogger(__name__)


def compose_message(
    text: str,
    user_prompt: Optional[str] = None,
    context: Optional[Any] = None,
) -> str:
    """
    Build the message sent to the provider.

    The assistant's configured user prompt goes in front of the user text and
    serialized context data is appended after it.
    """
    content = text
    if user_prompt and user_prompt.strip():
        content = f"{user_prompt.strip()}\n\n{content}"
    if context:
        content += f"\n\nData for context: {json.dumps(context, indent=2, default=str)}"
    return content


@dataclass
class ChatTurn:
    """Everything the transport and post-stream work need for one turn."""

    principal: str
    conversation_id: str
    provider_thread_id: str
    is_new: bool
    assistant_id: str
    run: AssistantRun
    user_message_id: Optional[str] = None


class ChatService:
    """Service layer for chat operations."""

    def __init__(
        self,
        provider: AssistantProvider,
        storage: BlobStorage,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        """Initialize chat service."""
        self.provider = provider
        self.storage = storage
        self.session_factory = session_factory or (lambda: Session(engine))

    def prepare_turn(
        self,
        session: Session,
        principal: Optional[str],
        message: str,
        assistant_id: str,
        thread_id: Optional[str] = None,
        attachment_id: Optional[str] = None,
        hidden: bool = False,
        context: Optional[Any] = None,
    ) -> ChatTurn:
        """
        Settle everything a streamed answer depends on.

        Argument and ownership checks all happen before the first provider
        call, so a rejected request leaves no trace locally or remotely.

        Flow:
        1. Validate input and principal
        2. Authorize thread and attachment (if given)
        3. Load assistant configuration
        4. Resolve provider assistant and thread (creating them if needed)
        5. Upload attachment to the provider
        6. Store the user turn (unless hidden)
        7. Build the run

        Raises:
            InvalidArgument, Unauthorized, AccessDenied, NotFound: before any remote call
            ProviderError, StorageError: setup failures
        """
        if not principal:
            raise Unauthorized()
        if not message or not message.strip():
            raise InvalidArgument("Message cannot be empty")
        if not assistant_id:
            raise InvalidArgument("assistantId is required")

        conversation = None
        if thread_id:
            conversation = authorize(session, principal, thread_id, ResourceKind.CONVERSATION)
        attachment = None
        if attachment_id:
            attachment = authorize(session, principal, attachment_id, ResourceKind.ATTACHMENT)
        assistant = load_assistant(session, assistant_id)

        provider_assistant_id = resolve_provider_assistant(session, self.provider, assistant)
        thread = resolve_thread(
            session,
            self.provider,
            principal,
            assistant.id,
            conversation=conversation,
        )

        file_ids = []
        metadata: Optional[dict[str, Any]] = None
        if attachment is not None:
            file_id = resolve_attachment(
                session, self.provider, self.storage, principal, attachment=attachment
            )
            file_ids.append(file_id)
            metadata = {"attachment_id": attachment.id, "openai_file_id": file_id}

        user_message_id = None
        if not hidden:
            user_msg = conversation_store.append_turn(
                session,
                thread.conversation_id,
                role="user",
                content=message,
                user_id=principal,
                metadata=metadata,
            )
            user_message_id = user_msg.id

        run = AssistantRun(
            self.provider,
            thread.provider_thread_id,
            provider_assistant_id,
            compose_message(message, assistant.user_prompt, context),
            file_ids=file_ids,
        )

        logger.info(
            f"Chat turn prepared: user={principal}, conversation={thread.conversation_id}, "
            f"new={thread.is_new}, hidden={hidden}, attachment={attachment_id}"
        )
        return ChatTurn(
            principal=principal,
            conversation_id=thread.conversation_id,
            provider_thread_id=thread.provider_thread_id,
            is_new=thread.is_new,
            assistant_id=assistant.id,
            run=run,
            user_message_id=user_message_id,
        )

    async def finish_turn(self, turn: ChatTurn) -> None:
        """
        Store the streamed answer and retitle the conversation.

        Runs after the client has received the stream. Failures here are
        logged only: the client already has the content.
        """
        if not turn.run.succeeded:
            logger.info(
                f"Skipping assistant turn storage: conversation={turn.conversation_id}, "
                f"state={turn.run.state.value}"
            )
            return

        try:
            await run_in_threadpool(self._store_assistant_turn, turn)
        except Exception as e:
            logger.error(
                f"Failed to store assistant turn for conversation={turn.conversation_id}: {str(e)}"
            )
            return

        try:
            await run_in_threadpool(self._retitle, turn)
        except Exception as e:
            logger.error(f"Retitle failed for conversation={turn.conversation_id}: {str(e)}")

    def _store_assistant_turn(self, turn: ChatTurn) -> Message:
        with self.session_factory() as session:
            return conversation_store.append_turn(
                session,
                turn.conversation_id,
                role="assistant",
                content=turn.run.text,
                assistant_id=turn.assistant_id,
                metadata={
                    "openai_thread_id": turn.provider_thread_id,
                    "openai_run_id": turn.run.run_id,
                    "openai_message_id": turn.run.output_message_id,
                },
            )

    def _retitle(self, turn: ChatTurn) -> Optional[str]:
        with self.session_factory() as session:
            return maybe_retitle(
                session,
                self.provider,
                turn.conversation_id,
                turn.run.text,
                is_new=turn.is_new,
            )

    def create_conversation(
        self,
        session: Session,
        principal: str,
        assistant_id: str,
        title: Optional[str] = None,
    ) -> Conversation:
        """Create an empty conversation; the provider thread is attached on first use."""
        assistant = load_assistant(session, assistant_id)
        conversation = conversation_store.create_conversation(
            session,
            user_id=principal,
            assistant_id=assistant.id,
            title=(title or "").strip() or settings.DEFAULT_THREAD_TITLE,
        )
        logger.info(f"Conversation created: user={principal}, conversation={conversation.id}")
        return conversation

    def provision_welcome(
        self,
        session: Session,
        principal: str,
        assistant_id: str,
    ) -> tuple[Conversation, Message]:
        """
        Create a conversation seeded with the assistant's welcome turn.

        The seeded assistant turn is the first turn of the conversation.
        """
        conversation = self.create_conversation(session, principal, assistant_id)
        assistant = conversation_store.get_assistant_config(session, assistant_id)
        message = conversation_store.append_turn(
            session,
            conversation.id,
            role="assistant",
            content=welcome_text(assistant),
            assistant_id=assistant_id,
        )
        session.refresh(conversation)
        return conversation, message


def welcome_text(assistant: Optional[AssistantConfig]) -> str:
    if assistant and assistant.welcome_message:
        first = next((line for line in assistant.welcome_message if line and line.strip()), None)
        if first:
            return first
    return settings.DEFAULT_WELCOME_MESSAGE
