"""Chat endpoint routes for the website chat widget.

Provides:
- POST /api/chat/stream - Send message, stream the assistant's answer
- GET /api/chat/init - Conversations for an assistant + latest conversation's turns
- POST /api/chat/welcome - New conversation seeded with a welcome turn
- GET /api/chat/threads - List conversations
- POST /api/chat/threads - Create conversation
- PATCH /api/chat/threads/{thread_id} - Rename conversation
- GET /api/chat/messages - List turns of a conversation
- POST /api/chat/messages - Append a turn
"""
from datetime import datetime
from functools import partial
from typing import Any, Optional
import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from chatwidget.api.streaming import StreamingTransport, wants_event_stream
from chatwidget.core.deps import get_chat_service, get_current_user, get_db
from chatwidget.core.errors import InvalidArgument
from chatwidget.models.conversation import Conversation, Message
from chatwidget.services import conversation_store
from chatwidget.services.authorization import ResourceKind, authorize
from chatwidget.services.chat_service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


class ChatStreamRequest(BaseModel):
    """Request model for a streamed chat turn."""
    message: str
    thread_id: Optional[str] = None
    assistant_id: str = Field(validation_alias=AliasChoices("assistantId", "assistant_id"))
    filename: Optional[str] = Field(
        default=None, description="Attachment id of a previously uploaded file."
    )
    hidden_message: bool = Field(
        default=False, validation_alias=AliasChoices("hiddenMessage", "hidden_message")
    )
    context: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("context", "labelData")
    )


class AssistantRequest(BaseModel):
    """Request model naming an assistant configuration."""
    assistant_id: str = Field(validation_alias=AliasChoices("assistantId", "assistant_id"))
    title: Optional[str] = None


class RenameRequest(BaseModel):
    """Request model for renaming a conversation."""
    title: str


class MessageCreate(BaseModel):
    """Request model for appending a turn."""
    content: str
    thread_id: str
    role: str = "user"
    assistant_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class ThreadResponse(BaseModel):
    """Response model for a conversation."""
    id: str
    title: Optional[str]
    assistant_id: Optional[str]
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    """Response model for a single turn."""
    id: str
    thread_id: str
    role: str
    content: Optional[str]
    user_id: Optional[str]
    assistant_id: Optional[str]
    metadata: Optional[dict[str, Any]]
    completed: bool
    created_at: datetime


class InitResponse(BaseModel):
    threads: list[ThreadResponse]
    messages: list[MessageResponse]


class WelcomeResponse(BaseModel):
    thread: ThreadResponse
    message: MessageResponse


class MessagesResponse(BaseModel):
    messages: list[MessageResponse]


def thread_response(conversation: Conversation) -> ThreadResponse:
    return ThreadResponse(
        id=conversation.id,
        title=conversation.title,
        assistant_id=conversation.assistant_id,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def message_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        thread_id=message.conversation_id,
        role=message.role,
        content=message.content,
        user_id=message.user_id,
        assistant_id=message.assistant_id,
        metadata=message.meta,
        completed=message.completed,
        created_at=message.created_at,
    )


@router.post("/stream")
async def stream_chat(
    request: Request,
    body: ChatStreamRequest,
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Send a message and stream the assistant's answer.

    Setup (ownership checks, thread/assistant/attachment resolution, user
    turn storage) completes before the response starts, so its failures come
    back as JSON errors. The answer is then streamed as text/plain, or as
    server-sent events when the client accepts text/event-stream. The
    conversation id is returned in the X-Thread-Id header.

    Raises:
        ChatError: 400 invalid input, 401/403 principal/ownership,
            404 unknown thread/attachment/assistant, 500 provider or storage
    """
    turn = await run_in_threadpool(
        chat_service.prepare_turn,
        session,
        principal,
        body.message,
        body.assistant_id,
        thread_id=body.thread_id,
        attachment_id=body.filename,
        hidden=body.hidden_message,
        context=body.context,
    )

    transport = StreamingTransport(
        turn.run,
        event_stream=wants_event_stream(request.headers.get("accept")),
        on_complete=partial(chat_service.finish_turn, turn),
        headers={"X-Thread-Id": turn.conversation_id},
    )
    return transport.response()


@router.get("/init", response_model=InitResponse)
def init_chat(
    assistant_id: str = Query(..., alias="assistantId"),
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
) -> InitResponse:
    """
    Load the widget's starting state for one assistant.

    Returns the principal's conversations (most recently updated first) and
    the turns of the most recent one. A failure loading those turns leaves
    the message list empty instead of failing the request.
    """
    threads = conversation_store.list_conversations(session, principal, assistant_id)

    messages: list[Message] = []
    if threads:
        latest = threads[0]
        try:
            messages = conversation_store.list_turns(session, latest.id)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to load turns for conversation={latest.id}: {str(e)}")

    return InitResponse(
        threads=[thread_response(t) for t in threads],
        messages=[message_response(m) for m in messages],
    )


@router.post("/welcome", response_model=WelcomeResponse, status_code=status.HTTP_201_CREATED)
def welcome(
    body: AssistantRequest,
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
    chat_service: ChatService = Depends(get_chat_service),
) -> WelcomeResponse:
    """Create a conversation whose first turn is the assistant's welcome message."""
    conversation, message = chat_service.provision_welcome(session, principal, body.assistant_id)
    return WelcomeResponse(
        thread=thread_response(conversation),
        message=message_response(message),
    )


@router.get("/threads", response_model=list[ThreadResponse])
def list_threads(
    assistant_id: Optional[str] = Query(None, alias="assistantId"),
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
) -> list[ThreadResponse]:
    """List the principal's conversations, optionally for one assistant."""
    threads = conversation_store.list_conversations(session, principal, assistant_id)
    return [thread_response(t) for t in threads]


@router.post("/threads", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
def create_thread(
    body: AssistantRequest,
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
    chat_service: ChatService = Depends(get_chat_service),
) -> ThreadResponse:
    """Create an empty conversation."""
    conversation = chat_service.create_conversation(
        session, principal, body.assistant_id, title=body.title
    )
    return thread_response(conversation)


@router.patch("/threads/{thread_id}", response_model=ThreadResponse)
def rename_thread(
    thread_id: str,
    body: RenameRequest,
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
) -> ThreadResponse:
    """
    Rename a conversation.

    Raises:
        InvalidArgument: Empty title
        NotFound / AccessDenied: Unknown or foreign conversation
    """
    title = body.title.strip()
    if not title:
        raise InvalidArgument("Title is required and must be a non-empty string")

    conversation = authorize(session, principal, thread_id, ResourceKind.CONVERSATION)
    conversation = conversation_store.update_conversation(session, conversation, title=title)
    logger.info(f"Conversation renamed: user={principal}, conversation={thread_id}")
    return thread_response(conversation)


@router.get("/messages", response_model=MessagesResponse)
def list_messages(
    thread_id: str = Query(...),
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
) -> MessagesResponse:
    """List a conversation's turns in creation order."""
    authorize(session, principal, thread_id, ResourceKind.CONVERSATION)
    messages = conversation_store.list_turns(session, thread_id)
    return MessagesResponse(messages=[message_response(m) for m in messages])


@router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def create_message(
    body: MessageCreate,
    principal: str = Depends(get_current_user),
    session: Session = Depends(get_db),
) -> MessageResponse:
    """
    Append a completed turn to a conversation.

    Assistant turns are linked to the request's assistant id, or the
    conversation's own assistant when none is given.
    """
    conversation = authorize(session, principal, body.thread_id, ResourceKind.CONVERSATION)
    assistant_id = None
    if body.role == "assistant":
        assistant_id = body.assistant_id or conversation.assistant_id

    message = conversation_store.append_turn(
        session,
        conversation.id,
        role=body.role,
        content=body.content,
        user_id=principal,
        assistant_id=assistant_id,
        metadata=body.metadata,
    )
    return message_response(message)
