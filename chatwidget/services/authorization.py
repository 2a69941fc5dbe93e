"""Single ownership gate for conversations and attachments.

All routes and resolvers fetch principal-owned resources through authorize(),
so "does not exist" (404) and "not yours" (403) are decided in one place.
"""
from enum import Enum
from typing import Optional, Union
import logging

from sqlmodel import Session

from chatwidget.core.errors import AccessDenied, InvalidArgument, NotFound, Unauthorized
from chatwidget.models.attachment import Attachment
from chatwidget.models.conversation import Conversation

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    CONVERSATION = "conversation"
    ATTACHMENT = "attachment"


_MODELS = {
    ResourceKind.CONVERSATION: Conversation,
    ResourceKind.ATTACHMENT: Attachment,
}

_LABELS = {
    ResourceKind.CONVERSATION: "Conversation",
    ResourceKind.ATTACHMENT: "File",
}


def authorize(
    session: Session,
    principal: Optional[str],
    resource_id: Optional[str],
    kind: ResourceKind,
) -> Union[Conversation, Attachment]:
    """
    Return the resource if principal owns it.

    Raises:
        Unauthorized: No principal
        InvalidArgument: Missing resource id
        NotFound: No such resource
        AccessDenied: Resource owned by another principal
    """
    if not principal:
        raise Unauthorized()
    label = _LABELS[kind]
    if not resource_id:
        raise InvalidArgument(f"{label} id is required")

    resource = session.get(_MODELS[kind], resource_id)
    if resource is None:
        raise NotFound(f"{label} not found")
    if resource.user_id != principal:
        logger.warning(
            f"Ownership denied: principal={principal} {kind.value}={resource_id}"
        )
        raise AccessDenied()
    return resource
