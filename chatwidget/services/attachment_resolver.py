"""Attachment resolution: stored file -> provider file handle."""
import logging
from typing import Optional

from sqlmodel import Session

from chatwidget.models.attachment import Attachment
from chatwidget.providers.base import AssistantProvider
from chatwidget.services.authorization import ResourceKind, authorize
from chatwidget.storage.blob import BlobStorage

logger = logging.getLogger(__name__)


def resolve_attachment(
    session: Session,
    provider: AssistantProvider,
    storage: BlobStorage,
    principal: str,
    attachment_id: Optional[str] = None,
    attachment: Optional[Attachment] = None,
) -> str:
    """
    Upload a principal's stored file to the provider for assistant use.

    Every call uploads again; handles are not cached between calls.

    Raises:
        NotFound / AccessDenied: Attachment missing or not owned by principal
        StorageError: Stored content unreadable
        ProviderError: Upload rejected
    """
    if attachment is None:
        attachment = authorize(session, principal, attachment_id, ResourceKind.ATTACHMENT)

    data = storage.download(attachment.storage_path)
    file_handle = provider.upload_file(
        data,
        attachment.filename,
        attachment.mime_type or "application/octet-stream",
        purpose="assistants",
    )
    logger.info(
        f"Attachment uploaded: user={principal}, attachment={attachment.id}, "
        f"bytes={len(data)}, provider_file={file_handle}"
    )
    return file_handle
