"""Error taxonomy for the chat core.

Every error carries the HTTP status it is surfaced with when it escapes a
non-streaming code path. Errors raised after a streamed response has started
are never surfaced; the stream simply ends.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for chat core errors."""

    status_code: int = 500
    default_detail: str = "Chat service error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidArgument(ChatError):
    status_code = 400
    default_detail = "Invalid request"


class Unauthorized(ChatError):
    status_code = 401
    default_detail = "Unauthorized"


class AccessDenied(ChatError):
    status_code = 403
    default_detail = "Access denied"


class NotFound(ChatError):
    status_code = 404
    default_detail = "Not found"


class StorageError(ChatError):
    status_code = 500
    default_detail = "Storage unavailable"


class ProviderError(ChatError):
    status_code = 500
    default_detail = "AI service temporarily unavailable"


class ProviderTimeout(ProviderError):
    """Run did not leave queued/in_progress within the poll ceiling."""

    status_code = 504
    default_detail = "AI service did not respond in time"


class NoAssistantOutput(ProviderError):
    """Run completed without a usable assistant text message."""

    status_code = 502
    default_detail = "AI service returned no response"
