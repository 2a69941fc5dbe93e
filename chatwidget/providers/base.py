"""Narrow interface the chat core requires of an LLM assistant provider."""
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

# Run states reported by the provider
RUN_PENDING_STATES = frozenset({"queued", "in_progress"})


@dataclass
class RunStatus:
    run_id: str
    status: str
    last_error: Optional[str] = None


@dataclass
class ProviderMessage:
    """One message in a provider thread, reduced to what the core reads."""

    id: str
    role: str
    created_at: int
    run_id: Optional[str] = None
    # Text blocks in order; empty when the message holds only non-text content
    texts: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.texts)


class AssistantProvider(Protocol):
    def create_thread(self) -> str: ...

    def create_message(
        self,
        thread_id: str,
        role: str,
        text: str,
        file_ids: Optional[list[str]] = None,
    ) -> str: ...

    def start_run(self, thread_id: str, assistant_id: str) -> str: ...

    def get_run_status(self, thread_id: str, run_id: str) -> RunStatus: ...

    def cancel_run(self, thread_id: str, run_id: str) -> None: ...

    def list_messages(self, thread_id: str) -> list[ProviderMessage]: ...

    def upload_file(self, data: bytes, filename: str, mime_type: str, purpose: str = "assistants") -> str: ...

    def create_assistant(self, name: str, instructions: str, model: str) -> str: ...

    def get_assistant(self, assistant_id: str) -> dict[str, Any]: ...

    def summarize_title(self, text: str) -> str: ...
