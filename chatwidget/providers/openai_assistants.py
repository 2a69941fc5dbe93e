"""OpenAI Assistants implementation of the provider interface.

Wraps the beta threads/runs/messages endpoints plus file upload and a plain
chat completion used for conversation titles. SDK errors are translated to
ProviderError at this boundary so callers never see openai exception types.
"""
from contextlib import contextmanager
from typing import Any, Iterator, Optional
import logging

from openai import OpenAI, APIError, APITimeoutError, NotFoundError

from chatwidget.config import settings
from chatwidget.core.errors import NotFound, ProviderError
from chatwidget.providers.base import ProviderMessage, RunStatus

logger = logging.getLogger(__name__)

TITLE_SYSTEM_PROMPT = (
    "Write a short title (at most six words) for a conversation that starts "
    "with the following assistant reply. Return only the title, no quotes."
)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except NotFoundError as e:
        logger.warning(f"OpenAI {operation}: resource not found: {str(e)}")
        raise NotFound(f"Provider resource not found during {operation}") from e
    except (APIError, APITimeoutError) as e:
        logger.error(f"OpenAI {operation} failed: {str(e)}")
        raise ProviderError(f"AI service error during {operation}") from e


class OpenAIAssistantProvider:
    """Provider backed by the OpenAI Assistants API."""

    def __init__(self, client: Optional[OpenAI] = None):
        self.client = client or OpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT,
        )

    def create_thread(self) -> str:
        with _translate_errors("thread creation"):
            thread = self.client.beta.threads.create()
        return thread.id

    def create_message(
        self,
        thread_id: str,
        role: str,
        text: str,
        file_ids: Optional[list[str]] = None,
    ) -> str:
        extra: dict[str, Any] = {}
        if file_ids:
            extra["attachments"] = [
                {"file_id": file_id, "tools": [{"type": "code_interpreter"}]}
                for file_id in file_ids
            ]
        with _translate_errors("message creation"):
            message = self.client.beta.threads.messages.create(
                thread_id=thread_id,
                role=role,
                content=text,
                **extra,
            )
        return message.id

    def start_run(self, thread_id: str, assistant_id: str) -> str:
        with _translate_errors("run start"):
            run = self.client.beta.threads.runs.create(
                thread_id=thread_id,
                assistant_id=assistant_id,
            )
        return run.id

    def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        with _translate_errors("run status"):
            run = self.client.beta.threads.runs.retrieve(run_id=run_id, thread_id=thread_id)
        last_error = None
        if run.last_error is not None:
            last_error = f"{run.last_error.code}: {run.last_error.message}"
        return RunStatus(run_id=run.id, status=run.status, last_error=last_error)

    def cancel_run(self, thread_id: str, run_id: str) -> None:
        with _translate_errors("run cancel"):
            self.client.beta.threads.runs.cancel(run_id=run_id, thread_id=thread_id)

    def list_messages(self, thread_id: str) -> list[ProviderMessage]:
        with _translate_errors("message listing"):
            page = self.client.beta.threads.messages.list(
                thread_id=thread_id, order="desc", limit=20
            )

        messages = []
        for msg in page.data:
            texts = [
                block.text.value
                for block in msg.content
                if block.type == "text"
            ]
            messages.append(
                ProviderMessage(
                    id=msg.id,
                    role=msg.role,
                    created_at=msg.created_at,
                    run_id=msg.run_id,
                    texts=texts,
                )
            )
        return messages

    def upload_file(self, data: bytes, filename: str, mime_type: str, purpose: str = "assistants") -> str:
        with _translate_errors("file upload"):
            uploaded = self.client.files.create(
                file=(filename, data, mime_type),
                purpose=purpose,
            )
        return uploaded.id

    def create_assistant(self, name: str, instructions: str, model: str) -> str:
        with _translate_errors("assistant creation"):
            assistant = self.client.beta.assistants.create(
                name=name,
                instructions=instructions,
                model=model,
                tools=[{"type": "code_interpreter"}],
            )
        return assistant.id

    def get_assistant(self, assistant_id: str) -> dict[str, Any]:
        with _translate_errors("assistant lookup"):
            assistant = self.client.beta.assistants.retrieve(assistant_id)
        return {"id": assistant.id, "name": assistant.name, "model": assistant.model}

    def summarize_title(self, text: str) -> str:
        with _translate_errors("title summarization"):
            response = self.client.chat.completions.create(
                model=settings.OPENAI_TITLE_MODEL,
                messages=[
                    {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                    {"role": "user", "content": text[:4000]},
                ],
                max_tokens=24,
                timeout=settings.OPENAI_TIMEOUT,
            )
        return (response.choices[0].message.content or "").strip()
