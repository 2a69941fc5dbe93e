"""Shared fixtures: in-memory database, fake provider and storage, API client."""
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from chatwidget.config import settings
from chatwidget.core.deps import get_chat_service, get_db
from chatwidget.core.errors import NotFound, ProviderError, StorageError
from chatwidget.database import build_engine, init_db
from chatwidget.main import app
from chatwidget.models.assistant import AssistantConfig
from chatwidget.models.attachment import Attachment
from chatwidget.providers.base import ProviderMessage, RunStatus
from chatwidget.services.chat_service import ChatService

PRINCIPAL = "user-alice"
OTHER_PRINCIPAL = "user-bob"
ASSISTANT_ID = "asst-local"


class FakeProvider:
    """In-memory stand-in for the OpenAI Assistants provider."""

    def __init__(self, answer: str = "Hello there!\nHow can I help you today?"):
        self.answer = answer
        self.statuses = ["queued", "in_progress", "completed"]
        self.last_error: Optional[str] = None
        self.assistant_texts: Optional[list[str]] = None
        self.title = "Friendly greeting"
        self.fail_on: set[str] = set()
        self.calls: list[tuple] = []
        self.threads: dict[str, list[ProviderMessage]] = {}
        self._counter = 0
        self._status_index = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise ProviderError(f"{name} rejected")

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def create_thread(self) -> str:
        self._record("create_thread")
        thread_id = self._next("thread")
        self.threads[thread_id] = []
        return thread_id

    def create_message(self, thread_id, role, text, file_ids=None) -> str:
        self._record("create_message", thread_id, role, text, file_ids)
        message_id = self._next("msg")
        self.threads.setdefault(thread_id, []).append(
            ProviderMessage(id=message_id, role=role, created_at=self._counter, texts=[text])
        )
        return message_id

    def start_run(self, thread_id, assistant_id) -> str:
        self._record("start_run", thread_id, assistant_id)
        self._status_index = 0
        return self._next("run")

    def get_run_status(self, thread_id, run_id) -> RunStatus:
        self._record("get_run_status", thread_id, run_id)
        status = self.statuses[min(self._status_index, len(self.statuses) - 1)]
        self._status_index += 1
        if status == "completed":
            texts = self.assistant_texts if self.assistant_texts is not None else [self.answer]
            self.threads.setdefault(thread_id, []).append(
                ProviderMessage(
                    id=self._next("msg"),
                    role="assistant",
                    created_at=self._counter,
                    run_id=run_id,
                    texts=texts,
                )
            )
        return RunStatus(run_id=run_id, status=status, last_error=self.last_error)

    def cancel_run(self, thread_id, run_id) -> None:
        self._record("cancel_run", thread_id, run_id)

    def list_messages(self, thread_id) -> list[ProviderMessage]:
        self._record("list_messages", thread_id)
        # Newest first, like the real listing
        return sorted(self.threads.get(thread_id, []), key=lambda m: m.created_at, reverse=True)

    def upload_file(self, data, filename, mime_type, purpose="assistants") -> str:
        self._record("upload_file", filename, mime_type, purpose)
        return self._next("file")

    def create_assistant(self, name, instructions, model) -> str:
        self._record("create_assistant", name, instructions, model)
        return self._next("asst")

    def get_assistant(self, assistant_id) -> dict:
        self._record("get_assistant", assistant_id)
        if assistant_id.startswith("missing"):
            raise NotFound("Provider resource not found during assistant lookup")
        return {"id": assistant_id}

    def summarize_title(self, text) -> str:
        self._record("summarize_title")
        return self.title


class FakeStorage:
    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    def download(self, path: str) -> bytes:
        if path not in self.blobs:
            raise StorageError(f"Failed to read stored file: {path}")
        return self.blobs[path]


@pytest.fixture(autouse=True)
def fast_runs(monkeypatch):
    """No real waiting between polls or chunks."""
    monkeypatch.setattr(settings, "RUN_POLL_INTERVAL", 0)
    monkeypatch.setattr(settings, "STREAM_CHUNK_DELAY", 0)
    monkeypatch.setattr(settings, "RUN_MAX_POLLS", 5)
    monkeypatch.setattr(settings, "CHAT_WIDGET_USER_ID", None)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def assistant(session):
    config = AssistantConfig(
        id=ASSISTANT_ID,
        name="Support",
        system_prompt="You answer questions about the product.",
        welcome_message=["Hi! Ask me anything about the product.", "Second line"],
    )
    session.add(config)
    session.commit()
    session.refresh(config)
    return config


@pytest.fixture
def make_attachment(session, storage):
    def _make(owner: str = PRINCIPAL, content: bytes = b"a,b\n1,2\n") -> Attachment:
        attachment = Attachment(
            user_id=owner,
            storage_path=f"{owner}/report.csv",
            filename="report.csv",
            mime_type="text/csv",
            size_bytes=len(content),
        )
        storage.blobs[attachment.storage_path] = content
        session.add(attachment)
        session.commit()
        session.refresh(attachment)
        return attachment

    return _make


@pytest.fixture
def chat_service(engine, provider, storage):
    return ChatService(provider, storage, session_factory=lambda: Session(engine))


@pytest.fixture
def client(engine, chat_service):
    def _get_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_chat_service] = lambda: chat_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-Principal-Id": PRINCIPAL}
