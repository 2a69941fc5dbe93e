"""Database engine and session helpers (SQLModel)."""
from typing import Iterator

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from chatwidget.config import settings


def build_engine(url: str):
    """
    Create an engine for the given URL.

    SQLite connections are shared with the threadpool that runs blocking
    store calls, so same-thread checking is disabled. In-memory SQLite uses a
    single static connection so every session sees the same tables.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(settings.DATABASE_URL)


def init_db(bind=None) -> None:
    """Create all tables."""
    # Table classes register themselves on import
    from chatwidget.models.assistant import AssistantConfig  # noqa: F401
    from chatwidget.models.attachment import Attachment  # noqa: F401
    from chatwidget.models.conversation import Conversation, Message  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Iterator[Session]:
    """Yield a session bound to the application engine."""
    with Session(engine) as session:
        yield session
