"""Application settings for the chat widget backend.

Values are read from the environment (and an optional .env file).
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_TITLE_MODEL: str = "gpt-4o-mini"
    OPENAI_TIMEOUT: float = 30.0

    # Storage
    DATABASE_URL: str = "sqlite:///./chatwidget.db"
    BLOB_STORAGE_ROOT: str = "./storage"

    # Proxy principal for anonymous widget sessions
    CHAT_WIDGET_USER_ID: Optional[str] = None

    # Run orchestration
    RUN_POLL_INTERVAL: float = 1.5
    RUN_MAX_POLLS: int = 30
    STREAM_CHUNK_DELAY: float = 0.04

    # Titles and welcome turns
    TITLE_MAX_LENGTH: int = 70
    DEFAULT_THREAD_TITLE: str = "New Chat"
    TITLE_PLACEHOLDERS: list[str] = ["New Chat", "New chat", "Email Management"]
    DEFAULT_WELCOME_MESSAGE: str = "Hello! I'm your assistant. How can I help you today?"

    CORS_ORIGINS: list[str] = ["*"]
    LOG_LEVEL: str = "INFO"


settings = Settings()
