"""Global configuration for the Infinite Story service and its console."""
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Centralised settings read from .env file automatically."""

    # ── Paths ──────────────────────────────────────────────
    PROJECT_ROOT: Path = Path(__file__).parent

    # ── OpenAI / text completion ──────────────────────────
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_BASE_URL: str = Field(default="", description="OpenAI-compatible API base URL (e.g. https://your-server.com/v1)")
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    OPENAI_TEMPERATURE: float = 0.9
    STORY_MAX_TOKENS: int = 250
    STORY_STOP: List[str] = ["<<END>>"]
    STORY_WORD_LIMIT: int = 200
    LLM_MAX_ATTEMPTS: int = 3

    # ── OpenAI / image generation ─────────────────────────
    IMAGE_MODEL: str = "dall-e-3"
    IMAGE_SIZE: str = "1024x1024"
    IMAGE_PROMPT_PREFIX: str = "Create a family-friendly image based on: "

    # ── Server ────────────────────────────────────────────
    STREAM_RESPONSES: bool = True
    SESSION_TTL_SECONDS: int = 1800
    SESSION_HEADER: str = "X-Session-Id"
    CORS_ORIGINS: List[str] = ["*"]
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 5000
    LOG_LEVEL: str = "INFO"

    # ── Client / Gradio ───────────────────────────────────
    API_BASE_URL: str = "http://localhost:5000"
    CLIENT_TIMEOUT_SECONDS: float = 120.0
    GRADIO_PORT: int = 7860

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


# Singleton settings instance used by every module
settings = Settings()
