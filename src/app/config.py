"""Application configuration via Pydantic BaseSettings.

Server-level settings only; knowledge base settings live in
src.knowledge.config.KnowledgeBaseConfig (KNOWLEDGE_ prefix).
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # Startup
    WARMUP_EMBEDDINGS: bool = True


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
