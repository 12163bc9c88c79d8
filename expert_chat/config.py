"""
Configuration module for the expert chat client.
Loads settings from environment variables or .env file.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from expert_chat.errors import ConfigError

# Load .env file from project root (parent of expert_chat/ directory)
_project_root = Path(__file__).parent.parent
_env_path = _project_root / ".env"
load_dotenv(_env_path)


class Config:
    """Application configuration."""

    # Supabase project (edge functions + REST API)
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "").rstrip("/")
    SUPABASE_ANON_KEY: str = os.getenv("SUPABASE_ANON_KEY", "")

    # Chat endpoint
    CHAT_FUNCTION_NAME: str = os.getenv("CHAT_FUNCTION_NAME", "automotive-expert-chat")

    # Stream policy
    STREAM_INACTIVITY_TIMEOUT: float = float(os.getenv("STREAM_INACTIVITY_TIMEOUT", "60.0"))
    HTTP_CONNECT_TIMEOUT: float = float(os.getenv("HTTP_CONNECT_TIMEOUT", "10.0"))

    # Remote store
    # Supported backends: "postgrest", "postgres"
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "postgrest")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    CONVERSATIONS_TABLE: str = os.getenv("CONVERSATIONS_TABLE", "expert_conversations")
    MESSAGES_TABLE: str = os.getenv("MESSAGES_TABLE", "expert_messages")

    # Conversation list
    CONVERSATION_LIST_LIMIT: int = int(os.getenv("CONVERSATION_LIST_LIMIT", "50"))
    DEFAULT_CONVERSATION_TITLE: str = os.getenv("DEFAULT_CONVERSATION_TITLE", "New Conversation")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate the settings needed to talk to the chat endpoint."""
        if not cls.SUPABASE_URL:
            raise ConfigError("SUPABASE_URL must be set")
        if not cls.SUPABASE_URL.startswith(("http://", "https://")):
            raise ConfigError(
                f"SUPABASE_URL must be an http(s) URL. Got: {cls.SUPABASE_URL}"
            )
        if cls.STREAM_INACTIVITY_TIMEOUT <= 0:
            raise ConfigError("STREAM_INACTIVITY_TIMEOUT must be positive")
        if cls.CONVERSATION_LIST_LIMIT < 1:
            raise ConfigError("CONVERSATION_LIST_LIMIT must be at least 1")

    @classmethod
    def validate_store_config(cls) -> None:
        """Validate remote store configuration."""
        backend = cls.STORE_BACKEND.lower()

        if backend not in ("postgrest", "postgres"):
            raise ConfigError(
                f"STORE_BACKEND must be one of: postgrest, postgres. Got: {backend}"
            )

        if backend == "postgrest" and not cls.SUPABASE_URL:
            raise ConfigError("SUPABASE_URL must be set when using the postgrest store")

        if backend == "postgrest" and not cls.SUPABASE_ANON_KEY:
            raise ConfigError("SUPABASE_ANON_KEY must be set when using the postgrest store")

        if backend == "postgres" and not cls.DATABASE_URL:
            raise ConfigError("DATABASE_URL must be set when using the postgres store")

    @classmethod
    def get_store_config(cls) -> dict:
        """Get configuration for the active store backend."""
        backend = cls.STORE_BACKEND.lower()

        base_config = {
            "backend": backend,
            "conversations_table": cls.CONVERSATIONS_TABLE,
            "messages_table": cls.MESSAGES_TABLE,
        }

        if backend == "postgrest":
            return {
                **base_config,
                "base_url": f"{cls.SUPABASE_URL}/rest/v1",
                "api_key": cls.SUPABASE_ANON_KEY,
            }
        elif backend == "postgres":
            return {
                **base_config,
                "dsn": cls.DATABASE_URL,
            }

        raise ConfigError(f"Unknown store backend: {backend}")

    @classmethod
    def chat_function_url(cls) -> str:
        """Full URL of the streaming chat edge function."""
        return f"{cls.SUPABASE_URL}/functions/v1/{cls.CHAT_FUNCTION_NAME}"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging to stdout."""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


# Singleton config instance
config = Config()
