"""
Store backend registry.
"""

import logging
from typing import Optional

from expert_chat.config import Config
from expert_chat.errors import ConfigError
from expert_chat.store.base import RemoteStore, TokenProvider
from expert_chat.store.postgres import PostgresStore
from expert_chat.store.postgrest import PostgrestStore

logger = logging.getLogger(__name__)

_backends: dict[str, type[RemoteStore]] = {
    "postgrest": PostgrestStore,
    "postgres": PostgresStore,
}


def list_backends() -> list[str]:
    """List all registered backend names."""
    return list(_backends.keys())


def get_remote_store(
    owner_id: str,
    token_provider: Optional[TokenProvider] = None,
) -> RemoteStore:
    """
    Build the configured remote store for one user.

    Args:
        owner_id: Id of the user whose conversations are managed.
        token_provider: Returns the user's access token (postgrest only).

    Raises:
        ConfigError: If the backend is unknown or not configured.
    """
    Config.validate_store_config()
    settings = Config.get_store_config()
    backend = settings["backend"]

    kwargs = {
        "conversations_table": settings["conversations_table"],
        "messages_table": settings["messages_table"],
    }
    if backend == "postgrest":
        if token_provider is None:
            raise ConfigError("The postgrest store needs an access token provider")
        kwargs.update(
            base_url=settings["base_url"],
            api_key=settings["api_key"],
            token_provider=token_provider,
        )
    else:
        kwargs.update(dsn=settings["dsn"], owner_id=owner_id)

    store = _backends[backend](**kwargs)

    logger.info(f"Initialized {backend} conversation store")
    return store
