"""
Remote relational store interface.

The store exposes select/insert/update/delete over two tables:
conversation summaries and their messages. Access is enforced on the
remote side by filtering rows, so mutations report how many rows they
actually changed and callers must treat zero as a failure of its own.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

# Equality filters: column -> value
Filters = dict[str, Any]

# (column, descending) pairs, applied in order
OrderBy = list[tuple[str, bool]]

# Async callable returning the current user's access token, or None
TokenProvider = Callable[[], Awaitable[Optional[str]]]

SUMMARY_COLUMNS = [
    "id",
    "title",
    "updated_at",
    "vehicle_context",
    "is_pinned",
    "last_message_preview",
]

MESSAGE_COLUMNS = [
    "role",
    "content",
    "image_url",
    "document_url",
    "document_name",
    "suggested_tutorials",
]


class RemoteStore(ABC):
    """Abstract base class for remote store backends."""

    def __init__(
        self,
        conversations_table: str = "expert_conversations",
        messages_table: str = "expert_messages",
    ):
        self.conversations_table = conversations_table
        self.messages_table = messages_table

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: list[str],
        filters: Optional[Filters] = None,
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """
        Fetch rows.

        Args:
            table: Table name.
            columns: Columns to return.
            filters: Equality filters, all of which must match.
            order: Sort order as (column, descending) pairs.
            limit: Maximum number of rows.

        Returns:
            The visible matching rows as dicts.
        """
        pass

    @abstractmethod
    async def insert(self, table: str, values: dict, returning: list[str]) -> dict:
        """
        Insert one row and return the requested columns of it.
        """
        pass

    @abstractmethod
    async def update(self, table: str, values: dict, filters: Filters) -> int:
        """
        Update matching rows.

        Returns:
            Number of rows actually changed. Rows hidden by the access
            policy are not counted.
        """
        pass

    @abstractmethod
    async def delete(self, table: str, filters: Filters) -> int:
        """
        Delete matching rows.

        Returns:
            Number of rows actually deleted.
        """
        pass

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None
