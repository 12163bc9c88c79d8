"""
Session store: the local list of a user's conversations, kept in sync with
the remote store.

The remote store enforces ownership by filtering rows, so a mutation on a
conversation the user may not touch "succeeds" with zero affected rows.
Every mutation here checks that count and turns zero into
PermissionDeniedError.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from expert_chat.config import Config
from expert_chat.errors import ChatError, PermissionDeniedError, ValidationError
from expert_chat.models import ConversationSummary, Message, sort_summaries
from expert_chat.notifications import Notifier
from expert_chat.store.base import MESSAGE_COLUMNS, SUMMARY_COLUMNS, RemoteStore

logger = logging.getLogger(__name__)


class SessionStore:
    """Cached conversation summaries for one user."""

    def __init__(
        self,
        remote: RemoteStore,
        owner_id: str,
        notifier: Optional[Notifier] = None,
        list_limit: Optional[int] = None,
        default_title: Optional[str] = None,
    ):
        self.remote = remote
        self.owner_id = owner_id
        self.notifier = notifier or Notifier()
        self.list_limit = list_limit or Config.CONVERSATION_LIST_LIMIT
        self.default_title = default_title or Config.DEFAULT_CONVERSATION_TITLE
        self.is_loading = False

        self._cache: list[ConversationSummary] = []
        self._cache_lock = asyncio.Lock()
        # conversation id -> (lock, holders and waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    # =========================================================================
    # Cache access
    # =========================================================================

    @property
    def conversations(self) -> list[ConversationSummary]:
        """Summaries in display order."""
        return list(self._cache)

    def get(self, conversation_id: str) -> Optional[ConversationSummary]:
        return next((s for s in self._cache if s.id == conversation_id), None)

    def filter(self, query: str = "", pinned_only: bool = False) -> list[ConversationSummary]:
        """Case-insensitive title search, display order kept."""
        needle = query.strip().lower()
        return [
            s for s in self._cache
            if (not needle or needle in s.title.lower()) and (not pinned_only or s.is_pinned)
        ]

    def pinned(self) -> list[ConversationSummary]:
        return [s for s in self._cache if s.is_pinned]

    def unpinned(self) -> list[ConversationSummary]:
        return [s for s in self._cache if not s.is_pinned]

    @asynccontextmanager
    async def _locked(self, conversation_id: str):
        """
        Per-conversation lock; mutations on one id run one at a time.

        The lock is dropped once nobody holds or waits for it.
        """
        lock, users = self._locks.get(conversation_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[conversation_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[conversation_id]
            if users == 1:
                del self._locks[conversation_id]
            else:
                self._locks[conversation_id] = (lock, users - 1)

    # =========================================================================
    # Remote operations
    # =========================================================================

    async def load_all(self) -> list[ConversationSummary]:
        """Fetch the user's conversations and replace the cache."""
        self.is_loading = True
        try:
            rows = await self.remote.select(
                self.remote.conversations_table,
                SUMMARY_COLUMNS,
                filters={"user_id": self.owner_id},
                order=[("is_pinned", True), ("updated_at", True)],
                limit=self.list_limit,
            )
        except ChatError as e:
            logger.error(f"Error loading conversations: {e}")
            self.notifier.error("Error", "Could not load your conversations")
            raise
        finally:
            self.is_loading = False

        summaries = sort_summaries(ConversationSummary.model_validate(row) for row in rows)
        async with self._cache_lock:
            self._cache = summaries
        logger.debug(f"Loaded {len(summaries)} conversations")
        return list(summaries)

    async def create(self, vehicle_context: Optional[Any] = None) -> str:
        """
        Create a conversation with the placeholder title.

        Returns:
            The new conversation id.
        """
        try:
            row = await self.remote.insert(
                self.remote.conversations_table,
                {
                    "user_id": self.owner_id,
                    "title": self.default_title,
                    "vehicle_context": vehicle_context,
                },
                returning=["id"],
            )
        except ChatError as e:
            logger.error(f"Error creating conversation: {e}")
            self.notifier.error("Error", "Could not create a new conversation")
            raise

        conversation_id = str(row["id"])
        logger.info(f"Created conversation {conversation_id}")

        try:
            await self.load_all()
        except ChatError as e:
            # The conversation exists; the list catches up on the next load
            logger.warning(f"Conversation {conversation_id} created but list refresh failed: {e}")

        self.notifier.success("New conversation", "Conversation created")
        return conversation_id

    async def rename(self, conversation_id: str, title: str) -> Optional[ConversationSummary]:
        """Rename a conversation. Blank titles never reach the remote store."""
        new_title = (title or "").strip()
        if not new_title:
            raise ValidationError("Conversation title cannot be empty")

        async with self._locked(conversation_id):
            await self._mutate(
                "rename",
                conversation_id,
                lambda: self.remote.update(
                    self.remote.conversations_table,
                    {"title": new_title},
                    {"id": conversation_id},
                ),
            )
            async with self._cache_lock:
                self._cache = [
                    s.model_copy(update={"title": new_title}) if s.id == conversation_id else s
                    for s in self._cache
                ]
                renamed = self.get(conversation_id)

        self.notifier.success("Renamed", "Conversation renamed")
        return renamed

    async def toggle_pin(self, conversation_id: str, is_pinned: Optional[bool] = None) -> bool:
        """
        Flip the pin state of a conversation.

        The current state comes from the cache; ``is_pinned`` is only used
        for conversations that are not cached.

        Returns:
            The new pin state.
        """
        async with self._locked(conversation_id):
            cached = self.get(conversation_id)
            if cached is not None:
                current = cached.is_pinned
            elif is_pinned is not None:
                current = is_pinned
            else:
                raise ValidationError(f"Unknown conversation: {conversation_id}")

            new_state = not current
            await self._mutate(
                "pin" if new_state else "unpin",
                conversation_id,
                lambda: self.remote.update(
                    self.remote.conversations_table,
                    {"is_pinned": new_state},
                    {"id": conversation_id},
                ),
            )
            async with self._cache_lock:
                self._cache = sort_summaries(
                    s.model_copy(update={"is_pinned": new_state}) if s.id == conversation_id else s
                    for s in self._cache
                )

        if new_state:
            self.notifier.success("Pinned", "Conversation pinned to the top")
        else:
            self.notifier.success("Unpinned", "Conversation unpinned")
        return new_state

    async def delete(self, conversation_id: str) -> None:
        """
        Delete a conversation and its messages.

        Messages go first; if that fails the conversation is left alone.
        """
        async with self._locked(conversation_id):
            try:
                deleted_messages = await self.remote.delete(
                    self.remote.messages_table,
                    {"conversation_id": conversation_id},
                )
            except ChatError as e:
                logger.error(f"Error deleting messages of {conversation_id}: {e}")
                self.notifier.error("Error", "Could not delete the conversation")
                raise
            logger.debug(f"Deleted {deleted_messages} messages of {conversation_id}")

            await self._mutate(
                "delete",
                conversation_id,
                lambda: self.remote.delete(
                    self.remote.conversations_table,
                    {"id": conversation_id},
                ),
            )
            async with self._cache_lock:
                self._cache = [s for s in self._cache if s.id != conversation_id]

        self.notifier.success("Deleted", "Conversation deleted")

    async def load_messages(self, conversation_id: str) -> list[Message]:
        """Stored messages of a conversation, oldest first."""
        rows = await self.remote.select(
            self.remote.messages_table,
            MESSAGE_COLUMNS,
            filters={"conversation_id": conversation_id},
            order=[("created_at", False)],
        )
        return [Message.from_row(row) for row in rows]

    async def _mutate(
        self,
        action: str,
        conversation_id: str,
        call: Callable[[], Awaitable[int]],
    ) -> int:
        try:
            affected = await call()
        except ChatError as e:
            logger.error(f"Error trying to {action} conversation {conversation_id}: {e}")
            self.notifier.error("Error", f"Could not {action} the conversation")
            raise

        if affected == 0:
            error = PermissionDeniedError(
                f"Not allowed to {action} this conversation",
                conversation_id=conversation_id,
            )
            logger.warning(f"{action} on {conversation_id} changed no rows")
            self.notifier.error("Error", str(error))
            raise error

        return affected
