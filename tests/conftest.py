"""
Pytest configuration and shared fixtures for expert chat tests.
"""

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from expert_chat.errors import StoreError
from expert_chat.notifications import Notifier
from expert_chat.services.session_store import SessionStore
from expert_chat.store.base import Filters, OrderBy, RemoteStore

OWNER_ID = "user-1"
OTHER_USER_ID = "user-2"


def _ts(day: int) -> datetime:
    return datetime(2026, 10, day, 12, 0, tzinfo=timezone.utc)


class FakeRemoteStore(RemoteStore):
    """
    In-memory remote store that filters rows like the hosted access policy:
    rows of other users are invisible to reads and untouched by writes.
    """

    def __init__(self, owner_id: str = OWNER_ID):
        super().__init__()
        self.owner_id = owner_id
        self.tables: dict[str, list[dict]] = {
            self.conversations_table: [],
            self.messages_table: [],
        }
        self.calls: list[tuple[str, str, dict]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self._next_id = 100

    def _record(self, operation: str, table: str, **details: Any) -> None:
        self.calls.append((operation, table, details))
        failure = self.failures.get((operation, table))
        if failure is not None:
            raise failure

    def _visible(self, table: str, row: dict) -> bool:
        if table == self.conversations_table:
            return row.get("user_id") == self.owner_id
        owned = {
            r["id"] for r in self.tables[self.conversations_table]
            if r.get("user_id") == self.owner_id
        }
        return row.get("conversation_id") in owned

    def _matching(self, table: str, filters: Optional[Filters]) -> list[dict]:
        return [
            row for row in self.tables[table]
            if self._visible(table, row)
            and all(row.get(column) == value for column, value in (filters or {}).items())
        ]

    def calls_for(self, operation: str, table: Optional[str] = None) -> list[tuple[str, str, dict]]:
        return [c for c in self.calls if c[0] == operation and (table is None or c[1] == table)]

    async def select(
        self,
        table: str,
        columns: list[str],
        filters: Optional[Filters] = None,
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        self._record("select", table, filters=filters, order=order, limit=limit)
        await asyncio.sleep(0)
        rows = self._matching(table, filters)
        for column, descending in reversed(order or []):
            rows = sorted(rows, key=lambda r: r.get(column), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [{column: row.get(column) for column in columns} for row in rows]

    async def insert(self, table: str, values: dict, returning: list[str]) -> dict:
        self._record("insert", table, values=values)
        await asyncio.sleep(0)
        if table == self.conversations_table and values.get("user_id") != self.owner_id:
            raise StoreError("new row violates row-level security policy", status_code=403)
        row = {
            "id": f"conv-{self._next_id}",
            "updated_at": datetime.now(timezone.utc),
            "is_pinned": False,
            "last_message_preview": None,
            **values,
        }
        self._next_id += 1
        self.tables[table].append(row)
        return {column: row.get(column) for column in returning}

    async def update(self, table: str, values: dict, filters: Filters) -> int:
        self._record("update", table, values=values, filters=filters)
        await asyncio.sleep(0)
        rows = self._matching(table, filters)
        for row in rows:
            row.update(values)
        return len(rows)

    async def delete(self, table: str, filters: Filters) -> int:
        self._record("delete", table, filters=filters)
        await asyncio.sleep(0)
        rows = self._matching(table, filters)
        self.tables[table] = [row for row in self.tables[table] if row not in rows]
        return len(rows)


class RecordingNotifier(Notifier):
    """Keeps every notification in memory, in order."""

    def __init__(self):
        self.notifications: list[tuple[str, str, str]] = []

    def success(self, title: str, message: str) -> None:
        self.notifications.append(("success", title, message))

    def error(self, title: str, message: str) -> None:
        self.notifications.append(("error", title, message))

    @property
    def errors(self) -> list[tuple[str, str]]:
        return [(t, m) for kind, t, m in self.notifications if kind == "error"]

    @property
    def successes(self) -> list[tuple[str, str]]:
        return [(t, m) for kind, t, m in self.notifications if kind == "success"]


class FakeBody:
    """
    Response body yielding the given chunks.

    Optionally sleeps before each chunk, then hangs forever or raises once
    the chunks run out.
    """

    def __init__(
        self,
        chunks: list[bytes],
        error: Optional[Exception] = None,
        hang: bool = False,
        delay: float = 0.0,
    ):
        self.chunks = chunks
        self.error = error
        self.hang = hang
        self.delay = delay
        self.closed = False
        self.chunks_read = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.chunks_read += 1
            yield chunk
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


def frame(payload: Any) -> str:
    """One ``data:`` frame, JSON-encoded unless already a string."""
    if not isinstance(payload, str):
        payload = json.dumps(payload, ensure_ascii=False)
    return f"data: {payload}\n\n"


def delta(text: str) -> str:
    return frame({"choices": [{"delta": {"content": text}}]})


@pytest.fixture
def sse():
    """Helpers that build stream frames."""
    return SimpleNamespace(
        frame=frame,
        delta=delta,
        tutorials=lambda items: frame({"type": "tutorials", "tutorials": items}),
        conversation=lambda cid: frame({"type": "conversation", "conversationId": cid}),
        done=lambda: "data: [DONE]\n\n",
    )


@pytest.fixture
def make_body():
    """Factory for fake response bodies."""
    return FakeBody


@pytest.fixture
def sample_tutorials() -> list[dict]:
    return [
        {"id": "t1", "name": "Replacing brake pads", "brand": "Fiat", "model": "Uno", "category": "brakes"},
        {"id": "t2", "name": "Bleeding the brake fluid", "slug": "bleed-brakes"},
    ]


@pytest.fixture
def remote() -> FakeRemoteStore:
    """Remote store seeded with three own conversations and one foreign."""
    store = FakeRemoteStore()
    store.tables[store.conversations_table] = [
        {
            "id": "c1", "user_id": OWNER_ID, "title": "Brake noise",
            "updated_at": _ts(1), "vehicle_context": {"brand": "Fiat", "model": "Uno", "year": 2015},
            "is_pinned": False, "last_message_preview": "Check the pads first",
        },
        {
            "id": "c2", "user_id": OWNER_ID, "title": "Check engine light",
            "updated_at": _ts(5), "vehicle_context": None,
            "is_pinned": True, "last_message_preview": None,
        },
        {
            "id": "c3", "user_id": OWNER_ID, "title": "Oil change interval",
            "updated_at": _ts(10), "vehicle_context": None,
            "is_pinned": False, "last_message_preview": "Every 10,000 km",
        },
        {
            "id": "c4", "user_id": OTHER_USER_ID, "title": "Someone else's chat",
            "updated_at": _ts(12), "vehicle_context": None,
            "is_pinned": False, "last_message_preview": None,
        },
    ]
    store.tables[store.messages_table] = [
        {
            "id": "m2", "conversation_id": "c1", "role": "assistant",
            "content": "Check the pads first", "image_url": None, "document_url": None,
            "document_name": None, "suggested_tutorials": [{"id": "t1", "name": "Replacing brake pads"}],
            "created_at": _ts(2),
        },
        {
            "id": "m1", "conversation_id": "c1", "role": "user",
            "content": "My brakes squeal", "image_url": "image_uploaded", "document_url": None,
            "document_name": None, "suggested_tutorials": None,
            "created_at": _ts(1),
        },
        {
            "id": "m3", "conversation_id": "c4", "role": "user",
            "content": "Not yours", "image_url": None, "document_url": None,
            "document_name": None, "suggested_tutorials": None,
            "created_at": _ts(12),
        },
    ]
    return store


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def session_store(remote: FakeRemoteStore, notifier: RecordingNotifier) -> SessionStore:
    return SessionStore(remote, owner_id=OWNER_ID, notifier=notifier)
