"""
PostgreSQL store backend.

Talks to the database directly through asyncpg. The row-level access
policy of the hosted store is reproduced here: every statement on the
conversations table is constrained to ``user_id = <owner>``, and every
statement on the messages table to conversations of that owner. Rows of
other users are filtered out, never rejected.
"""

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg

from expert_chat.errors import StoreError
from expert_chat.store.base import Filters, OrderBy, RemoteStore

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _ident(name: str) -> str:
    """Quote a table or column name after checking it."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def affected_rows(status: str) -> int:
    """Row count from a command status tag such as 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


class PostgresStore(RemoteStore):
    """
    Async PostgreSQL store scoped to one owner.
    """

    def __init__(
        self,
        dsn: str,
        owner_id: str,
        conversations_table: str = "expert_conversations",
        messages_table: str = "expert_messages",
    ):
        super().__init__(conversations_table, messages_table)
        self.dsn = dsn
        self.owner_id = owner_id
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> asyncpg.Pool:
        """Get or create connection pool."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=5,
                command_timeout=60,
                init=_init_connection,
            )
            logger.info("PostgreSQL connection pool created")
        return self._pool

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    @asynccontextmanager
    async def acquire(self):
        """Context manager for acquiring a connection."""
        pool = await self.connect()
        async with pool.acquire() as conn:
            yield conn

    # =========================================================================
    # Query building
    # =========================================================================

    def _where(self, table: str, filters: Optional[Filters], args: list) -> str:
        clauses = []
        for column, value in (filters or {}).items():
            if value is None:
                clauses.append(f"{_ident(column)} IS NULL")
            else:
                args.append(value)
                clauses.append(f"{_ident(column)} = ${len(args)}")

        args.append(self.owner_id)
        owner = f"${len(args)}"
        if table == self.conversations_table:
            clauses.append(f'"user_id" = {owner}')
        elif table == self.messages_table:
            clauses.append(
                f'"conversation_id" IN (SELECT "id" FROM {_ident(self.conversations_table)} '
                f'WHERE "user_id" = {owner})'
            )
        else:
            raise ValueError(f"Unknown table: {table!r}")

        return " AND ".join(clauses)

    async def _run(self, operation: str, coro_factory) -> Any:
        try:
            async with self.acquire() as conn:
                return await coro_factory(conn)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"{operation} failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    # =========================================================================
    # Operations
    # =========================================================================

    async def select(
        self,
        table: str,
        columns: list[str],
        filters: Optional[Filters] = None,
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        args: list = []
        query = (
            f"SELECT {', '.join(_ident(c) for c in columns)} FROM {_ident(table)} "
            f"WHERE {self._where(table, filters, args)}"
        )
        if order:
            query += " ORDER BY " + ", ".join(
                f"{_ident(column)} {'DESC' if descending else 'ASC'}" for column, descending in order
            )
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"

        rows = await self._run(f"SELECT {table}", lambda conn: conn.fetch(query, *args))
        return [dict(row) for row in rows]

    async def insert(self, table: str, values: dict, returning: list[str]) -> dict:
        if table == self.conversations_table:
            values = {**values, "user_id": self.owner_id}
        elif table != self.messages_table:
            raise ValueError(f"Unknown table: {table!r}")

        columns = list(values)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = (
            f"INSERT INTO {_ident(table)} ({', '.join(_ident(c) for c in columns)}) "
            f"VALUES ({placeholders}) "
            f"RETURNING {', '.join(_ident(c) for c in returning)}"
        )
        row = await self._run(
            f"INSERT {table}", lambda conn: conn.fetchrow(query, *values.values())
        )
        if row is None:
            raise StoreError(f"Insert into {table} returned no row")
        return dict(row)

    async def update(self, table: str, values: dict, filters: Filters) -> int:
        args = list(values.values())
        assignments = ", ".join(f"{_ident(c)} = ${i}" for i, c in enumerate(values, start=1))
        query = f"UPDATE {_ident(table)} SET {assignments} WHERE {self._where(table, filters, args)}"
        status = await self._run(f"UPDATE {table}", lambda conn: conn.execute(query, *args))
        return affected_rows(status)

    async def delete(self, table: str, filters: Filters) -> int:
        args: list = []
        query = f"DELETE FROM {_ident(table)} WHERE {self._where(table, filters, args)}"
        status = await self._run(f"DELETE {table}", lambda conn: conn.execute(query, *args))
        return affected_rows(status)
