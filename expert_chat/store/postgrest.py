"""
PostgREST (Supabase REST) store backend.

Row-level security on the server silently hides rows the user does not
own. Mutations ask for the changed rows back (``Prefer:
return=representation``) and count them to learn how many rows were
really affected.
"""

import logging
from typing import Any, Optional

import httpx

from expert_chat.errors import NotAuthenticatedError, StoreError
from expert_chat.store.base import Filters, OrderBy, RemoteStore, TokenProvider

logger = logging.getLogger(__name__)

RETURN_REPRESENTATION = "return=representation"


def _encode_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _filter_params(filters: Optional[Filters]) -> list[tuple[str, str]]:
    return [(column, _encode_value(value)) for column, value in (filters or {}).items()]


def _order_param(order: OrderBy) -> str:
    return ",".join(f"{column}.{'desc' if descending else 'asc'}" for column, descending in order)


class PostgrestStore(RemoteStore):
    """Remote store backed by a PostgREST endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        token_provider: TokenProvider,
        conversations_table: str = "expert_conversations",
        messages_table: str = "expert_messages",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        super().__init__(conversations_table, messages_table)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.token_provider = token_provider
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        token = await self.token_provider()
        if not token:
            raise NotAuthenticatedError("You need to be logged in to access conversations")
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: list[tuple[str, str]],
        json: Optional[dict] = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = await self._headers(prefer)
        url = f"{self.base_url}/{table}"
        try:
            response = await self.client.request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"{method} {table} failed: {e}")
            raise StoreError(f"Could not reach the conversation store: {e}") from e

        if response.is_error:
            message = self._error_message(response)
            logger.error(f"{method} {table} returned {response.status_code}: {message}")
            raise StoreError(message, status_code=response.status_code)

        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"Conversation store error (HTTP {response.status_code})"

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict]:
        if not response.content:
            return []
        data = response.json()
        return data if isinstance(data, list) else [data]

    async def select(
        self,
        table: str,
        columns: list[str],
        filters: Optional[Filters] = None,
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        params = [("select", ",".join(columns))]
        params.extend(_filter_params(filters))
        if order:
            params.append(("order", _order_param(order)))
        if limit is not None:
            params.append(("limit", str(limit)))

        response = await self._request("GET", table, params)
        return self._rows(response)

    async def insert(self, table: str, values: dict, returning: list[str]) -> dict:
        params = [("select", ",".join(returning))]
        response = await self._request(
            "POST", table, params, json=values, prefer=RETURN_REPRESENTATION
        )
        rows = self._rows(response)
        if not rows:
            raise StoreError(f"Insert into {table} returned no row")
        return rows[0]

    async def update(self, table: str, values: dict, filters: Filters) -> int:
        params = [("select", "id")] + _filter_params(filters)
        response = await self._request(
            "PATCH", table, params, json=values, prefer=RETURN_REPRESENTATION
        )
        return len(self._rows(response))

    async def delete(self, table: str, filters: Filters) -> int:
        params = [("select", "id")] + _filter_params(filters)
        response = await self._request("DELETE", table, params, prefer=RETURN_REPRESENTATION)
        return len(self._rows(response))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
