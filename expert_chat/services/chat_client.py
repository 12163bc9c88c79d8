"""
HTTP client for the streaming chat endpoint.
"""

import logging
from typing import Optional

import httpx

from expert_chat.config import Config
from expert_chat.errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Could not connect to the expert"


class ExpertChatClient:
    """Opens streaming chat responses."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.url = url or Config.chat_function_url()
        self.api_key = api_key if api_key is not None else Config.SUPABASE_ANON_KEY
        # Read timeout is disabled: stalls are detected by the stream consumer
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=connect_timeout or Config.HTTP_CONNECT_TIMEOUT,
                read=None,
                write=30.0,
                pool=30.0,
            )
        )

    async def open_stream(self, payload: dict, access_token: str) -> httpx.Response:
        """
        POST the chat payload and return the streaming response.

        The caller owns the response and must close it.

        Raises:
            TransportError: The request failed or the endpoint answered
                with an error status.
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {access_token}",
        }
        if self.api_key:
            headers["apikey"] = self.api_key

        request = self.client.build_request("POST", self.url, json=payload, headers=headers)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Chat request failed: {e}")
            raise TransportError(f"{DEFAULT_ERROR_MESSAGE}: {e}") from e

        if response.is_error:
            try:
                await response.aread()
            finally:
                await response.aclose()
            message = self._error_message(response)
            logger.error(f"Chat endpoint returned {response.status_code}: {message}")
            raise TransportError(message, status_code=response.status_code)

        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"{DEFAULT_ERROR_MESSAGE} (HTTP {response.status_code})"

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
