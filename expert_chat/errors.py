"""
Error taxonomy for the chat stream and the conversation store.

Transport and protocol problems come from the stream side; permission and
validation failures come from conversation mutations. The UI tells them
apart by type.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for all expert chat errors."""


class ConfigError(ChatError, ValueError):
    """Raised when the configuration cannot be used."""


class TransportError(ChatError):
    """
    The stream (or the request that opens it) failed.

    Whatever assistant text had already arrived is kept in
    ``partial_content`` so the caller can still show it.
    """

    def __init__(self, cause: str, partial_content: str = "", status_code: Optional[int] = None):
        super().__init__(cause)
        self.cause = cause
        self.partial_content = partial_content
        self.status_code = status_code

    @property
    def has_partial_content(self) -> bool:
        return bool(self.partial_content)


class StreamTimeoutError(TransportError):
    """No chunk arrived within the inactivity window."""


class ProtocolError(ChatError):
    """A framed line carried a payload that could not be understood."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class PermissionDeniedError(ChatError):
    """
    A mutation changed zero rows.

    The remote store filters rows the caller may not touch instead of
    rejecting the request, so "nothing changed" means "not allowed or not
    found".
    """

    def __init__(self, message: str, conversation_id: Optional[str] = None):
        super().__init__(message)
        self.conversation_id = conversation_id


class ValidationError(ChatError):
    """Input rejected locally, before any remote call."""


class StoreError(ChatError):
    """The remote store request itself failed (network, HTTP or SQL)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotAuthenticatedError(ChatError):
    """No access token is available for the current user."""
