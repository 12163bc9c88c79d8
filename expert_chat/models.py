"""
Data models for conversations, messages and stream attachments.
"""

from datetime import datetime
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

# Stored in place of the image when only the upload itself was recorded
IMAGE_UPLOADED_MARKER = "image_uploaded"


class Suggestion(BaseModel):
    """A related tutorial suggested alongside an assistant answer."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    url: Optional[str] = None
    thumbnail: Optional[str] = None
    slug: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class Attachment(BaseModel):
    """References to files sent with a user message."""
    image_ref: Optional[str] = None
    document_name: Optional[str] = None
    document_url: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.image_ref or self.document_name or self.document_url)


class Message(BaseModel):
    """One chat message."""
    role: Literal["user", "assistant"]
    content: str
    attachments: Optional[Attachment] = None
    suggestions: Optional[list[Suggestion]] = None

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        """Build a message from a stored message row."""
        image_url = row.get("image_url")
        if image_url == IMAGE_UPLOADED_MARKER:
            image_url = None

        attachments = Attachment(
            image_ref=image_url,
            document_name=row.get("document_name"),
            document_url=row.get("document_url"),
        )
        suggestions = row.get("suggested_tutorials") or None

        return cls(
            role=row["role"],
            content=row.get("content") or "",
            attachments=None if attachments.is_empty() else attachments,
            suggestions=suggestions,
        )


class ConversationSummary(BaseModel):
    """Sidebar entry for one conversation."""
    id: str
    title: str
    updated_at: datetime
    vehicle_context: Optional[Any] = None
    is_pinned: bool = False
    last_message_preview: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # asyncpg hands back UUID objects
        if not isinstance(value, str) and value is not None:
            return str(value)
        return value

    @field_validator("is_pinned", mode="before")
    @classmethod
    def _null_is_unpinned(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("title", mode="before")
    @classmethod
    def _null_title(cls, value: Any) -> Any:
        return "" if value is None else value


class DocumentAttachment(BaseModel):
    """A document attached to an outgoing message, already read by the caller."""
    name: str
    text: Optional[str] = None

    def render(self) -> str:
        """Text appended to the outgoing user content."""
        if self.text:
            return f"--- Attached document: {self.name} ---\n{self.text}"
        return f"[Attached document: {self.name}]"


class DiagnosticCode(BaseModel):
    """An OBD trouble code selected by the user."""
    code: str
    description: str
    priority: Literal["critical", "attention", "preventive"]
    severity: int


def summary_sort_key(summary: ConversationSummary) -> tuple:
    """Pinned first, then most recently updated."""
    return (not summary.is_pinned, -summary.updated_at.timestamp())


def sort_summaries(summaries: Iterable[ConversationSummary]) -> list[ConversationSummary]:
    """Return summaries in display order."""
    return sorted(summaries, key=summary_sort_key)
