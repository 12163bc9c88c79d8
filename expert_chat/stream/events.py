"""
Stream events and the parser that turns framed lines into them.

Each significant line looks like ``data: <json>``. Three payload shapes
share the stream:

* ``{"choices": [{"delta": {"content": "..."}}]}``: assistant text
* ``{"type": "tutorials", "tutorials": [...]}``: suggestions
* ``{"type": "conversation", "conversationId": ...}``: session binding

``data: [DONE]`` ends the stream explicitly.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from expert_chat.errors import ProtocolError
from expert_chat.models import Suggestion

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

TUTORIALS_TYPE = "tutorials"
CONVERSATION_TYPE = "conversation"


@dataclass(frozen=True)
class TextDelta:
    """An incremental fragment of assistant output."""
    text: str


@dataclass(frozen=True)
class SessionAssigned:
    """The server created or resolved the conversation id."""
    session_id: str


@dataclass(frozen=True)
class SuggestionsAttached:
    """Suggestions for the message currently being streamed."""
    items: tuple[Suggestion, ...]


@dataclass(frozen=True)
class StreamEnded:
    """Explicit end of stream."""


@dataclass(frozen=True)
class Malformed:
    """A framed line whose payload could not be decoded."""
    raw: str
    reason: str

    def to_error(self) -> ProtocolError:
        return ProtocolError(self.reason, raw=self.raw)


StreamEvent = Union[TextDelta, SessionAssigned, SuggestionsAttached, StreamEnded, Malformed]


class EventParser:
    """Classifies decoded lines into stream events."""

    def __init__(self, prefix: str = DATA_PREFIX, sentinel: str = DONE_SENTINEL):
        self.prefix = prefix
        self.sentinel = sentinel

    def parse(self, line: str) -> Optional[StreamEvent]:
        """
        Parse one line.

        Returns None for lines that carry no event (no prefix, unknown
        payload type, delta without text). Never raises on bad payloads:
        those come back as ``Malformed``.
        """
        if not line.startswith(self.prefix):
            return None

        payload = line[len(self.prefix):].strip()

        # The sentinel is not JSON, check it first
        if payload == self.sentinel:
            return StreamEnded()

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            return Malformed(raw=line, reason=f"invalid JSON: {e.msg}")

        if not isinstance(data, dict):
            return Malformed(raw=line, reason=f"expected an object, got {type(data).__name__}")

        event_type = data.get("type")
        if event_type == TUTORIALS_TYPE:
            return self._parse_tutorials(line, data)
        if event_type == CONVERSATION_TYPE:
            return self._parse_conversation(line, data)
        if "choices" in data:
            return self._parse_delta(line, data)

        logger.debug(f"Ignoring payload with unknown type: {event_type!r}")
        return None

    def _parse_tutorials(self, line: str, data: dict) -> StreamEvent:
        raw_items = data.get("tutorials")
        if raw_items is None:
            raw_items = []
        if not isinstance(raw_items, list):
            return Malformed(raw=line, reason="tutorials is not a list")
        items = []
        for index, item in enumerate(raw_items):
            try:
                items.append(Suggestion.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping invalid tutorial at position {index}: {e.error_count()} error(s)")
        return SuggestionsAttached(items=tuple(items))

    def _parse_conversation(self, line: str, data: dict) -> StreamEvent:
        conversation_id = data.get("conversationId")
        if conversation_id is None or conversation_id == "":
            return Malformed(raw=line, reason="conversation event without conversationId")
        if not isinstance(conversation_id, (str, int)) or isinstance(conversation_id, bool):
            return Malformed(raw=line, reason="conversationId is not a string")
        return SessionAssigned(session_id=str(conversation_id))

    def _parse_delta(self, line: str, data: dict) -> Optional[StreamEvent]:
        content = _delta_content(data)
        if content is None or content == "":
            return None
        if not isinstance(content, str):
            return Malformed(raw=line, reason="delta content is not a string")
        return TextDelta(text=content)


def _delta_content(data: dict) -> Any:
    """choices[0].delta.content, or None at the first missing level."""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    return delta.get("content")
