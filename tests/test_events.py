"""
Unit tests for the stream event parser.
"""

import json
import logging
from unittest.mock import patch

import pytest

from expert_chat.errors import ProtocolError
from expert_chat.models import Suggestion
from expert_chat.stream.events import (
    EventParser,
    Malformed,
    SessionAssigned,
    StreamEnded,
    SuggestionsAttached,
    TextDelta,
)


@pytest.fixture
def event_parser() -> EventParser:
    return EventParser()


class TestEventParserFraming:
    """Tests for prefix and sentinel handling."""

    @pytest.mark.parametrize("line", ["event: message", "id: 42", "retry: 1000", "hello"])
    def test_lines_without_prefix_are_ignored(self, event_parser: EventParser, line: str):
        """Test lines without the data prefix carry no event."""
        assert event_parser.parse(line) is None

    @pytest.mark.parametrize("line", ["data: [DONE]", "data:[DONE]", "data: [DONE]   "])
    def test_done_sentinel(self, event_parser: EventParser, line: str):
        """Test the sentinel ends the stream."""
        assert event_parser.parse(line) == StreamEnded()

    def test_sentinel_checked_before_json_decode(self, event_parser: EventParser):
        """The sentinel is recognised without ever calling the JSON decoder."""
        with patch("expert_chat.stream.events.json.loads", side_effect=AssertionError("decoded")):
            assert event_parser.parse("data: [DONE]") == StreamEnded()

    def test_custom_prefix_and_sentinel(self):
        """Test parser honours a custom prefix and sentinel."""
        custom = EventParser(prefix="payload=", sentinel="END")
        assert custom.parse("payload=END") == StreamEnded()
        assert custom.parse("data: [DONE]") is None


class TestEventParserTextDeltas:
    """Tests for chat-completion delta payloads."""

    def test_text_delta(self, event_parser: EventParser):
        """Test delta content becomes a TextDelta."""
        line = 'data: {"choices":[{"delta":{"content":"Hel"}}]}'
        assert event_parser.parse(line) == TextDelta(text="Hel")

    def test_whitespace_content_is_kept(self, event_parser: EventParser):
        """Test whitespace-only content is kept as text."""
        line = 'data: {"choices":[{"delta":{"content":"  "}}]}'
        assert event_parser.parse(line) == TextDelta(text="  ")

    @pytest.mark.parametrize("payload", [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": ""}}]},
        {"choices": [{"delta": {"content": None}}]},
        {"choices": [{"finish_reason": "stop"}]},
        {"choices": []},
    ])
    def test_delta_without_text_is_not_an_event(self, event_parser: EventParser, payload: dict):
        """Missing text means 'no text this event', not an error."""
        assert event_parser.parse(f"data: {json.dumps(payload)}") is None

    def test_non_string_content_is_malformed(self, event_parser: EventParser):
        """Test non-string delta content is malformed."""
        event = event_parser.parse('data: {"choices":[{"delta":{"content":42}}]}')
        assert isinstance(event, Malformed)


class TestEventParserMalformed:
    """Malformed payloads are reported, never raised."""

    @pytest.mark.parametrize("line", [
        'data: {"choices": [',
        "data: not json",
        "data: {'single': 'quotes'}",
        "data:",
    ])
    def test_invalid_json(self, event_parser: EventParser, line: str):
        """Test invalid JSON is reported as malformed."""
        event = event_parser.parse(line)
        assert isinstance(event, Malformed)
        assert event.raw == line
        assert "invalid JSON" in event.reason

    @pytest.mark.parametrize("line", ["data: 42", "data: [1, 2]", 'data: "text"', "data: null"])
    def test_non_object_payload(self, event_parser: EventParser, line: str):
        """Test JSON that is not an object is malformed."""
        assert isinstance(event_parser.parse(line), Malformed)

    def test_unknown_type_is_ignored(self, event_parser: EventParser):
        """Test unknown payload types carry no event."""
        assert event_parser.parse('data: {"type":"heartbeat"}') is None


class TestEventParserSideChannels:
    """Tests for suggestion and session payloads."""

    def test_tutorials(self, event_parser: EventParser, sample_tutorials: list[dict]):
        """Test tutorials payload becomes ordered suggestions."""
        line = "data: " + json.dumps({"type": "tutorials", "tutorials": sample_tutorials})
        event = event_parser.parse(line)

        assert isinstance(event, SuggestionsAttached)
        assert [s.id for s in event.items] == ["t1", "t2"]
        assert event.items[0] == Suggestion(**sample_tutorials[0])
        assert event.items[1].slug == "bleed-brakes"

    def test_tutorials_numeric_id(self, event_parser: EventParser):
        """Test numeric tutorial ids are turned into strings."""
        event = event_parser.parse('data: {"type":"tutorials","tutorials":[{"id":7,"name":"Spark plugs"}]}')
        assert event.items[0].id == "7"

    def test_tutorials_missing_list(self, event_parser: EventParser):
        """Test a tutorials payload without a list gives no suggestions."""
        assert event_parser.parse('data: {"type":"tutorials"}') == SuggestionsAttached(items=())

    def test_tutorials_invalid_items_are_skipped(self, event_parser: EventParser, caplog):
        """Test invalid tutorial items are dropped and the valid ones kept."""
        line = 'data: {"type":"tutorials","tutorials":[{"id":"t1"},"oops",{"id":"t2","name":"Brake fluid"}]}'

        with caplog.at_level(logging.WARNING):
            event = event_parser.parse(line)

        assert isinstance(event, SuggestionsAttached)
        assert [s.id for s in event.items] == ["t2"]
        assert "Skipping invalid tutorial at position 0" in caplog.text
        assert "position 1" in caplog.text

    def test_tutorials_not_a_list(self, event_parser: EventParser):
        """Test a tutorials value that is not a list is malformed."""
        event = event_parser.parse('data: {"type":"tutorials","tutorials":{"id":"t1"}}')
        assert isinstance(event, Malformed)

    def test_conversation(self, event_parser: EventParser):
        """Test conversation payload assigns the session id."""
        event = event_parser.parse('data: {"type":"conversation","conversationId":"9b2f"}')
        assert event == SessionAssigned(session_id="9b2f")

    @pytest.mark.parametrize("payload", [
        {"type": "conversation"},
        {"type": "conversation", "conversationId": ""},
        {"type": "conversation", "conversationId": ["x"]},
    ])
    def test_conversation_without_id(self, event_parser: EventParser, payload: dict):
        """Test conversation payload without a usable id is malformed."""
        assert isinstance(event_parser.parse(f"data: {json.dumps(payload)}"), Malformed)

    def test_malformed_as_protocol_error(self, event_parser: EventParser):
        """Test malformed events convert to ProtocolError."""
        line = "data: {oops"
        error = event_parser.parse(line).to_error()

        assert isinstance(error, ProtocolError)
        assert error.raw == line
        assert "invalid JSON" in str(error)
