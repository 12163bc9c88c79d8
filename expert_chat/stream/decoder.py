"""
Line framing for the chat event stream.

Chunks arrive with arbitrary boundaries, including in the middle of a
multi-byte character or between ``\\r`` and ``\\n``. The decoder keeps both
the undecoded byte tail and the unterminated text tail, so the lines it
emits depend only on the bytes, never on how they were chunked.
"""

import codecs
import logging

logger = logging.getLogger(__name__)

COMMENT_MARKER = ":"


class FrameDecoder:
    """Incremental bytes -> complete lines."""

    def __init__(self, encoding: str = "utf-8", comment_marker: str = COMMENT_MARKER):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._comment_marker = comment_marker
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text received after the last line terminator."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """Decode a chunk and return every line it completes."""
        if not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        return self._drain()

    def flush(self) -> list[str]:
        """
        Finish decoding at end of input.

        An unterminated final line is emitted as if it had been terminated.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        lines = self._drain()
        tail, self._buffer = self._buffer, ""
        if tail:
            logger.debug("Flushing unterminated final line (%d chars)", len(tail))
            line = self._clean(tail)
            if line is not None:
                lines.append(line)
        return lines

    def _drain(self) -> list[str]:
        *complete, self._buffer = self._buffer.split("\n")
        lines = []
        for raw in complete:
            line = self._clean(raw)
            if line is not None:
                lines.append(line)
        return lines

    def _clean(self, raw: str):
        if raw.endswith("\r"):
            raw = raw[:-1]
        if not raw.strip() or raw.startswith(self._comment_marker):
            return None
        return raw
