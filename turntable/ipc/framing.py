"""
Line framing for the engine's JSON IPC protocol.

The engine speaks newline-delimited JSON: one object per line in both
directions. LineFramer turns arbitrary byte chunks read from the control
socket into whole messages; encode_message() builds outgoing frames.

Protocol messages are independent, so a corrupt line is logged and dropped
without desynchronizing the lines that follow it.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

# Upper bound on a partial line held while waiting for its newline
MAX_PARTIAL_LINE_BYTES = 1024 * 1024


def encode_message(command: List[Any], request_id: int) -> bytes:
    """
    Serialize a wire command array into one framed message.

    Args:
        command: Wire array, verb first (e.g. ["set_property", "pause", True])
        request_id: Correlation id echoed back by the engine in its reply

    Returns:
        UTF-8 bytes of the JSON object followed by a single newline
    """
    payload = {"command": command, "request_id": request_id}
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


class LineFramer:
    """
    Accumulates socket bytes and yields complete JSON messages.

    Not thread-safe; owned by the single reader thread of one session.
    """

    def __init__(self, max_partial_bytes: int = MAX_PARTIAL_LINE_BYTES) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._max_partial_bytes = max_partial_bytes
        self.dropped_lines = 0

    @property
    def pending(self) -> str:
        """Text received after the last newline."""
        return self._buffer

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """
        Append a chunk and extract every complete message it finishes.

        Args:
            data: Raw bytes as read from the socket (any size, any boundary)

        Returns:
            Parsed messages in arrival order; malformed lines are skipped
        """
        self._buffer += self._decoder.decode(data)
        messages: List[Dict[str, Any]] = []

        while True:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break
            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1:]
            message = self._parse_line(line)
            if message is not None:
                messages.append(message)

        if len(self._buffer) > self._max_partial_bytes:
            logger.warning(
                f"Partial line exceeded {self._max_partial_bytes} bytes without newline, discarding"
            )
            self._buffer = ""
            self.dropped_lines += 1

        return messages

    def _parse_line(self, line: str):
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            self.dropped_lines += 1
            logger.warning(f"Failed to parse engine message: {line[:200]!r} ({e})")
            return None
        if not isinstance(message, dict):
            self.dropped_lines += 1
            logger.warning(f"Dropping non-object engine message: {line[:200]!r}")
            return None
        return message

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""
