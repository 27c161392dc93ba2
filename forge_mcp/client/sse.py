"""
Incremental Server-Sent Events parser for streamed tool output.
"""

import codecs
import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)


def _as_event(payload: str) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("SSE payload is not JSON, delivering as text")
        return {"content": [{"type": "text", "text": payload}]}
    if not isinstance(event, dict):
        return {"content": [{"type": "text", "text": payload}]}
    return event


class SSEParser:
    """
    Turns a byte or text stream into decoded events.

    An event ends at a blank line. ``data:`` lines of one event are
    concatenated before JSON decoding, so a payload may be split across
    several lines. Payloads that are not JSON objects arrive wrapped as a
    single text content block. An event identical to the previous one is
    dropped.
    """

    def __init__(self, deduplicate: bool = True):
        self.deduplicate = deduplicate
        self._buffer = ""
        self._pending_cr = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._last_payload: Optional[str] = None
        self.last_event_type: Optional[str] = None

    def feed(self, chunk: Union[str, bytes]) -> Iterator[Dict[str, Any]]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._append(chunk)

        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse_block(block)
            if event is not None:
                yield event

    def flush(self) -> Iterator[Dict[str, Any]]:
        """Emit whatever is left in the buffer once the stream has ended."""
        self._append(self._decoder.decode(b"", final=True), final=True)
        block, self._buffer = self._buffer, ""
        if not block.strip():
            return
        event = self._parse_block(block)
        if event is None and "data:" not in block:
            # servers that skip SSE framing on the final chunk
            event = self._emit(block.strip())
        if event is not None:
            yield event

    def _append(self, text: str, final: bool = False) -> None:
        if self._pending_cr:
            text = "\r" + text
        # a CR at the end of a chunk may be the first half of CRLF
        self._pending_cr = not final and text.endswith("\r")
        if self._pending_cr:
            text = text[:-1]
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

    def _parse_block(self, block: str) -> Optional[Dict[str, Any]]:
        data: List[str] = []
        event_type = None
        for line in block.split("\n"):
            if line.startswith(":"):
                continue
            if line.startswith("data:"):
                part = line[5:]
                data.append(part[1:] if part.startswith(" ") else part)
            elif line.startswith("event:"):
                event_type = line[6:].strip()
        if not data:
            return None
        self.last_event_type = event_type
        return self._emit("".join(data))

    def _emit(self, payload: str) -> Optional[Dict[str, Any]]:
        if not payload:
            return None
        if self.deduplicate and payload == self._last_payload:
            return None
        self._last_payload = payload
        return _as_event(payload)
