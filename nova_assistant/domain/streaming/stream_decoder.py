from typing import Any, AsyncIterator, List, Optional, Union
from enum import Enum
import codecs
import json

import structlog
from pydantic import BaseModel

from nova_assistant.domain.errors import DecodeRecoverable, TransportError

logger = structlog.get_logger(__name__)

DATA_PREFIX = "data: "
COMMENT_PREFIX = ":"
TERMINATOR = "[DONE]"


class StreamEventType(str, Enum):
    """Decoded frame types"""
    DELTA = "delta"
    DONE = "done"


class StreamEvent(BaseModel):
    """One decoded protocol frame"""
    type: StreamEventType
    content: str = ""

    @classmethod
    def delta(cls, content: str) -> "StreamEvent":
        return cls(type=StreamEventType.DELTA, content=content)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(type=StreamEventType.DONE)


def extract_delta(payload: Any) -> Optional[str]:
    """Pull the text fragment out of a chat-completion chunk"""

    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise TransportError(message or "streaming request failed", retryable=False)

    choices = payload.get("choices")
    if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
        return None

    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) and content else None


class StreamDecoder:
    """Incremental decoder for a line-framed completion stream

    Holds only the partial-line buffer of one stream. A data line that fails
    to parse is kept in the buffer until the next complete line arrives, then
    retried once joined with that line when it is a bare continuation, and
    dropped otherwise.
    """

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending: Optional[str] = None
        self.done = False
        self.dropped_lines = 0

    def feed(self, chunk: Union[str, bytes]) -> List[StreamEvent]:
        """Consume one raw chunk and return the events it completes"""

        if self.done:
            return []

        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        events: List[StreamEvent] = []
        while not self.done:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break
            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1:]
            self._process_line(_strip_cr(line), events)

        return events

    def finish(self) -> List[StreamEvent]:
        """Flush the decoder when the transport closes"""

        events: List[StreamEvent] = []
        if self.done:
            return events

        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""

        if tail:
            self._process_line(_strip_cr(tail), events)
        if self._pending is not None and not self.done:
            self._drop(self._pending)
            self._pending = None

        return events

    def _process_line(self, line: str, events: List[StreamEvent]):
        if self._pending is not None:
            pending = self._pending
            self._pending = None

            if _is_continuation(line):
                # Payload split by a stray line break
                if not self._decode_payload(pending + line, events, retry=True):
                    self._drop(pending)
                return

            # Only the joined form can parse; the line alone already failed
            self._drop(pending)

        # Keep-alives and unknown frame types
        if not line.strip() or line.startswith(COMMENT_PREFIX):
            return
        if not line.startswith(DATA_PREFIX):
            return

        payload = line[len(DATA_PREFIX):].strip()
        if payload == TERMINATOR:
            self.done = True
            events.append(StreamEvent.done())
            return

        if not self._decode_payload(payload, events, retry=False):
            # Wait for more data before giving up on this line
            self._pending = payload
            logger.debug("Deferring unparseable stream frame", length=len(payload))

    def _decode_payload(self, payload: str, events: List[StreamEvent], retry: bool) -> bool:
        if payload.strip() == TERMINATOR:
            self.done = True
            events.append(StreamEvent.done())
            return True

        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            return False

        content = extract_delta(parsed)
        if content:
            events.append(StreamEvent.delta(content))
        if retry:
            logger.debug("Recovered deferred stream frame")
        return True

    def _drop(self, payload: str):
        self.dropped_lines += 1
        error = DecodeRecoverable(payload)
        logger.warning("Dropping malformed stream frame", error=str(error))


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


def _is_continuation(line: str) -> bool:
    return bool(line.strip()) and not line.startswith(COMMENT_PREFIX) and not line.startswith("data:")


async def decode_stream(chunks: AsyncIterator[Union[str, bytes]]) -> AsyncIterator[StreamEvent]:
    """Lazily decode a chunk iterator; each call gets its own decoder"""

    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return

    for event in decoder.finish():
        yield event
