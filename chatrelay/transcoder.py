"""Turn an upstream server-sent-event completion stream into plain text bytes."""

from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional

from .errors import StreamDecodeError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

_LINE_END = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class StreamEvent:
    type: str  # "event" or "reconnect-interval"
    data: str = ""
    event: Optional[str] = None
    id: Optional[str] = None
    value: Optional[int] = None


class EventStreamParser:
    """Incremental SSE parser; ``feed`` accepts text split at arbitrary points."""

    def __init__(self) -> None:
        self._buffer = ""
        self._data_lines: List[str] = []
        self._event_name: Optional[str] = None
        self._last_id: Optional[str] = None
        self._started = False

    def feed(self, text: str) -> List[StreamEvent]:
        if not self._started and text:
            self._started = True
            if text.startswith("\ufeff"):
                text = text[1:]
        self._buffer += text

        events: List[StreamEvent] = []
        while True:
            match = _LINE_END.search(self._buffer)
            if match is None:
                break
            # a lone CR at the edge may be the first half of CRLF
            if match.group() == "\r" and match.end() == len(self._buffer):
                break
            line = self._buffer[: match.start()]
            self._buffer = self._buffer[match.end():]
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def _process_line(self, line: str) -> Optional[StreamEvent]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data_lines.append(value)
        elif name == "event":
            self._event_name = value
        elif name == "id":
            if "\x00" not in value:
                self._last_id = value
        elif name == "retry":
            if value.isdigit():
                return StreamEvent(type="reconnect-interval", value=int(value))
        return None

    def _dispatch(self) -> Optional[StreamEvent]:
        if not self._data_lines:
            self._event_name = None
            return None
        event = StreamEvent(
            type="event",
            data="\n".join(self._data_lines),
            event=self._event_name,
            id=self._last_id,
        )
        self._data_lines = []
        self._event_name = None
        return event


def extract_delta(data: str) -> Optional[str]:
    """Return ``choices[0].delta.content`` from a completion chunk payload."""
    try:
        payload = json.loads(data)
        choice = payload["choices"][0]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise StreamDecodeError(f"Malformed upstream event: {exc}") from exc
    delta = choice.get("delta") if isinstance(choice, dict) else None
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


class EventTranscoder:
    """Async iterator of UTF-8 text deltas pulled from an upstream byte source.

    Iteration ends when the ``[DONE]`` sentinel arrives or the source is
    exhausted, and raises :class:`StreamDecodeError` on a malformed payload.
    Nothing is read from the source until the consumer asks for output.
    """

    def __init__(self, source: AsyncIterable[bytes]) -> None:
        self._source = source
        self._parser = EventStreamParser()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.done = False
        self.failed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        async for chunk in self._source:
            for event in self._parser.feed(self._decoder.decode(chunk)):
                if event.type != "event":
                    logger.debug("Ignoring upstream reconnect interval of %sms", event.value)
                    continue
                if event.data == DONE_SENTINEL:
                    self.done = True
                    return
                try:
                    text = extract_delta(event.data)
                except StreamDecodeError:
                    self.failed = True
                    raise
                if text:
                    yield text.encode("utf-8")


__all__ = [
    "DONE_SENTINEL",
    "EventStreamParser",
    "EventTranscoder",
    "StreamEvent",
    "extract_delta",
]
