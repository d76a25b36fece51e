#!/usr/bin/env python3
"""
Server-Sent Events parser.

Turns successive raw text chunks of an open SSE transport into discrete
``StreamEvent`` objects.  A block ends at a blank line; inside a block
``event:`` sets the name and each ``data:`` line adds one payload line.

The parser keeps nothing between calls except the undelimited tail, so any
split of the same input produces the same events as feeding it whole.

Usage:
    parser = EventStreamParser()
    for chunk in response.iter_text():
        for event in parser.feed(chunk):
            handle(event.name, event.data)
    for event in parser.flush():
        handle(event.name, event.data)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_EVENT_NAME = "message"


@dataclass(frozen=True)
class StreamEvent:
    """One fully delimited SSE block."""

    name: str
    data: str


class EventStreamParser:
    """Incremental SSE framing parser."""

    def __init__(self) -> None:
        self._tail = ""

    def feed(self, chunk: str) -> List[StreamEvent]:
        """Consume *chunk* and return the events completed by it.

        A chunk ending in a bare ``\\r`` holds that character back, since it
        may be the first half of ``\\r\\n``.  With ``\\r``-only line endings the
        last event of such a chunk is therefore returned by the next
        ``feed`` or by ``flush``.
        """
        if not chunk:
            return []

        text = (self._tail + chunk).replace("\r\n", "\n").replace("\r", "\n")
        # A trailing "\r" could be the first half of "\r\n"; hold it back.
        if chunk.endswith("\r"):
            text = text[:-1]
            hold = "\r"
        else:
            hold = ""

        events: List[StreamEvent] = []
        while True:
            boundary = text.find("\n\n")
            if boundary == -1:
                break
            block, text = text[:boundary], text[boundary + 2:]
            event = self._parse_block(block)
            if event is not None:
                events.append(event)

        self._tail = text + hold
        return events

    def flush(self) -> List[StreamEvent]:
        """Emit the last block if the stream ended without a blank line."""
        block, self._tail = self._tail.replace("\r", "\n").rstrip("\n"), ""
        event = self._parse_block(block)
        return [event] if event is not None else []

    @staticmethod
    def _parse_block(block: str) -> Optional[StreamEvent]:
        name = ""
        data_lines: List[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field_name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field_name == "event":
                name = value
            elif field_name == "data":
                data_lines.append(value)
            else:
                logger.debug("Ignoring SSE field %r", field_name)

        if not name and not data_lines:
            return None
        return StreamEvent(name=name or DEFAULT_EVENT_NAME, data="\n".join(data_lines))


__all__ = ["DEFAULT_EVENT_NAME", "StreamEvent", "EventStreamParser"]
