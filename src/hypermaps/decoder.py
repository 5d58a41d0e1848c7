"""Decode the newline-delimited tagged-record completion stream."""

from __future__ import annotations

import json
import logging
from typing import Any

from .models import StreamEvent

logger = logging.getLogger(__name__)

TEXT_TAG = "0"
DATA_TAG = "2"
ERROR_TAG = "3"
ANNOTATION_TAG = "8"
FINISH_TAG = "d"

# Step, reasoning and tool records: valid protocol, nothing to render.
IGNORED_TAGS = {"9", "a", "b", "c", "e", "f", "g"}


class StreamDecoder:
    """Incremental decoder for `<tag>:<json>` records.

    Feed it text as it arrives; records split across reads are buffered
    until their newline shows up. Once an error or finish record is seen the
    decoder stops and ignores the rest of the stream.
    """

    def __init__(self):
        self._pending = ""
        self.finished = False

    def feed(self, text: str) -> list[StreamEvent]:
        if self.finished:
            return []

        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return self._decode_lines(lines)

    def close(self) -> list[StreamEvent]:
        """Flush a trailing record that never got its newline."""
        if self.finished or not self._pending:
            return []
        line, self._pending = self._pending, ""
        return self._decode_lines([line])

    def _decode_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            event = decode_record(line)
            if event is None:
                continue
            events.append(event)
            if event.kind in ("error", "end"):
                self.finished = True
                break
        return events


def decode_record(line: str) -> StreamEvent | None:
    """Decode one record line; returns None for blank, unknown or malformed records."""
    line = line.rstrip("\r")
    if not line.strip():
        return None

    tag, sep, raw = line.partition(":")
    if not sep:
        logger.warning("Skipping malformed stream record: %.80s", line)
        return None

    if tag in IGNORED_TAGS:
        logger.debug("Ignoring stream record of type %s", tag)
        return None

    if tag not in (TEXT_TAG, DATA_TAG, ERROR_TAG, ANNOTATION_TAG, FINISH_TAG):
        logger.warning("Ignoring unknown stream record type %r", tag)
        return None

    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Skipping stream record %s with invalid JSON payload", tag)
        return None

    if tag == TEXT_TAG:
        if not isinstance(payload, str):
            logger.warning("Skipping text record with non-string payload")
            return None
        return StreamEvent(kind="chunk", text=payload)

    if tag == ERROR_TAG:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        return StreamEvent(kind="error", text=text)

    if tag == FINISH_TAG:
        return StreamEvent(kind="end", payload=payload)

    return StreamEvent(kind="data", payload=payload)
