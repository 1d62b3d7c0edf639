#!/usr/bin/env python3
"""
editor_stream.py — Streaming transport for LiveEditor.

Outbound: frames orchestrator events as server-sent events and always ends
the stream with the [DONE] sentinel.
Inbound: decodes the upstream provider's SSE byte stream into JSON frames,
tolerating frames split across network reads and skipping malformed ones.

EventChannel is the bounded pipe between the orchestrator thread and the
response generator that writes frames to the client.
"""

import codecs
import json
import threading
from collections import deque
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

DONE_FRAME      = "data: [DONE]\n\n"
KEEPALIVE_FRAME = ": ka\n\n"


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


# =============================================================================
# INBOUND DECODER
# =============================================================================

class SSEDecoder:
    """Incremental decoder for ``data: <json>`` records.

    Feed it raw network chunks (bytes or str) in arrival order; each call
    returns the complete frames seen so far. A partial line stays buffered
    until its newline arrives. ``event:`` lines, comments, the ``[DONE]``
    marker and payloads that are not JSON objects are dropped.
    """

    def __init__(self):
        self._buffer  = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> List[Dict[str, Any]]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [f for f in map(self._parse_line, lines) if f is not None]

    def flush(self) -> List[Dict[str, Any]]:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        frame = self._parse_line(tail)
        return [frame] if frame is not None else []

    @staticmethod
    def _parse_line(line: str) -> Optional[Dict[str, Any]]:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return None
        data = line[5:].strip()
        if not data or data == "[DONE]":
            return None
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            return None
        return frame if isinstance(frame, dict) else None


def iter_frames(chunks: Iterable[Union[bytes, str]]) -> Iterator[Dict[str, Any]]:
    decoder = SSEDecoder()
    for chunk in chunks:
        if chunk:
            yield from decoder.feed(chunk)
    yield from decoder.flush()


# =============================================================================
# EVENT CHANNEL
# =============================================================================

class ChannelClosed(Exception):
    """Raised by EventChannel.put() once the consumer has gone away."""


class EventChannel:
    """Bounded, backpressured queue of events with flush tracking.

    The producer blocks in put() while ``maxsize`` events are waiting, and
    wait_flushed() blocks it until the consumer has acknowledged (via
    mark_flushed) every event produced so far. Both give up once
    ``stop_event`` is set or the channel is closed.
    """

    _POLL = 0.25

    def __init__(self, maxsize: int, stop_event: Optional[threading.Event] = None):
        self._items: deque = deque()
        self._maxsize = max(1, maxsize)
        self._cond    = threading.Condition()
        self._pending = 0
        self._closed  = False
        self._stop    = stop_event or threading.Event()

    def put(self, item: Any) -> None:
        with self._cond:
            while (len(self._items) >= self._maxsize
                   and not self._closed and not self._stop.is_set()):
                self._cond.wait(self._POLL)
            if self._closed:
                raise ChannelClosed("event channel is closed")
            if len(self._items) >= self._maxsize:
                raise ChannelClosed("event channel stopped while full")
            self._items.append(item)
            self._pending += 1
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Any:
        """Next item, or None on timeout or when closed and empty."""
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._closed, timeout)
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            return None

    def drain(self, keepalive: Optional[float] = None) -> Iterator[Any]:
        """Yield items until the channel is closed and empty.

        With ``keepalive`` set, yields None whenever that many seconds pass
        without an item so the caller can write a keep-alive comment.
        """
        while True:
            item = self.get(timeout=keepalive)
            if item is not None:
                yield item
                continue
            with self._cond:
                if self._closed and not self._items:
                    return
            if keepalive is not None:
                yield None

    def mark_flushed(self) -> None:
        with self._cond:
            self._pending = max(0, self._pending - 1)
            self._cond.notify_all()

    def wait_flushed(self) -> None:
        with self._cond:
            while self._pending and not self._closed and not self._stop.is_set():
                self._cond.wait(self._POLL)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
