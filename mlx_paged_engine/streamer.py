"""Delivery of response events to per-request queues."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import OrderedDict
from typing import Any, Optional

from mlx_paged_engine.types import RequestFinished, ResponseEvent, TokenDelta

logger = logging.getLogger(__name__)

# Finished request ids remembered for dropping late events
_MAX_FINISHED_IDS = 4096


class ResponseStreamer:
    """Routes ``TokenDelta`` / ``RequestFinished`` events to consumers.

    Each request gets a ``queue.Queue`` at registration. Events for one
    request arrive in commit order and end with exactly one
    ``RequestFinished``; anything emitted after it is dropped and logged.

    Args:
        tokenizer: Optional object with ``decode(list[int]) -> str`` used to
            fill ``TokenDelta.text``.
    """

    def __init__(self, tokenizer: Any = None) -> None:
        self.tokenizer = tokenizer
        self._lock = threading.Lock()
        self._streams: dict[str, queue.Queue[ResponseEvent]] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self.num_dropped = 0

    def register(self, request_id: str) -> queue.Queue[ResponseEvent]:
        """Create the event queue for a request.

        Raises:
            ValueError: If the request id is already streaming.
        """
        q: queue.Queue[ResponseEvent] = queue.Queue()
        with self._lock:
            if request_id in self._streams:
                raise ValueError(f"Duplicate request_id: {request_id}")
            self._finished.pop(request_id, None)
            self._streams[request_id] = q
        return q

    def unregister(self, request_id: str) -> None:
        with self._lock:
            self._streams.pop(request_id, None)

    def is_registered(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._streams

    def emit(self, event: ResponseEvent) -> bool:
        """Deliver one event. Returns False if it was dropped."""
        rid = event.request_id
        terminal = isinstance(event, RequestFinished)
        with self._lock:
            stream = self._streams.get(rid)
            if stream is None:
                late = rid in self._finished
            elif terminal:
                del self._streams[rid]
                self._finished[rid] = None
                while len(self._finished) > _MAX_FINISHED_IDS:
                    self._finished.popitem(last=False)
        if stream is None:
            self.num_dropped += 1
            if late:
                logger.warning(
                    "Dropping %s for %s: request already finished",
                    type(event).__name__, rid,
                )
            else:
                logger.debug("Dropping %s for unknown request %s", type(event).__name__, rid)
            return False

        if isinstance(event, TokenDelta) and event.text is None and self.tokenizer is not None:
            event.text = self.tokenizer.decode(event.token_ids)
        stream.put(event)
        return True

    def emit_all(self, events: list[ResponseEvent]) -> None:
        for event in events:
            self.emit(event)

    @staticmethod
    def get_result(
        stream: queue.Queue[ResponseEvent], timeout: Optional[float] = None
    ) -> list[ResponseEvent]:
        """Block until the terminal event and return every event in order.

        Raises:
            TimeoutError: If ``timeout`` seconds pass before the request ends.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        events: list[ResponseEvent] = []
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                event = stream.get(timeout=remaining)
            except queue.Empty:
                raise TimeoutError(f"No terminal event within {timeout}s") from None
            events.append(event)
            if isinstance(event, RequestFinished):
                return events

    @property
    def num_active(self) -> int:
        with self._lock:
            return len(self._streams)
