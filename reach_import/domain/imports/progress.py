"""
Progress reporting and cooperative cancellation for running imports.

The orchestrator holds no progress state of its own. It emits immutable
``ProgressEvent`` snapshots into a sink (any callable), and polls a
``CancelToken`` between batches.
"""
import queue
import threading
from typing import Callable, Iterator, List, Optional

from reach_import.api.schemas.shared import ProgressEvent

ProgressSink = Callable[[ProgressEvent], None]


class CancelToken:
    """Thread-safe cancellation flag shared by the API layer and a running import."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def is_cancelled(token: Optional[CancelToken]) -> bool:
    return token is not None and token.cancelled


class ProgressChannel:
    """
    Queue-backed progress sink.

    Calling the channel publishes an event. ``latest`` returns the most
    recent event for polling clients, and ``events()`` yields events as a
    stream until the channel is closed. At most ``maxsize`` events are
    buffered; when nobody consumes them the oldest are dropped.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 1000):
        self._queue: "queue.Queue" = queue.Queue(maxsize=max(1, maxsize))
        self._lock = threading.Lock()
        self._latest: Optional[ProgressEvent] = None
        self._closed = False

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            if self._closed:
                return
            self._latest = event
            self._put(event)

    @property
    def latest(self) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._put(self._CLOSED)

    def _put(self, item) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """Yield events in emission order until the channel closes (or ``timeout`` passes idle)."""
        while True:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return
            if item is self._CLOSED:
                return
            yield item

    def drain(self) -> List[ProgressEvent]:
        """Return every event queued so far without blocking."""
        drained: List[ProgressEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return drained
            if item is self._CLOSED:
                # Keep the close marker for any streaming consumer.
                self._put(item)
                return drained
            drained.append(item)
