"""
Progress reporting and cancellation shared by the pipeline stages.

Stages report ``(done, total)`` from the orchestrating thread; the
ProgressReporter maps these onto the stage's percentage range and forwards
a single serialised, non-decreasing stream to the caller's sink.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from .errors import PipelineCancelled

logger = logging.getLogger(__name__)

StageProgress = Callable[[int, int], None]


class ProgressSink(Protocol):
    """Receiver of pipeline progress; plain callables are accepted too."""

    def notify(self, percent: int, message: str) -> None:
        ...


class CancellationToken:
    """
    Caller-settable stop flag, safe to read from worker threads.

    Example
    -------
    >>> token = CancellationToken()
    >>> token.cancel()
    >>> token.cancelled
    True
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __bool__(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled()


def check_cancelled(cancellation: CancellationToken | None) -> None:
    """Raise PipelineCancelled if ``cancellation`` is set."""
    if cancellation is not None and cancellation.cancelled:
        raise PipelineCancelled()


class ProgressReporter:
    """
    Serialised, monotonic wrapper around a progress sink.

    Parameters
    ----------
    sink : callable or object with ``notify``, optional
        Receives ``(percent, message)``. Exceptions raised by the sink
        propagate to the caller.
    """

    def __init__(self, sink=None):
        if sink is not None and not callable(sink):
            notify = getattr(sink, "notify", None)
            if not callable(notify):
                raise TypeError("progress sink must be callable or provide notify()")
            sink = notify
        self._sink = sink
        self._lock = threading.Lock()
        self._last = 0
        self._last_message = None

    @property
    def last_percent(self) -> int:
        return self._last

    def notify(self, percent: float, message: str) -> None:
        """Forward ``percent`` clamped to [0, 100] and never below the last value."""
        with self._lock:
            value = max(self._last, min(100, max(0, int(percent))))
            if value == self._last and message == self._last_message:
                return
            self._last = value
            self._last_message = message
            if self._sink is not None:
                self._sink(value, message)

    def stage(self, start: float, end: float, message: str) -> StageProgress:
        """
        Return a ``(done, total)`` callback mapped onto [start, end].

        Example
        -------
        >>> reporter = ProgressReporter(print)
        >>> step = reporter.stage(0, 35, "Analyzing frames")
        0 Analyzing frames
        >>> step(10, 100)
        3 Analyzing frames (10/100)
        """
        self.notify(start, message)

        def update(done: int, total: int) -> None:
            fraction = done / total if total > 0 else 1.0
            self.notify(start + (end - start) * fraction, f"{message} ({done}/{total})")

        return update
