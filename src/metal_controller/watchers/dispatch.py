"""Run event handlers as short-lived concurrent tasks."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event
from typing import Any, Callable, Optional

LOG = logging.getLogger(__name__)


def _log_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOG.error("event handler failed: %s", exc, exc_info=exc)


class EventDispatcher:
    """Submit handler calls to a thread pool until the stop event is set."""

    def __init__(self, stop_event: Event, workers: int = 4) -> None:
        self._stop_event = stop_event
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile")

    def submit(self, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        if self._stop_event.is_set():
            LOG.debug("stopping, dropping %s", getattr(fn, "__name__", fn))
            return None
        future = self._executor.submit(fn, *args)
        future.add_done_callback(_log_failure)
        return future

    def shutdown(self) -> None:
        # in-flight handlers finish; queued ones are dropped
        self._executor.shutdown(wait=True, cancel_futures=True)
