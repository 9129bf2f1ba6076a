"""EventWorker — the single background thread that runs every lifecycle transition."""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from typing import Any, Callable

import usbmon.log  # registers TRACE level and logger.trace()

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 1024


class ScheduledTask:
    """A queued callback.  Ordered by due time, then by post order."""

    __slots__ = ("due", "seq", "callback", "args")

    def __init__(self, due: float, seq: int, callback: Callable[..., Any], args: tuple):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.args = args

    def __lt__(self, other: "ScheduledTask") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)

    def __repr__(self) -> str:
        name = getattr(self.callback, "__qualname__", repr(self.callback))
        return f"ScheduledTask({name}, due={self.due:.3f}, seq={self.seq})"


class EventWorker(threading.Thread):
    """Daemon thread executing posted callbacks one at a time.

    Tasks never run concurrently with each other.  Immediate posts run in
    FIFO order; delayed posts run once due, after anything due earlier.
    A task that raises is logged and the worker moves on.
    """

    def __init__(self, name: str = "usbmon-worker", max_pending: int = DEFAULT_MAX_PENDING):
        super().__init__(daemon=True, name=name)
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        self.max_pending = max_pending
        self._queue: list[ScheduledTask] = []
        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._running = True

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post(self, callback: Callable[..., Any], *args: Any) -> ScheduledTask | None:
        """Queue *callback* to run as soon as possible."""
        return self.post_delayed(0.0, callback, *args)

    def post_delayed(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask | None:
        """Queue *callback* to run after *delay* seconds.

        Returns the task handle, or ``None`` once the worker has quit.
        Raises ``queue.Full`` when ``max_pending`` tasks are already queued.
        """
        with self._cond:
            if not self._running:
                logger.debug("Worker %s stopped — dropping %r", self.name, callback)
                return None
            if len(self._queue) >= self.max_pending:
                raise queue.Full(f"worker queue full ({self.max_pending} pending)")
            task = ScheduledTask(time.monotonic() + max(0.0, delay), next(self._seq), callback, args)
            heapq.heappush(self._queue, task)
            self._cond.notify()
        return task

    def cancel(self, task: ScheduledTask | None) -> bool:
        """Remove a queued task.  Returns False if it already ran or was never queued."""
        if task is None:
            return False
        with self._cond:
            try:
                self._queue.remove(task)
            except ValueError:
                return False
            heapq.heapify(self._queue)
            return True

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def running(self) -> bool:
        return self._running

    def is_worker_thread(self) -> bool:
        return threading.current_thread() is self

    def sync(self, timeout: float = 2.0) -> bool:
        """Block until every task posted before this call has run.

        Returns False on timeout or when the worker is not running.
        Must not be called from the worker itself.
        """
        if self.is_worker_thread():
            raise RuntimeError("sync() called from the worker thread")
        done = threading.Event()
        if self.post(done.set) is None:
            return False
        return done.wait(timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def quit(self, timeout: float = 2.0) -> None:
        """Stop the worker and drop every queued task.

        Joins for at most *timeout* seconds; a task stuck in native I/O is
        left behind rather than waited on.
        """
        with self._cond:
            self._running = False
            self._queue.clear()
            self._cond.notify_all()
        if self.is_alive() and not self.is_worker_thread():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning("Worker %s did not stop within %.1fs", self.name, timeout)

    def run(self) -> None:
        while True:
            task = self._next_task()
            if task is None:
                return
            logger.trace("Worker task: %r", task)  # type: ignore[attr-defined]
            try:
                task.callback(*task.args)
            except Exception:
                logger.exception("Worker task %r failed", task)

    def _next_task(self) -> ScheduledTask | None:
        with self._cond:
            while self._running:
                if not self._queue:
                    self._cond.wait()
                    continue
                wait = self._queue[0].due - time.monotonic()
                if wait <= 0:
                    return heapq.heappop(self._queue)
                self._cond.wait(wait)
            return None
