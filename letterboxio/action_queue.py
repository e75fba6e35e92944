from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from letterboxio import get_logger

LOGGER = get_logger("queue")

T = TypeVar("T")


@dataclass(slots=True)
class ActionJob:
    name: str
    execute: Callable[[], Any]
    future: Future = field(default_factory=Future)


class ActionQueue:
    """
    Single-flight FIFO queue for everything that touches the browser.

    One long-lived worker thread drains the queue in a loop, running jobs one
    at a time. Playwright's sync objects are bound to the thread that created
    them, so the worker is also the only thread that ever sees the browser.
    A failing job is logged and does not stop the jobs behind it.
    """

    def __init__(self, *, name: str = "letterboxio-actions") -> None:
        self.name = name
        self._jobs: deque[ActionJob] = deque()
        self._cond = threading.Condition()
        self._worker: Optional[threading.Thread] = None
        self._running = False
        self._stopping = False

    # ---------- Submission ----------
    def enqueue(self, execute: Callable[[], T], *, name: str = "job") -> "Future[T]":
        job = ActionJob(name=name, execute=execute)
        with self._cond:
            if self._stopping:
                raise RuntimeError("Action queue is stopped")
            self._jobs.append(job)
            depth = len(self._jobs)
            self._ensure_worker()
            self._cond.notify_all()
        LOGGER.debug("Queued %s (depth=%d)", name, depth)
        return job.future

    def call(self, fn: Callable[[], T], *, name: str = "call", timeout: Optional[float] = None) -> T:
        """Run ``fn`` on the worker thread and wait for its result."""
        if self.on_worker_thread():
            return fn()
        return self.enqueue(fn, name=name).result(timeout=timeout)

    def on_worker_thread(self) -> bool:
        worker = self._worker
        return worker is not None and threading.current_thread() is worker

    # ---------- Worker ----------
    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._drain, name=self.name, daemon=True)
        self._worker.start()

    def _drain(self) -> None:
        while True:
            with self._cond:
                while not self._jobs and not self._stopping:
                    self._cond.wait()
                if not self._jobs:
                    return
                job = self._jobs.popleft()
                self._running = True
            try:
                self._run(job)
            finally:
                with self._cond:
                    self._running = False
                    self._cond.notify_all()

    def _run(self, job: ActionJob) -> None:
        if not job.future.set_running_or_notify_cancel():
            return
        started = time.monotonic()
        try:
            result = job.execute()
        except Exception as exc:
            LOGGER.error("Job %s failed: %s", job.name, exc)
            job.future.set_exception(exc)
            return
        LOGGER.debug("Job %s finished in %.2fs", job.name, time.monotonic() - started)
        job.future.set_result(result)

    # ---------- Introspection / lifecycle ----------
    def pending(self) -> int:
        with self._cond:
            return len(self._jobs) + (1 if self._running else 0)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is empty and no job is running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._jobs or self._running:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Finish queued jobs, then let the worker exit."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)


class Deduplicator:
    """
    Short-window duplicate filter for mutating requests.

    The TV remote client fires the same gesture several times within a second;
    a watchlist toggle issued an even number of times would undo itself.
    Entries are never evicted, only logically expired.
    """

    def __init__(self, window_s: float = 5.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = float(window_s)
        self._clock = clock
        self._last_accepted: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def should_accept(self, identifier: str, action_kind: str) -> bool:
        key = (identifier, action_kind)
        now = self._clock()
        with self._lock:
            last = self._last_accepted.get(key)
            if last is not None and now - last < self.window_s:
                LOGGER.info("Duplicate ignored for %s:%s", identifier, action_kind)
                return False
            self._last_accepted[key] = now
            return True

    def forget(self, identifier: str, action_kind: str) -> None:
        """Drop an accepted request that never ran so a retry is not rejected."""
        with self._lock:
            self._last_accepted.pop((identifier, action_kind), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_accepted)
