# apps/scheduler/base.py
from __future__ import annotations

import itertools
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, Protocol, TypeVar

import structlog

from libs.adapters.errors import ProviderError

T = TypeVar("T")


class Worker(Protocol):
    """
    Background driver. ``start`` blocks until ``stop`` is set; after that it
    claims nothing new and returns once in-flight work finished or failed.
    """

    name: str

    def start(self, stop: threading.Event) -> None:
        ...


class TimeoutRunner:
    """
    Runs every fetch on its own daemon thread; the caller waits at most
    ``timeout`` seconds once the fetch has started. An overrunning fetch is
    abandoned on its thread and never delays the next one. Holds no pool, so
    a driver can be stopped and started again with the same runner.
    """

    def __init__(self, *, thread_name_prefix: str = "fetch") -> None:
        self.thread_name_prefix = thread_name_prefix
        self._seq = itertools.count(1)

    def call(self, fn: Callable[[], T], timeout: Optional[float]) -> T:
        fut: Future = Future()

        def run() -> None:
            if not fut.set_running_or_notify_cancel():
                return
            try:
                fut.set_result(fn())
            except Exception as e:
                fut.set_exception(e)

        name = f"{self.thread_name_prefix}-{next(self._seq)}"
        threading.Thread(target=run, name=name, daemon=True).start()
        try:
            return fut.result(timeout=timeout)
        except FutureTimeout:
            raise ProviderError(f"fetch timed out after {timeout}s") from None

    def bound(self, fn: Callable[[], T], timeout: Optional[float]) -> Callable[[], T]:
        return lambda: self.call(fn, timeout)


class SupervisedWorker:
    """
    Owns one worker thread and its cancellation token.
      start()      -> thread running worker.start(token)
      stop(grace)  -> set token, join for at most ``grace`` seconds
    """

    def __init__(self, worker: Worker, logger=None) -> None:
        self.worker = worker
        self.token = threading.Event()
        self.log = logger or structlog.get_logger().bind(worker=worker.name)
        self._thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "SupervisedWorker":
        if self.alive:
            return self
        self.token.clear()
        self._thread = threading.Thread(target=self._run, name=f"worker-{self.worker.name}", daemon=True)
        self._thread.start()
        return self

    def stop(self, grace: float = 10.0) -> bool:
        """True when the worker exited within the grace period."""
        self.token.set()
        if self._thread is None:
            return True
        self._thread.join(timeout=grace)
        stopped = not self._thread.is_alive()
        if not stopped:
            self.log.error("worker.stop_timeout", grace_s=grace)
        return stopped

    def _run(self) -> None:
        self.log.info("worker.started")
        try:
            self.worker.start(self.token)
        except Exception:
            self.log.exception("worker.crashed")
            raise
        finally:
            self.log.info("worker.stopped")
