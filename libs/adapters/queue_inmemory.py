from __future__ import annotations
import itertools
import queue
import threading
from typing import Optional, Tuple
from libs.contracts.fx_models import ClaimedJob
from .errors import QueueFull


class InMemoryQueueAdapter:
    """Bounded, process-local queue. Not shared between processes."""

    def __init__(self, maxsize: int = 100) -> None:
        self._q: "queue.Queue[Tuple[str, ClaimedJob]]" = queue.Queue(maxsize=maxsize)
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self._inflight: set[str] = set()

    def enqueue(self, msg: ClaimedJob, *, timeout: float) -> str:
        mid = f"m{next(self._seq)}"
        try:
            self._q.put((mid, msg), timeout=timeout)
        except queue.Full:
            raise QueueFull(f"dispatch queue full ({self._q.maxsize})") from None
        return mid

    def pop(self, *, timeout: float) -> Optional[tuple[str, ClaimedJob]]:
        try:
            mid, msg = self._q.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._lock:
            self._inflight.add(mid)
        return mid, msg

    def ack(self, message_id: str) -> None:
        with self._lock:
            if message_id in self._inflight:
                self._inflight.discard(message_id)
                self._q.task_done()

    def depth(self) -> int:
        return self._q.qsize()
