# apps/scheduler/delegate.py
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import structlog

from apps.api.services.fx_rates import FxRatesService
from apps.scheduler.base import TimeoutRunner
from libs.adapters.errors import NotFound, ProviderError, QueueFull, StoreError
from libs.connectors.remote import RemoteRateClient
from libs.contracts.fx_models import ClaimedJob, QuoteSource


class DelegateDispatcher:
    """
    Remote-fetch driver: intake triggers an async call to the rate server;
    the reply feeds the local completion protocol as ``fetch``'s result.
    The whole remote call, retries included, is bounded by ``job_timeout``.
    """

    name = "delegate"

    def __init__(
        self,
        svc: FxRatesService,
        client: RemoteRateClient,
        *,
        concurrency: int = 4,
        job_timeout: Optional[float] = 5.0,
        runner: Optional[TimeoutRunner] = None,
        logger=None,
    ) -> None:
        self.svc = svc
        self.client = client
        self.concurrency = max(1, concurrency)
        self.job_timeout = job_timeout
        self.runner = runner or TimeoutRunner(thread_name_prefix="delegate-fetch")
        self.log = logger or structlog.get_logger().bind(worker=self.name)
        self._lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = self._new_pool()
        self._inflight: set[Future] = set()

    def dispatch(self, job: ClaimedJob, *, trace_id: Optional[str] = None) -> None:
        with self._lock:
            if self._pool is None:
                raise QueueFull("delegate dispatcher is shutting down")
            fut = self._pool.submit(self.process_one, job, trace_id)
            self._inflight.add(fut)
        fut.add_done_callback(self._forget)

    def process_one(self, job: ClaimedJob, trace_id: Optional[str] = None) -> bool:
        log = self.log.bind(update_id=job.id, pair=job.pair, trace_id=trace_id)
        try:
            if self.svc.claim(job.id) is None:
                log.info("delegate.already_claimed")
                return False
            self.svc.complete_quote_update(
                job.id,
                self.runner.bound(lambda: self.client.fetch(job.pair, trace_id), self.job_timeout),
                QuoteSource.DELEGATE,
            )
        except (ProviderError, StoreError, NotFound) as e:
            log.warning("delegate.job_failed", error=str(e))
            return False
        log.info("delegate.done")
        return True

    def start(self, stop: threading.Event) -> None:
        """Idle until stop; then refuse new work and wait for in-flight calls."""
        with self._lock:
            if self._pool is None:
                self._pool = self._new_pool()
        stop.wait()
        with self._lock:
            pool, self._pool = self._pool, None
            pending = len(self._inflight)
        self.log.info("delegate.draining", inflight=pending)
        # not-yet-started calls are dropped; their jobs are still queued, never processing
        pool.shutdown(wait=True, cancel_futures=True)

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="delegate")

    def _forget(self, fut: Future) -> None:
        with self._lock:
            self._inflight.discard(fut)
