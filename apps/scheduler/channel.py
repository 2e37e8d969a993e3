# apps/scheduler/channel.py
from __future__ import annotations

import threading
from typing import Optional

import structlog

from apps.api.services.fx_rates import FxRatesService
from apps.scheduler.base import TimeoutRunner
from libs.adapters.errors import NotFound, ProviderError, StoreError
from libs.adapters.queue import QueueAdapter
from libs.contracts.fx_models import ClaimedJob, QuoteSource


class ChannelDispatcher:
    """
    In-process driver: intake pushes the job onto a bounded queue, one
    consumer loop claims and completes it. No store round-trip for discovery.
    A full queue surfaces as QueueFull to the submitting caller.
    Single process only; it does not coordinate with other API instances.
    """

    name = "channel"

    def __init__(
        self,
        svc: FxRatesService,
        queue: QueueAdapter,
        *,
        enqueue_timeout: float = 0.05,
        job_timeout: Optional[float] = 5.0,
        pop_timeout: float = 0.1,
        runner: Optional[TimeoutRunner] = None,
        logger=None,
    ) -> None:
        self.svc = svc
        self.queue = queue
        self.enqueue_timeout = enqueue_timeout
        self.job_timeout = job_timeout
        self.pop_timeout = pop_timeout
        self.runner = runner or TimeoutRunner(thread_name_prefix="channel-fetch")
        self.log = logger or structlog.get_logger().bind(worker=self.name)

    # ---- producer side (called from intake) ----
    def dispatch(self, job: ClaimedJob, *, trace_id: Optional[str] = None) -> None:
        mid = self.queue.enqueue(job, timeout=self.enqueue_timeout)
        self.log.info("channel.enqueued", update_id=job.id, message_id=mid, trace_id=trace_id)

    # ---- consumer side ----
    def start(self, stop: threading.Event) -> None:
        while not stop.is_set():
            item = self.queue.pop(timeout=self.pop_timeout)
            if item is None:
                continue
            mid, job = item
            try:
                self.process_one(job)
            finally:
                self.queue.ack(mid)
        self.log.info("channel.stopped", left_in_queue=self.queue.depth())

    def process_one(self, job: ClaimedJob) -> bool:
        log = self.log.bind(update_id=job.id, pair=job.pair)
        try:
            if self.svc.claim(job.id) is None:
                log.info("channel.already_claimed")
                return False
            self.svc.complete_quote_update(
                job.id,
                self.runner.bound(lambda: self.svc.fetch_quote(job.pair), self.job_timeout),
                QuoteSource.CHANNEL,
            )
        except (ProviderError, StoreError, NotFound) as e:
            log.warning("channel.job_failed", error=str(e))
            return False
        return True
