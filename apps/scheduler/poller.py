# apps/scheduler/poller.py
from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional

import structlog

from apps.api.services.fx_rates import BatchReport, FxRatesService
from apps.scheduler.base import TimeoutRunner
from libs.adapters.errors import StoreError


class PollerWorker:
    """
    Ticking driver: every ``poll_every`` seconds
      1) fail processing jobs whose claim lease expired (when a lease is set)
      2) claim a batch of queued jobs and complete each with the local provider
    Claim errors are logged and retried on the next tick.
    """

    name = "poller"

    def __init__(
        self,
        svc: FxRatesService,
        *,
        poll_every: float = 0.25,
        batch_limit: int = 10,
        job_timeout: Optional[float] = 5.0,
        lease: Optional[timedelta] = None,
        runner: Optional[TimeoutRunner] = None,
        logger=None,
    ) -> None:
        self.svc = svc
        self.poll_every = poll_every if poll_every > 0 else 0.25
        self.batch_limit = batch_limit if batch_limit > 0 else 10
        self.job_timeout = job_timeout
        self.lease = lease if lease and lease.total_seconds() > 0 else None
        self.runner = runner or TimeoutRunner(thread_name_prefix="poller-fetch")
        self.log = logger or structlog.get_logger().bind(worker=self.name)

    def start(self, stop: threading.Event) -> None:
        self.log.info("poller.started", poll_every_s=self.poll_every, batch_limit=self.batch_limit)
        while not stop.wait(self.poll_every):
            self.tick()
        self.log.info("poller.stopped")

    def tick(self) -> Optional[BatchReport]:
        if self.lease is not None:
            try:
                self.svc.fail_stale_claims(self.lease)
            except StoreError as e:
                self.log.warning("poller.lease_sweep_failed", error=str(e))

        try:
            report = self.svc.process_queue_batch(self.batch_limit, fetch_for=self._fetch_for)
        except StoreError as e:
            self.log.warning("poller.tick_failed", error=str(e))
            return None
        if report.claimed:
            self.log.info("poller.tick", claimed=report.claimed, done=report.done, failed=report.failed)
        return report

    def _fetch_for(self, job):
        return self.runner.bound(lambda: self.svc.fetch_quote(job.pair), self.job_timeout)
