# apps/api/services/fx_rates.py
from __future__ import annotations

from datetime import datetime, timedelta
from time import perf_counter
from typing import Callable, List, Optional, Protocol
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field, model_validator

from libs.adapters.errors import (
    BadRequest,
    Conflict,
    InvalidTransition,
    NotFound,
    ProviderError,
    QueueFull,
    StoreError,
)
from libs.adapters.idempotency import IdempotencyGate
from libs.adapters.repo import JobStore, QuoteStore, UnitOfWork
from libs.adapters.repo_inmemory import NoopUnitOfWork
from libs.connectors.base import RateProvider
from libs.contracts.fx_models import (
    ClaimedJob,
    Quote,
    QuoteHistory,
    QuoteSource,
    QuoteUpdate,
    QuoteUpdateStatus,
    parse_pair,
    utcnow,
)

Fetch = Callable[[], Quote]

LEASE_EXPIRED = "claim lease expired"


class Dispatcher(Protocol):
    """Hands a freshly queued job to an in-process driver (channel / delegate)."""

    def dispatch(self, job: ClaimedJob, *, trace_id: Optional[str] = None) -> None:
        ...


class BatchReport(BaseModel):
    """Outcome of one poll tick: claimed == done + failed."""

    claimed: int = Field(0, ge=0)
    done: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    errors: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_counts(self):
        if self.claimed != self.done + self.failed:
            raise ValueError(f"claimed({self.claimed}) must equal done+failed({self.done + self.failed})")
        return self


class FxRatesService:
    """
    Orchestrator:
      - intake: pair validation -> idempotency gate -> queued job -> id
      - reads: job by id, last quote, history
      - completion: fetch -> (history, quote, job done) in one unit of work
    The only writer of done/failed; claiming belongs to the job store.
    """

    def __init__(
        self,
        jobs: JobStore,
        quotes: QuoteStore,
        provider: RateProvider,
        idempotency: IdempotencyGate,
        *,
        uow: Optional[UnitOfWork] = None,
        dispatcher: Optional[Dispatcher] = None,
        logger=None,
        now: Callable[[], datetime] = utcnow,
        clock=perf_counter,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
        persist_attempts: int = 3,
    ):
        """
        uow        : transaction scope for completion (default: ordered, non-transactional)
        dispatcher : in-process handoff after intake; None when a poller discovers jobs
        now        : wall clock for persisted timestamps (swap in tests)
        clock      : timer for duration_ms
        """
        self.jobs = jobs
        self.quotes = quotes
        self.provider = provider
        self.idempotency = idempotency
        self.uow = uow or NoopUnitOfWork(jobs, quotes)
        self.dispatcher = dispatcher
        self.log = logger or structlog.get_logger().bind(component="fx_rates_service")
        self.now = now
        self.clock = clock
        self.id_factory = id_factory
        self.persist_attempts = max(1, persist_attempts)

    def attach_dispatcher(self, dispatcher: Optional[Dispatcher]) -> None:
        self.dispatcher = dispatcher

    # ---------- intake ----------

    def request_quote_update(self, pair: str, idempotency_key: Optional[str], *, trace_id: Optional[str] = None) -> str:
        key = (idempotency_key or "").strip()
        if not key:
            raise BadRequest("idempotency key is required")
        # validated before the key is burned and before any row exists
        canonical = parse_pair(pair)
        log = self.log.bind(pair=canonical, idempotency_key=key, trace_id=trace_id)

        if not self.idempotency.try_reserve(key):
            log.info("quote_update.duplicate")
            raise Conflict(key)

        job = self.jobs.create_queued(self.id_factory(), canonical, self.now())
        log.info("quote_update.queued", update_id=job.id)

        if self.dispatcher is not None:
            try:
                self.dispatcher.dispatch(ClaimedJob(id=job.id, pair=job.pair), trace_id=trace_id)
            except QueueFull as e:
                self._mark_failed(job.id, str(e), log)
                raise
        return job.id

    # ---------- reads ----------

    def get_quote_update(self, job_id: str) -> QuoteUpdate:
        return self.jobs.get_by_id(job_id)

    def get_last_quote(self, pair: str) -> Quote:
        return self.quotes.get_last(parse_pair(pair))

    def list_history(self, pair: str, limit: int = 30) -> List[QuoteHistory]:
        return self.quotes.list_history(parse_pair(pair), limit=max(1, min(limit, 500)))

    def fetch_quote(self, pair: str) -> Quote:
        return self.provider.get(pair)

    def claim(self, job_id: str) -> Optional[ClaimedJob]:
        """queued -> processing for one job handed over in-process; None if someone else has it."""
        return self.jobs.claim_by_id(job_id, now=self.now())

    # ---------- completion ----------

    def complete_quote_update(self, job_id: str, fetch: Fetch, source: QuoteSource) -> Quote:
        """
        1) fetch; on error mark the job failed and raise ProviderError (nothing else is written)
        2) history -> quote -> done inside the unit of work, retried up to persist_attempts
        3) persistence exhausted: job failed with "persist failed: ...", StoreError raised
        The job must already be claimed (processing).
        """
        log = self.log.bind(update_id=job_id, source=source.value)
        t0 = self.clock()
        try:
            q = fetch()
        except Exception as e:  # fetch is transport-specific; any failure ends the job
            msg = str(e) or type(e).__name__
            log.warning("complete.fetch_failed", error=msg)
            self._mark_failed(job_id, msg, log)
            if isinstance(e, ProviderError):
                raise
            raise ProviderError(msg) from e

        entry = QuoteHistory(pair=q.pair, price=q.price, quoted_at=q.updated_at, source=source, update_id=job_id)
        last_err: Optional[StoreError] = None
        for attempt in range(1, self.persist_attempts + 1):
            try:
                with self.uow.begin() as tx:
                    tx.quotes.append_history(entry)
                    tx.quotes.upsert(q)
                    tx.jobs.update_status(job_id, QuoteUpdateStatus.DONE, now=self.now(), price=q.price)
            except InvalidTransition:
                log.warning("complete.job_no_longer_processing")
                raise
            except StoreError as e:
                last_err = e
                log.warning("complete.persist_failed", attempt=attempt, error=str(e))
                continue
            log.info(
                "complete.done",
                pair=q.pair,
                price=q.price,
                quoted_at=q.updated_at.isoformat(),
                attempts=attempt,
                duration_ms=int((self.clock() - t0) * 1000),
            )
            return q

        msg = f"persist failed: {last_err}"
        self._mark_failed(job_id, msg, log)
        raise StoreError(msg) from last_err

    def process_queue_batch(
        self,
        batch_limit: int,
        *,
        fetch_for: Optional[Callable[[ClaimedJob], Fetch]] = None,
    ) -> BatchReport:
        """
        Claim up to batch_limit queued jobs and complete each one.
        Claim failures propagate (the poller retries next tick); per-job
        failures are recorded on the job and counted in the report.
        """
        fetch_for = fetch_for or (lambda job: (lambda: self.fetch_quote(job.pair)))
        claimed = self.jobs.claim_queued(batch_limit, now=self.now())
        done, failed, errors = 0, 0, []
        for job in claimed:
            try:
                self.complete_quote_update(job.id, fetch_for(job), QuoteSource.POLLER)
                done += 1
            except (ProviderError, StoreError, NotFound) as e:
                failed += 1
                errors.append(f"{job.id}: {e}")
        return BatchReport(claimed=len(claimed), done=done, failed=failed, errors=errors)

    def fail_stale_claims(self, lease: timedelta) -> List[str]:
        now = self.now()
        ids = self.jobs.fail_stale(now - lease, now=now, error=LEASE_EXPIRED)
        if ids:
            self.log.warning("quote_update.lease_expired", ids=ids)
        return ids

    # ---------- health ----------

    def readiness(self) -> dict:
        out = {"jobs": self._ping(self.jobs), "quotes": self._ping(self.quotes)}
        out["ok"] = all(out.values())
        return out

    # ---------- helpers ----------

    def _mark_failed(self, job_id: str, msg: str, log) -> None:
        """Best effort: the primary error is what the caller sees."""
        try:
            self.jobs.update_status(job_id, QuoteUpdateStatus.FAILED, now=self.now(), error=msg)
        except (StoreError, NotFound) as e:
            log.error("quote_update.mark_failed_failed", error=str(e))

    @staticmethod
    def _ping(store) -> bool:
        try:
            return bool(store.ping())
        except StoreError:
            return False
