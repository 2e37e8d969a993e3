# apps/api/deps.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from fastapi import Request
from sqlalchemy import Engine

from apps.api.services.fx_rates import FxRatesService
from apps.scheduler.base import SupervisedWorker
from apps.scheduler.channel import ChannelDispatcher
from apps.scheduler.delegate import DelegateDispatcher
from apps.scheduler.poller import PollerWorker
from libs.adapters.idempotency import build_idempotency_gate
from libs.adapters.queue_inmemory import InMemoryQueueAdapter
from libs.adapters.repo_inmemory import InMemoryJobStore, InMemoryQuoteStore, NoopUnitOfWork
from libs.adapters.repo_sql import SqlJobStore, SqlQuoteStore, SqlUnitOfWork
from libs.connectors.base import RateProvider
from libs.connectors.exchangeratesapi import make_retrying_session
from libs.connectors.registry import get_rate_provider
from libs.connectors.remote import RemoteRateClient
from libs.contracts.fx_models import utcnow
from libs.storage.config import FxSettings
from libs.storage.db import create_schema, make_engine, make_session_factory


@dataclass
class Container:
    settings: FxSettings
    service: FxRatesService
    provider: RateProvider
    engine: Optional[Engine] = None
    workers: List[SupervisedWorker] = field(default_factory=list)

    def start_workers(self) -> None:
        for w in self.workers:
            w.start()

    def stop_workers(self) -> None:
        for w in self.workers:
            w.stop(self.settings.SHUTDOWN_GRACE_SECONDS)

    def close(self) -> None:
        self.stop_workers()
        if self.engine is not None:
            self.engine.dispose()


def build_container(
    settings: Optional[FxSettings] = None,
    *,
    provider: Optional[RateProvider] = None,
    now: Callable[[], datetime] = utcnow,
    id_factory: Optional[Callable[[], str]] = None,
) -> Container:
    """
    Wire up the service (DI):
      - stores     : by STORAGE (memory | sql)
      - idempotency: by IDEMPOTENCY (memory | sql | noop)
      - provider   : by PROVIDER via the connector registry
    Drivers are added separately (API process vs worker process).
    """
    cfg = settings or FxSettings()
    log = structlog.get_logger()

    engine = None
    session_factory = None
    if cfg.STORAGE == "sql" or cfg.IDEMPOTENCY == "sql":
        engine = make_engine(cfg.DATABASE_URL)
        create_schema(engine)
        session_factory = make_session_factory(engine)

    if cfg.STORAGE == "sql":
        jobs = SqlJobStore(session_factory)
        quotes = SqlQuoteStore(session_factory)
        uow = SqlUnitOfWork(session_factory, jobs, quotes)
    else:
        jobs = InMemoryJobStore()
        quotes = InMemoryQuoteStore()
        uow = NoopUnitOfWork(jobs, quotes)

    gate = build_idempotency_gate(
        cfg.IDEMPOTENCY,
        ttl=timedelta(seconds=cfg.IDEMPOTENCY_TTL_SECONDS),
        session_factory=session_factory,
    )
    rp = provider or get_rate_provider(cfg)

    kwargs = {"id_factory": id_factory} if id_factory else {}
    svc = FxRatesService(
        jobs,
        quotes,
        rp,
        gate,
        uow=uow,
        logger=log.bind(component="fx_rates_service"),
        now=now,
        persist_attempts=cfg.PERSIST_ATTEMPTS,
        **kwargs,
    )
    log.info(
        "container.built",
        env=cfg.ENV,
        storage=cfg.STORAGE,
        idempotency=cfg.IDEMPOTENCY,
        provider=getattr(rp, "source_name", "?"),
        worker_type=cfg.WORKER_TYPE,
    )
    return Container(settings=cfg, service=svc, provider=rp, engine=engine)


def build_poller(c: Container) -> PollerWorker:
    cfg = c.settings
    lease = timedelta(seconds=cfg.CLAIM_LEASE_SECONDS) if cfg.CLAIM_LEASE_SECONDS else None
    return PollerWorker(
        c.service,
        poll_every=cfg.WORKER_POLL_SECONDS,
        batch_limit=cfg.WORKER_BATCH_LIMIT,
        job_timeout=cfg.JOB_TIMEOUT_SECONDS,
        lease=lease,
    )


def attach_api_workers(c: Container) -> Container:
    """
    Drivers that live inside the API process:
      channel  -> bounded in-memory queue fed by intake
      delegate -> remote fetch per submitted job
      poller   -> with RUN_POLLER_IN_API, or always on memory storage
                  (otherwise a separate worker process polls the shared database)
    """
    cfg = c.settings
    if cfg.WORKER_TYPE == "channel":
        d = ChannelDispatcher(
            c.service,
            InMemoryQueueAdapter(maxsize=cfg.CHAN_QUEUE_SIZE),
            enqueue_timeout=cfg.CHAN_ENQUEUE_TIMEOUT_SECONDS,
            job_timeout=cfg.JOB_TIMEOUT_SECONDS,
        )
        c.service.attach_dispatcher(d)
        c.workers.append(SupervisedWorker(d))
    elif cfg.WORKER_TYPE == "delegate":
        # no transport retries: the job timeout bounds the whole call
        client = RemoteRateClient(
            cfg.REMOTE_FETCH_URL,
            session=make_retrying_session(retries=0),
            timeout_sec=cfg.JOB_TIMEOUT_SECONDS,
        )
        d = DelegateDispatcher(
            c.service,
            client,
            concurrency=cfg.DELEGATE_CONCURRENCY,
            job_timeout=cfg.JOB_TIMEOUT_SECONDS,
        )
        c.service.attach_dispatcher(d)
        c.workers.append(SupervisedWorker(d))
    elif cfg.WORKER_TYPE == "poller" and (cfg.RUN_POLLER_IN_API or cfg.STORAGE == "memory"):
        # a memory store is private to this process, so nobody else can poll it
        c.workers.append(SupervisedWorker(build_poller(c)))
    return c


def get_service(request: Request) -> FxRatesService:
    return request.app.state.container.service
