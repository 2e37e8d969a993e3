# test/conftest.py
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from apps.api.services.fx_rates import FxRatesService
from libs.adapters.idempotency import InMemoryIdempotencyGate
from libs.adapters.repo_inmemory import InMemoryJobStore, InMemoryQuoteStore
from libs.adapters.repo_sql import SqlJobStore, SqlQuoteStore, SqlUnitOfWork
from libs.connectors.fake import FakeRateProvider
from libs.storage.db import create_schema, make_engine, make_session_factory

T0 = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.t = start

    def __call__(self) -> datetime:
        return self.t

    def advance(self, seconds: float) -> datetime:
        self.t = self.t + timedelta(seconds=seconds)
        return self.t


def sequential_ids(prefix: str = "update"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(clock):
    return FakeRateProvider(price=1.2345, clock=clock)


@pytest.fixture
def mem_service(clock, provider):
    return FxRatesService(
        InMemoryJobStore(),
        InMemoryQuoteStore(),
        provider,
        InMemoryIdempotencyGate(timedelta(hours=24), clock=clock),
        now=clock,
        id_factory=sequential_ids(),
    )


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite:///:memory:")
    create_schema(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def sql_service(clock, provider, session_factory):
    jobs = SqlJobStore(session_factory)
    quotes = SqlQuoteStore(session_factory)
    return FxRatesService(
        jobs,
        quotes,
        provider,
        InMemoryIdempotencyGate(timedelta(hours=24), clock=clock),
        uow=SqlUnitOfWork(session_factory, jobs, quotes),
        now=clock,
        id_factory=sequential_ids(),
    )
