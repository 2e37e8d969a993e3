# test/test_fx_rates_service.py
from datetime import timedelta

import pytest
from pydantic import ValidationError

from apps.api.services.fx_rates import LEASE_EXPIRED, BatchReport
from libs.adapters.errors import (
    BadRequest,
    Conflict,
    InvalidTransition,
    NotFound,
    ProviderError,
    QueueFull,
    StoreError,
)
from libs.contracts.fx_models import Quote, QuoteSource, QuoteUpdateStatus as S


@pytest.fixture(params=["mem", "sql"])
def svc(request):
    return request.getfixturevalue(f"{request.param}_service")


def test_submit_query_complete_scenario(svc, clock):
    update_id = svc.request_quote_update("EUR/USD", "k1")
    assert update_id == "update-1"

    with pytest.raises(Conflict):
        svc.request_quote_update("EUR/USD", "k1")

    job = svc.get_quote_update("update-1")
    assert job.status == S.QUEUED and job.price is None

    t = clock.advance(3)
    report = svc.process_queue_batch(10)
    assert report == BatchReport(claimed=1, done=1, failed=0)

    job = svc.get_quote_update("update-1")
    assert job.status == S.DONE
    assert job.price == 1.2345
    assert job.updated_at == t

    last = svc.get_last_quote("EUR/USD")
    assert last.price == 1.2345 and last.updated_at == t

    history = svc.list_history("EUR/USD")
    assert len(history) == 1
    assert history[0].source == QuoteSource.POLLER
    assert history[0].update_id == "update-1"


def test_duplicate_key_creates_no_second_job(svc):
    svc.request_quote_update("EUR/USD", "k1")
    with pytest.raises(Conflict):
        svc.request_quote_update("USD/MXN", "k1")
    with pytest.raises(NotFound):
        svc.get_quote_update("update-2")


def test_unsupported_pair_creates_nothing(svc):
    with pytest.raises(BadRequest):
        svc.request_quote_update("GBP/JPY", "k1")
    with pytest.raises(NotFound):
        svc.get_quote_update("update-1")
    # key was not burned by the rejected request
    assert svc.request_quote_update("EUR/USD", "k1") == "update-1"


@pytest.mark.parametrize("key", [None, "", "   "])
def test_missing_idempotency_key(svc, key):
    with pytest.raises(BadRequest):
        svc.request_quote_update("EUR/USD", key)


def test_failed_fetch_leaves_quotes_untouched(svc):
    svc.request_quote_update("EUR/USD", "k1")
    svc.claim("update-1")

    def boom():
        raise ProviderError("upstream 500")

    with pytest.raises(ProviderError):
        svc.complete_quote_update("update-1", boom, QuoteSource.CHANNEL)

    job = svc.get_quote_update("update-1")
    assert job.status == S.FAILED and job.error == "upstream 500"
    with pytest.raises(NotFound):
        svc.get_last_quote("EUR/USD")
    assert svc.list_history("EUR/USD") == []


def test_non_provider_fetch_error_is_wrapped(mem_service):
    mem_service.request_quote_update("USD/MXN", "k1")
    mem_service.claim("update-1")

    def broken():
        raise RuntimeError()

    with pytest.raises(ProviderError):
        mem_service.complete_quote_update("update-1", broken, QuoteSource.POLLER)
    assert mem_service.get_quote_update("update-1").error == "RuntimeError"


def test_batch_counts_failures(mem_service, clock):
    for i in range(3):
        mem_service.request_quote_update("EUR/USD", f"k{i}")

    def fetch_for(job):
        if job.id == "update-2":
            def fail():
                raise ProviderError("nope")
            return fail
        return lambda: Quote(pair=job.pair, price=1.5, updated_at=clock.advance(1))

    report = mem_service.process_queue_batch(10, fetch_for=fetch_for)
    assert (report.claimed, report.done, report.failed) == (3, 2, 1)
    assert report.errors == ["update-2: nope"]
    assert mem_service.get_quote_update("update-2").status == S.FAILED
    assert len(mem_service.list_history("EUR/USD")) == 2


def test_completing_unclaimed_job_rolls_back_on_sql(sql_service, provider):
    sql_service.request_quote_update("EUR/USD", "k1")
    with pytest.raises(InvalidTransition):
        sql_service.complete_quote_update("update-1", lambda: provider.get("EUR/USD"), QuoteSource.POLLER)
    assert sql_service.get_quote_update("update-1").status == S.QUEUED
    assert sql_service.list_history("EUR/USD") == []
    with pytest.raises(NotFound):
        sql_service.get_last_quote("EUR/USD")


class FlakyQuotes:
    """Wraps a quote store; the first ``failures`` upserts raise StoreError."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def upsert(self, quote):
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreError("db gone")
        self.inner.upsert(quote)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def _with_flaky_quotes(svc, failures):
    from libs.adapters.repo_inmemory import NoopUnitOfWork

    flaky = FlakyQuotes(svc.quotes, failures)
    svc.quotes = flaky
    svc.uow = NoopUnitOfWork(svc.jobs, flaky)
    return flaky


def test_persist_retry_recovers(mem_service, provider):
    flaky = _with_flaky_quotes(mem_service, failures=2)
    mem_service.request_quote_update("EUR/USD", "k1")
    mem_service.claim("update-1")
    mem_service.complete_quote_update("update-1", lambda: provider.get("EUR/USD"), QuoteSource.POLLER)
    assert flaky.calls == 3
    assert mem_service.get_quote_update("update-1").status == S.DONE
    # history is deduplicated across retries
    assert len(mem_service.list_history("EUR/USD")) == 1


def test_persist_retry_exhausted_fails_job(mem_service, provider):
    _with_flaky_quotes(mem_service, failures=10)
    mem_service.request_quote_update("EUR/USD", "k1")
    mem_service.claim("update-1")
    with pytest.raises(StoreError):
        mem_service.complete_quote_update("update-1", lambda: provider.get("EUR/USD"), QuoteSource.POLLER)
    job = mem_service.get_quote_update("update-1")
    assert job.status == S.FAILED
    assert job.error.startswith("persist failed: ")


def test_fail_stale_claims(mem_service, clock):
    mem_service.request_quote_update("EUR/USD", "k1")
    mem_service.claim("update-1")
    clock.advance(30)
    assert mem_service.fail_stale_claims(timedelta(seconds=60)) == []
    clock.advance(31)
    assert mem_service.fail_stale_claims(timedelta(seconds=60)) == ["update-1"]
    assert mem_service.get_quote_update("update-1").error == LEASE_EXPIRED


class RejectingDispatcher:
    def dispatch(self, job, *, trace_id=None):
        raise QueueFull("dispatch queue full (1)")


def test_queue_full_fails_the_new_job(mem_service):
    mem_service.attach_dispatcher(RejectingDispatcher())
    with pytest.raises(QueueFull):
        mem_service.request_quote_update("EUR/USD", "k1")
    job = mem_service.get_quote_update("update-1")
    assert job.status == S.FAILED and "queue full" in job.error


def test_history_limit_is_clamped(mem_service):
    assert mem_service.list_history("EUR/USD", limit=0) == []
    assert mem_service.list_history("EUR/USD", limit=10_000) == []


def test_readiness(mem_service):
    assert mem_service.readiness() == {"jobs": True, "quotes": True, "ok": True}


def test_batch_report_invariant():
    with pytest.raises(ValidationError):
        BatchReport(claimed=2, done=1, failed=0)


class BrokenGate:
    def try_reserve(self, key):
        raise StoreError("idempotency: connection refused")


def test_gate_failure_submits_nothing(svc):
    svc.idempotency = BrokenGate()
    with pytest.raises(StoreError):
        svc.request_quote_update("EUR/USD", "k1")
    with pytest.raises(NotFound):
        svc.get_quote_update("update-1")
