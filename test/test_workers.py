# test/test_workers.py
import threading
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from apps.api.services.fx_rates import LEASE_EXPIRED
from apps.scheduler.base import SupervisedWorker, TimeoutRunner
from apps.scheduler.channel import ChannelDispatcher
from apps.scheduler.delegate import DelegateDispatcher
from apps.scheduler.poller import PollerWorker
from apps.scheduler.rate_server import create_rate_app
from libs.adapters.errors import ProviderError, QueueFull
from libs.adapters.queue_inmemory import InMemoryQueueAdapter
from libs.connectors.remote import RemoteRateClient
from libs.contracts.fx_models import ClaimedJob, QuoteSource, QuoteUpdateStatus as S


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class BlockingProvider:
    source_name = "blocking"

    def __init__(self):
        self.release = threading.Event()

    def get(self, pair):
        self.release.wait(5)
        raise ProviderError("released")


# ---- base ----

def test_timeout_runner_raises_provider_error():
    runner = TimeoutRunner()
    release = threading.Event()
    try:
        with pytest.raises(ProviderError, match="timed out"):
            runner.call(lambda: release.wait(5), timeout=0.05)
        # the overrunning call above must not hold up the next one
        assert runner.call(lambda: 42, timeout=1) == 42
    finally:
        release.set()


def test_timeout_runner_passes_through_errors():
    def boom():
        raise ProviderError("upstream 500")

    with pytest.raises(ProviderError, match="upstream 500"):
        TimeoutRunner().call(boom, timeout=1)


def test_supervised_worker_stops_within_grace():
    class Idle:
        name = "idle"

        def __init__(self):
            self.started = threading.Event()

        def start(self, stop):
            self.started.set()
            stop.wait()

    w = Idle()
    sup = SupervisedWorker(w).start()
    assert w.started.wait(1)
    assert sup.alive
    assert sup.stop(grace=1) is True
    assert not sup.alive


# ---- poller ----

def test_poller_tick_processes_batch(mem_service):
    for i in range(3):
        mem_service.request_quote_update("EUR/USD", f"k{i}")
    poller = PollerWorker(mem_service, batch_limit=10, runner=TimeoutRunner())
    report = poller.tick()
    assert (report.claimed, report.done, report.failed) == (3, 3, 0)
    assert all(mem_service.get_quote_update(f"update-{i}").status == S.DONE for i in (1, 2, 3))
    assert poller.tick().claimed == 0


def test_poller_lease_sweep(mem_service, clock):
    mem_service.request_quote_update("EUR/USD", "k1")
    mem_service.claim("update-1")
    clock.advance(120)
    poller = PollerWorker(mem_service, lease=timedelta(seconds=60), runner=TimeoutRunner())
    poller.tick()
    job = mem_service.get_quote_update("update-1")
    assert job.status == S.FAILED and job.error == LEASE_EXPIRED


def test_poller_job_timeout_fails_job(mem_service):
    slow = BlockingProvider()
    mem_service.provider = slow
    mem_service.request_quote_update("EUR/USD", "k1")
    poller = PollerWorker(mem_service, job_timeout=0.05, runner=TimeoutRunner())
    try:
        report = poller.tick()
    finally:
        slow.release.set()
    assert report.failed == 1
    job = mem_service.get_quote_update("update-1")
    assert job.status == S.FAILED and "timed out" in job.error


def test_poller_loop_under_supervision(mem_service):
    poller = PollerWorker(mem_service, poll_every=0.01)
    sup = SupervisedWorker(poller).start()
    try:
        mem_service.request_quote_update("USD/MXN", "k1")
        assert wait_for(lambda: mem_service.get_quote_update("update-1").status == S.DONE)
    finally:
        assert sup.stop(grace=2)


def test_poller_can_be_restarted(mem_service):
    sup = SupervisedWorker(PollerWorker(mem_service, poll_every=0.01))
    sup.start()
    assert sup.stop(grace=2)
    sup.start()
    try:
        mem_service.request_quote_update("EUR/USD", "k1")
        assert wait_for(lambda: mem_service.get_quote_update("update-1").status == S.DONE)
    finally:
        assert sup.stop(grace=2)


# ---- channel ----

def test_channel_full_queue_rejects_and_fails_job(mem_service):
    d = ChannelDispatcher(mem_service, InMemoryQueueAdapter(maxsize=1), enqueue_timeout=0.01)
    mem_service.attach_dispatcher(d)

    mem_service.request_quote_update("EUR/USD", "k1")
    with pytest.raises(QueueFull):
        mem_service.request_quote_update("EUR/USD", "k2")
    assert mem_service.get_quote_update("update-2").status == S.FAILED

    mid, job = d.queue.pop(timeout=0.1)
    assert job.id == "update-1"
    assert d.process_one(job) is True
    d.queue.ack(mid)
    assert mem_service.get_quote_update("update-1").status == S.DONE
    assert mem_service.list_history("EUR/USD")[0].source == QuoteSource.CHANNEL
    # a second delivery of the same job is skipped
    assert d.process_one(job) is False


def test_channel_consumer_loop(mem_service):
    d = ChannelDispatcher(mem_service, InMemoryQueueAdapter(maxsize=10), pop_timeout=0.01)
    mem_service.attach_dispatcher(d)
    sup = SupervisedWorker(d).start()
    try:
        for i in range(3):
            mem_service.request_quote_update("EUR/USD", f"k{i}")
        assert wait_for(
            lambda: all(mem_service.get_quote_update(f"update-{i}").status == S.DONE for i in (1, 2, 3))
        )
    finally:
        assert sup.stop(grace=2)
    assert d.queue.depth() == 0


class StuckOnceProvider:
    """First call hangs until released; later calls answer at once."""

    source_name = "stuck-once"

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0
        self.release = threading.Event()

    def get(self, pair):
        self.calls += 1
        if self.calls == 1:
            self.release.wait(5)
            raise ProviderError("released")
        return self.inner.get(pair)


def test_channel_stuck_fetch_does_not_fail_next_job(mem_service, provider):
    stuck = StuckOnceProvider(provider)
    mem_service.provider = stuck
    d = ChannelDispatcher(mem_service, InMemoryQueueAdapter(maxsize=10), job_timeout=0.1)
    mem_service.attach_dispatcher(d)
    mem_service.request_quote_update("EUR/USD", "k1")
    mem_service.request_quote_update("EUR/USD", "k2")
    try:
        _, first = d.queue.pop(timeout=0.1)
        _, second = d.queue.pop(timeout=0.1)
        assert d.process_one(first) is False
        assert d.process_one(second) is True
    finally:
        stuck.release.set()
    assert stuck.calls == 2
    assert "timed out" in mem_service.get_quote_update("update-1").error
    assert mem_service.get_quote_update("update-2").status == S.DONE


def test_channel_can_be_restarted(mem_service):
    d = ChannelDispatcher(mem_service, InMemoryQueueAdapter(maxsize=10), pop_timeout=0.01)
    mem_service.attach_dispatcher(d)
    sup = SupervisedWorker(d)
    sup.start()
    assert sup.stop(grace=2)
    sup.start()
    try:
        mem_service.request_quote_update("EUR/USD", "k1")
        assert wait_for(lambda: mem_service.get_quote_update("update-1").status == S.DONE)
    finally:
        assert sup.stop(grace=2)


# ---- delegate ----

@pytest.fixture
def rate_client(provider):
    return RemoteRateClient("http://testserver", session=TestClient(create_rate_app(provider)))


def test_rate_server_fetch(provider):
    client = TestClient(create_rate_app(provider))
    r = client.post("/fetch", json={"pair": "eur/usd", "trace_id": "t-1"})
    assert r.status_code == 200
    assert r.json()["pair"] == "EUR/USD" and r.json()["price"] == 1.2345

    r = client.post("/fetch", json={"pair": "GBP/JPY"})
    assert r.status_code == 400 and r.json()["code"] == 400


class FailingProvider:
    source_name = "failing"

    def get(self, pair):
        raise ProviderError("upstream down")


def test_rate_server_provider_error_is_502():
    client = TestClient(create_rate_app(FailingProvider()))
    r = client.post("/fetch", json={"pair": "EUR/USD"})
    assert r.status_code == 502


def test_remote_client_maps_errors_to_provider_error():
    client = RemoteRateClient("http://testserver", session=TestClient(create_rate_app(FailingProvider())))
    with pytest.raises(ProviderError, match="status=502"):
        client.fetch("EUR/USD")


def test_delegate_process_one(mem_service, rate_client, clock):
    d = DelegateDispatcher(mem_service, rate_client, concurrency=1)
    mem_service.request_quote_update("EUR/USD", "k1")
    assert d.process_one(ClaimedJob(id="update-1", pair="EUR/USD"), "trace-1") is True
    job = mem_service.get_quote_update("update-1")
    assert job.status == S.DONE and job.price == 1.2345
    last = mem_service.get_last_quote("EUR/USD")
    assert last.updated_at == clock()
    assert mem_service.list_history("EUR/USD")[0].source == QuoteSource.DELEGATE


def test_delegate_dispatch_and_shutdown(mem_service, rate_client):
    d = DelegateDispatcher(mem_service, rate_client, concurrency=2)
    mem_service.attach_dispatcher(d)
    sup = SupervisedWorker(d).start()
    mem_service.request_quote_update("USD/MXN", "k1")
    assert wait_for(lambda: mem_service.get_quote_update("update-1").status == S.DONE)
    assert sup.stop(grace=2)

    with pytest.raises(QueueFull):
        mem_service.request_quote_update("USD/MXN", "k2")
    assert mem_service.get_quote_update("update-2").status == S.FAILED


class HangingClient:
    def __init__(self):
        self.release = threading.Event()

    def fetch(self, pair, trace_id=None):
        self.release.wait(5)
        raise ProviderError("released")


def test_delegate_fetch_is_bounded_by_job_timeout(mem_service):
    client = HangingClient()
    d = DelegateDispatcher(mem_service, client, concurrency=1, job_timeout=0.05)
    mem_service.request_quote_update("EUR/USD", "k1")
    t0 = time.monotonic()
    try:
        assert d.process_one(ClaimedJob(id="update-1", pair="EUR/USD")) is False
    finally:
        client.release.set()
    assert time.monotonic() - t0 < 1.0
    job = mem_service.get_quote_update("update-1")
    assert job.status == S.FAILED and "timed out" in job.error


def test_delegate_can_be_restarted(mem_service, rate_client):
    d = DelegateDispatcher(mem_service, rate_client, concurrency=1)
    mem_service.attach_dispatcher(d)
    sup = SupervisedWorker(d)
    sup.start()
    assert sup.stop(grace=2)
    sup.start()
    try:
        mem_service.request_quote_update("USD/MXN", "k1")
        assert wait_for(lambda: mem_service.get_quote_update("update-1").status == S.DONE)
    finally:
        assert sup.stop(grace=2)
