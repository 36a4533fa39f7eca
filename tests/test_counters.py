import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from prometheus_client import CollectorRegistry

from rollout_demo.core import Counters, Reporter, connect, key_for, CHECK


def _fan_out(fn, n, workers=16):
    with ThreadPoolExecutor(max_workers=workers) as ex:
        list(ex.map(lambda _: fn(), range(n)))


@pytest.fixture
def local():
    c = Counters(CollectorRegistry())
    yield c
    c.close()


@pytest.fixture
def backed(fake):
    c = Counters(CollectorRegistry(), fake)
    yield c
    c.close()


@pytest.mark.parametrize("n", [1, 100, 10000])
def test_concurrent_increments_are_not_lost(local, n):
    _fan_out(lambda: local.increment(200), n)
    assert local.snapshot() == {200: n, 500: 0}


@pytest.mark.parametrize("n", [1, 100, 10000])
def test_concurrent_increments_reach_redis(backed, fake, n):
    _fan_out(lambda: backed.increment(500), n)
    backed.drain()
    assert fake.d == {key_for(500): n}
    assert backed.snapshot() == {200: 0, 500: n}


def test_reset_then_snapshot_is_zero(local):
    local.increment(200)
    local.increment(500)
    local.reset()
    assert local.snapshot() == {200: 0, 500: 0}


def test_reset_clears_redis_and_local(backed, fake):
    fake.d.update({"status_200": 7, "status_500": 3})
    backed.increment(200)
    backed.drain()
    backed.reset()
    assert fake.d == {}
    assert backed.local() == {200: 0, 500: 0}
    assert backed.snapshot() == {200: 0, 500: 0}


def test_reset_waits_for_write_in_flight(backed, fake):
    fake.gate = threading.Event()
    backed.increment(200)
    assert fake.entered.wait(2)
    t = threading.Thread(target=backed.reset)
    t.start()
    time.sleep(0.1)
    # the DEL must not run while the INCR is still outstanding
    assert t.is_alive()
    fake.gate.set()
    t.join(2)
    assert not t.is_alive()
    assert fake.d == {}
    assert backed.snapshot() == {200: 0, 500: 0}


def test_stale_zero_redis_falls_back_to_local(backed, fake):
    fake.stale = True
    backed.reset()
    backed.increment(200)
    assert backed.snapshot() == {200: 1, 500: 0}


def test_redis_values_preferred_when_nonzero(backed, fake):
    fake.d.update({"status_200": 5, "status_500": 2})
    backed.increment(200)
    backed.drain()
    assert backed.snapshot() == {200: 6, 500: 2}
    assert backed.local() == {200: 1, 500: 0}


def test_redis_read_failure_uses_local(backed, fake):
    backed.increment(500)
    backed.drain()
    fake.fail_get = True
    assert backed.snapshot() == {200: 0, 500: 1}
    # reads failing does not give up on redis
    assert backed.client() is fake


def test_redis_write_failure_detaches_for_good(backed, fake):
    fake.fail_incr = True
    for _ in range(3):
        backed.increment(500)
    backed.drain()
    assert backed.client() is None
    fake.fail_incr = False
    backed.increment(200)
    backed.drain()
    assert fake.d == {}
    assert backed.snapshot() == {200: 1, 500: 3}


def test_other_endpoints_do_not_count_as_outcomes(local):
    for _ in range(5):
        local.record("/api/healthz", 200)
    local.record("/api/set-error-rate", 400)
    local.increment(500)
    assert local.local() == {200: 0, 500: 1}
    assert local.local("/api/healthz") == {200: 5, 500: 0}
    assert Reporter(local).report() == {"200": 0, "500": 1}


def test_report_uses_status_strings(local):
    local.increment(200)
    local.increment(200)
    r = Reporter(local).report()
    assert r == {"200": 2, "500": 0}
    assert local.reg.get_sample_value(
        "http_requests_total", {"endpoint": CHECK, "status_code": "200"}
    ) == 2


def test_close_closes_client(fake):
    c = Counters(CollectorRegistry(), fake)
    c.close()
    assert fake.closed


def test_connect_without_address():
    assert connect(None) is None
    assert connect("") is None


def test_connect_unreachable_falls_back():
    assert connect("127.0.0.1:1") is None
