"""Shared fixtures: an in-memory redis double and a live threaded server."""

import threading

import pytest
import redis

from rollout_demo.core import Service
from rollout_demo.main import make_server


class FakeRedis:
    """Just the redis commands the counter store uses."""
    def __init__(self):
        self.lock = threading.Lock()
        self.d = {}
        self.fail_incr = False
        self.fail_get = False
        self.stale = False
        self.closed = False
        # set to an Event to hold incr() mid-write until it fires
        self.gate = None
        self.entered = threading.Event()

    def ping(self):
        return True

    def incr(self, k):
        if self.fail_incr:
            raise redis.ConnectionError("connection refused")
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        with self.lock:
            self.d[k] = self.d.get(k, 0) + 1
            return self.d[k]

    def mget(self, keys):
        if self.fail_get:
            raise redis.ConnectionError("connection refused")
        if self.stale:
            return [None] * len(keys)
        with self.lock:
            return [str(self.d[k]).encode() if k in self.d else None for k in keys]

    def delete(self, *keys):
        with self.lock:
            n = 0
            for k in keys:
                n += self.d.pop(k, None) is not None
            return n

    def close(self):
        self.closed = True


@pytest.fixture
def fake():
    return FakeRedis()


@pytest.fixture
def svc():
    s = Service("v-test", seed=7)
    yield s
    s.close()


@pytest.fixture
def rsvc(fake):
    s = Service("v-test", cli=fake, seed=7)
    yield s
    s.close()


def _serve(s):
    srv = make_server(s, "127.0.0.1", 0)
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    return srv, "http://127.0.0.1:%d" % srv.server_address[1]


@pytest.fixture
def base(svc):
    srv, url = _serve(svc)
    yield url
    srv.shutdown()
    srv.server_close()


@pytest.fixture
def rbase(rsvc):
    srv, url = _serve(rsvc)
    yield url
    srv.shutdown()
    srv.server_close()
