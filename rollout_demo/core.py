"""
Request-outcome core used by the HTTP layer:
- RateStore: error-injection probability, shared by all request threads
- Simulator: weighted success/failure draw from a lock-guarded generator
- Counters: per-status counts, Redis-backed with an in-process fallback
- Tagger / Reporter: version header and dashboard snapshot
- Service: wires the above together for one process
"""

import math, queue, random, threading

import redis
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from .cfg import log_line, warn

OK   = 200
FAIL = 500
TRACKED = (OK, FAIL)

CHECK = "/api/check"

# redis errors plus socket-level failures raised before redis wraps them
STORE_ERRORS = (redis.RedisError, OSError)


def key_for(code):
    return "status_%d" % code

# ---------- rate ----------

class InvalidRate(ValueError):
    pass


class RateStore:
    """Error rate as a percentage on the wire, a fraction for the simulator."""
    def __init__(self):
        self.lock = threading.Lock()
        self.pct = 0.0
        self.frac = 0.0

    def set(self, p):
        if isinstance(p, bool) or not isinstance(p, (int, float)):
            raise InvalidRate("Error rate must be a number")
        try:
            p = float(p)
        except OverflowError:
            raise InvalidRate("Error rate must be between 0 and 100")
        if math.isnan(p) or p < 0 or p > 100:
            raise InvalidRate("Error rate must be between 0 and 100")
        with self.lock:
            self.pct, self.frac = p, p / 100.0

    def get(self):
        with self.lock:
            return self.pct

    def fraction(self):
        with self.lock:
            return self.frac

    def read(self):
        """(percentage, fraction) from the same set()."""
        with self.lock:
            return self.pct, self.frac

# ---------- outcome ----------

class Simulator:
    def __init__(self, seed=None):
        self.rng = random.Random(seed)
        self.lock = threading.Lock()

    def decide(self, rate):
        """Return FAIL if one uniform draw falls under `rate` (0..1), else OK."""
        with self.lock:
            x = self.rng.random()
        return FAIL if x < rate else OK

# ---------- durable writes ----------

class Writer:
    """Background queue that applies INCRs to redis without blocking requests."""
    def __init__(self, cli, on_error, size=10000):
        self.cli = cli
        self.on_error = on_error
        self.q = queue.Queue(maxsize=size)
        self.stop = threading.Event()
        self.t = threading.Thread(target=self.run, name="redis-writer", daemon=True)
        self.t.start()

    def put(self, key):
        try:
            self.q.put_nowait(key)
            return True
        except queue.Full:
            return False

    def run(self):
        while not self.stop.is_set():
            try:
                key = self.q.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                if self.cli is not None:
                    self.cli.incr(key)
            except STORE_ERRORS as e:
                self.cli = None
                self.on_error(e)
            finally:
                self.q.task_done()

    def discard(self):
        """Drop writes that have not been sent yet."""
        n = 0
        while True:
            try:
                self.q.get_nowait()
            except queue.Empty:
                return n
            self.q.task_done()
            n += 1

    def drain(self):
        """Block until every queued write, including one in flight, is done."""
        if self.t.is_alive():
            self.q.join()

    def stop_now(self):
        self.stop.set()
        self.t.join(timeout=2)

# ---------- counters ----------

class Counters:
    """Per-status counts: redis is the source of truth when present, local otherwise."""
    def __init__(self, reg, cli=None):
        self.lock = threading.Lock()
        self.reg = reg
        self.cli = cli
        self.reqs = Counter(
            "http_requests_total", "Total number of HTTP requests by endpoint and status code",
            ["endpoint", "status_code"], registry=reg
        )
        self.w = Writer(cli, self.detach) if cli is not None else None

    def client(self):
        with self.lock:
            return self.cli

    def detach(self, e):
        """Give up on redis for the rest of the process lifetime."""
        with self.lock:
            was = self.cli is not None
            self.cli = None
        if was:
            warn("redis write failed, falling back to local metrics only", error=str(e))

    def record(self, endpoint, code):
        self.reqs.labels(endpoint=endpoint, status_code=str(code)).inc()

    def increment(self, code):
        self.record(CHECK, code)
        if self.w is not None and self.client() is not None:
            if not self.w.put(key_for(code)):
                warn("redis write queue full, dropping increment", code=code)

    def local(self, endpoint=CHECK):
        out = {}
        for c in TRACKED:
            s = self.reg.get_sample_value(
                "http_requests_total", {"endpoint": endpoint, "status_code": str(c)}
            )
            out[c] = int(s or 0)
        return out

    def remote(self):
        cli = self.client()
        if cli is None:
            return None
        try:
            vals = cli.mget([key_for(c) for c in TRACKED])
        except STORE_ERRORS as e:
            warn("redis read failed, using local metrics", error=str(e))
            return None
        return {c: int(v or 0) for c, v in zip(TRACKED, vals)}

    def snapshot(self):
        r = self.remote()
        # an all-zero remote view may just be redis warming up after a reset
        if r is None or not any(r.values()):
            return self.local()
        return r

    def reset(self):
        if self.w is not None:
            self.w.discard()
            # an INCR already taken off the queue must land before the DEL
            self.w.drain()
        cli = self.client()
        if cli is not None:
            try:
                cli.delete(*[key_for(c) for c in TRACKED])
            except STORE_ERRORS as e:
                warn("failed to reset redis counters", error=str(e))
        # an inc() racing clear() may hit a dropped child and be lost
        self.reqs.clear()

    def drain(self):
        if self.w is not None:
            self.w.drain()

    def close(self):
        if self.w is not None:
            self.w.stop_now()
        cli = self.client()
        if cli is not None:
            try:
                cli.close()
            except STORE_ERRORS:
                pass


def connect(addr):
    """Open and ping a redis client; None means run with local counters only."""
    if not addr:
        log_line({"lvl": "info", "msg": "no REDIS_ADDR, using local metrics only"})
        return None
    url = addr if "://" in addr else "redis://" + addr
    cli = redis.Redis.from_url(url, socket_connect_timeout=5, socket_timeout=3)
    try:
        cli.ping()
    except STORE_ERRORS as e:
        warn("could not connect to redis, falling back to local metrics only",
             addr=addr.split("@")[-1], error=str(e))
        cli.close()
        return None
    return cli

# ---------- tagging / reporting ----------

class Tagger:
    def __init__(self, version):
        self.version = str(version)

    def tag(self, headers=None):
        h = dict(headers or {})
        h["X-Version"] = self.version
        return h


class Reporter:
    def __init__(self, counters):
        self.counters = counters

    def report(self):
        """Check-endpoint outcomes keyed by status code string."""
        snap = self.counters.snapshot()
        return {str(c): int(snap.get(c, 0)) for c in TRACKED}

# ---------- service ----------

class Service:
    """Everything one backend process shares between request threads."""
    def __init__(self, version, cli=None, seed=None, registry=None):
        self.reg = registry or CollectorRegistry()
        self.version = str(version)
        self.rate = RateStore()
        self.sim = Simulator(seed)
        self.counters = Counters(self.reg, cli)
        self.tagger = Tagger(self.version)
        self.reporter = Reporter(self.counters)
        self.lat = Histogram(
            "http_request_duration_seconds", "HTTP latency seconds", ["endpoint"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
            registry=self.reg
        )
        self.inp = Gauge("http_requests_inprogress", "Requests in progress", ["endpoint"],
                         registry=self.reg)

    def check(self):
        """Decide and tag one check response; the durable count is only queued."""
        code = self.sim.decide(self.rate.fraction())
        h = self.tagger.tag()
        self.counters.increment(code)
        return code, h

    def close(self):
        self.counters.close()
