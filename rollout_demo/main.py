#!/usr/bin/env python3
"""
Backend for the canary / blue-green rollout demo:
- /api/healthz for liveness and readiness probes
- /api/check answers 200 or 500 according to the injected error rate,
  stamped with X-Version so the dashboard can split traffic by revision
- /api/error-rate and /api/set-error-rate to read and steer failure injection
- /api/metrics and /api/reset-metrics for the status-code counters
- Prometheus metrics on a separate port
- Small CLI helpers to drive traffic and poke the API
"""

import json, time, signal, threading, argparse
from collections import Counter as Tally
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse
from prometheus_client import start_http_server

from . import cfg
from .cfg import log_line, err, env
from .core import Service, InvalidRate, connect, CHECK

HEALTH = "/api/healthz"
RATE_GET = "/api/error-rate"
RATE_SET = "/api/set-error-rate"
METRICS = "/api/metrics"
RESET = "/api/reset-metrics"

ROUTES = {HEALTH, CHECK, RATE_GET, RATE_SET, METRICS, RESET}

CORS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Expose-Headers": "X-Version, Authorization, Content-Length",
}


class BadRequest(Exception):
    pass

# ---------- http ----------

def jb(o): return json.dumps(o, separators=(",", ":")).encode()


class Handler(BaseHTTPRequestHandler):
    """All routes are handled here; the Service is bound at startup."""
    svc = None

    def log_message(self, f, *a):  # silence default http.server logging
        pass

    def do_GET(self):     self._d("GET")
    def do_POST(self):    self._d("POST")
    def do_OPTIONS(self): self._d("OPTIONS")

    def _send(self, c, b=b"", ct=None, headers=None):
        self.send_response(c)
        if ct:
            self.send_header("Content-Type", ct)
        self.send_header("Content-Length", str(len(b)))
        for k, v in CORS.items():
            self.send_header(k, v)
        for k, v in (headers or {}).items():
            self.send_header(k, v)
        self.end_headers()
        if b:
            self.wfile.write(b)
        self._resp_code = c

    def _j(self, c, o, headers=None):
        self._send(c, jb(o), "application/json", headers)

    def _body(self):
        """Parse a JSON object body; anything else is a client error."""
        try:
            l = int(self.headers.get("Content-Length", "0") or "0")
            b = self.rfile.read(l) if l > 0 else b""
            d = json.loads(b.decode() or "null")
        except ValueError:
            raise BadRequest("Invalid JSON")
        if not isinstance(d, dict):
            raise BadRequest("Invalid JSON")
        return d

    def _d(self, m):
        """Main dispatcher for all routes."""
        t0 = time.perf_counter()
        p = urlparse(self.path).path
        lbl = p if p in ROUTES else "other"
        svc = self.svc
        svc.inp.labels(endpoint=lbl).inc()
        self._resp_code = None

        try:
            if m == "OPTIONS":
                self._send(204)
            elif p == HEALTH and m == "GET":
                self._send(200)
            elif p == CHECK and m == "GET":
                c, h = svc.check()
                self._send(c, headers=h)
            elif p == RATE_GET and m == "GET":
                self._j(200, {"value": svc.rate.get()})
            elif p == RATE_SET and m == "POST":
                d = self._body()
                try:
                    svc.rate.set(d.get("value"))
                except InvalidRate as e:
                    raise BadRequest(str(e))
                log_line({"lvl": "info", "msg": "error rate updated", "value": svc.rate.get()})
                self._j(200, {"message": "Error rate updated"})
            elif p == METRICS and m == "GET":
                self._j(200, svc.reporter.report())
            elif p == RESET and m == "POST":
                svc.counters.reset()
                log_line({"lvl": "info", "msg": "metrics reset"})
                self._j(200, {"message": "Metrics reset successfully"})
            else:
                self._j(404, {"error": "not found"})

        except BadRequest as e:
            self._j(400, {"error": str(e)})
        except Exception as e:
            err("unhandled error", p=p, error=repr(e))
            if self._resp_code is None:
                self._j(500, {"error": "internal server error"})
        finally:
            svc.inp.labels(endpoint=lbl).dec()
            dt = max(0.0, time.perf_counter() - t0)
            rc = self._resp_code or 500
            # check outcomes are counted by the service itself
            if lbl != CHECK:
                svc.counters.record(lbl, rc)
            svc.lat.labels(endpoint=lbl).observe(dt)
            log_line({"m": m, "p": p, "c": rc, "ms": int(dt * 1000), "ver": svc.version})

# ---------- serve ----------

def make_server(svc, host="", port=cfg.PORT):
    h = type("BoundHandler", (Handler,), {"svc": svc})
    srv = ThreadingHTTPServer((host, port), h)
    srv.daemon_threads = True
    return srv


def serve():
    """Wire redis + service + metrics + HTTP server, handle shutdown cleanly."""
    log_line({"lvl": "info", "msg": "starting server", "version": cfg.VERSION, "build": cfg.BUILD_HASH})
    svc = Service(cfg.VERSION, connect(cfg.REDIS_ADDR))

    # Prometheus exporter (separate port)
    start_http_server(cfg.MPORT, registry=svc.reg)

    srv = make_server(svc)

    def stop(sig, frm):
        log_line({"lvl": "info", "msg": "shutting down server"})
        # shutdown() blocks until serve_forever returns, so not from this thread
        threading.Thread(target=srv.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT,  stop)
    signal.signal(signal.SIGTERM, stop)
    try:
        srv.serve_forever()
    finally:
        srv.server_close()
        svc.close()
        log_line({"lvl": "info", "msg": "server exited"})

# ---------- CLI helpers (optional) ----------

def cli_load(base, secs, pause=0.1):
    """Poll /api/check like the dashboard does and tally codes per version."""
    import requests
    t0 = time.time()
    codes, vers = Tally(), Tally()
    while time.time() - t0 < secs:
        try:
            r = requests.get(base + CHECK, timeout=2)
            codes[str(r.status_code)] += 1
            vers[r.headers.get("X-Version", "?")] += 1
        except requests.RequestException:
            codes["error"] += 1
        time.sleep(pause)
    out = {"codes": dict(codes), "versions": dict(vers)}
    print(json.dumps(out))
    return out


def cli_set_rate(base, value):
    import requests
    r = requests.post(base + RATE_SET, json={"value": value}, timeout=3)
    print(json.dumps({"status": r.status_code, "body": r.json()}))
    return r.ok


def cli_metrics(base):
    import requests
    d = requests.get(base + METRICS, timeout=3).json()
    print(json.dumps(d))
    return d


def cli_reset(base):
    import requests
    r = requests.post(base + RESET, timeout=3)
    print(json.dumps({"status": r.status_code, "body": r.json()}))
    return r.ok

# ---------- main ----------

def main(argv=None):
    ap = argparse.ArgumentParser(description="rollout demo backend")
    ap.add_argument("--serve",    action="store_true", help="run the web server (default)")
    ap.add_argument("--load",     type=int, default=0, help="drive /api/check for N seconds")
    ap.add_argument("--set-rate", type=float, default=None, help="set error rate (0-100)")
    ap.add_argument("--metrics",  action="store_true")
    ap.add_argument("--reset",    action="store_true")
    ap.add_argument("--base",     default=env("API_BASE_URL", "http://localhost:%d" % cfg.PORT))
    args = ap.parse_args(argv)

    if args.serve or not any([args.load, args.set_rate is not None, args.metrics, args.reset]):
        serve()
    else:
        if args.set_rate is not None: cli_set_rate(args.base, args.set_rate)
        if args.reset:                cli_reset(args.base)
        if args.load > 0:             cli_load(args.base, args.load)
        if args.metrics:              cli_metrics(args.base)


if __name__ == "__main__":
    main()
