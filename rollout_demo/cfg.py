"""Process configuration (read once from the environment) and the JSON line logger."""

import os, sys, json, time


def env(k, d=None):
    """Fetch an env var with a default, treat empty as missing."""
    v = os.getenv(k)
    if v is None or v == "":
        return d
    return v

# ---------- env / cfg ----------

VERSION    = env("VERSION", "1")
BUILD_HASH = env("BUILD_HASH", "dev")
PORT       = int(env("PORT", "8080"))
MPORT      = int(env("METRICS_PORT", "9000"))

# host:port or redis:// url; unset means local-only counters
REDIS_ADDR = env("REDIS_ADDR")

# Optional log file (each line is also written as jsonl)
LOG_PATH = env("LOG_PATH", "")

# ---------- tiny log ----------

def log_line(d):
    """Write a single JSON line to stdout (and optional file)."""
    d["ts"] = d.get("ts") or int(time.time())
    s = json.dumps(d, separators=(",", ":"))
    try:
        sys.stdout.write(s + "\n")
    except Exception:
        pass
    if LOG_PATH:
        try:
            with open(LOG_PATH, "a") as f:
                f.write(s + "\n")
        except Exception:
            pass


def warn(msg, **kw):
    log_line(dict(lvl="warn", msg=msg, **kw))


def err(msg, **kw):
    log_line(dict(lvl="error", msg=msg, **kw))
