"""
In-memory sweep metrics, read back through GET /metrics.

What gets recorded:
  - counters   sweep.runs, sweep.processed/completed/failed, sweep.unrecorded,
               credits.refunds
  - gauges     start_time, sweep.due_instances (backlog seen by the last sweep)
  - latency    rolling window of sweep durations in ms
  - errors     the last MAX_ERRORS failures, tagged with source and instance id

Nothing here is persisted. The instance rows are the durable record; these
numbers only describe the current process.
"""

import threading
import time
from collections import Counter, deque
from contextlib import contextmanager
from typing import Deque, Dict

MAX_SAMPLES = 100
MAX_ERRORS = 50
RECENT_ERRORS_SHOWN = 10

_lock = threading.Lock()
_counters: Counter = Counter()
_gauges: Dict[str, float] = {}
_latency: Dict[str, Deque[float]] = {}
_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(name: str, duration_ms: float):
    with _lock:
        window = _latency.setdefault(name, deque(maxlen=MAX_SAMPLES))
        window.append(duration_ms)


@contextmanager
def timed(name: str):
    """Record the wrapped block's wall time under `name`."""
    started = time.perf_counter()
    try:
        yield
    finally:
        record_latency(name, (time.perf_counter() - started) * 1000)


def record_error(source: str, error_type: str, message: str, instance_id: str = ""):
    with _lock:
        _errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "instance_id": instance_id,
        })


def reset():
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency.clear()
        _errors.clear()


def _summarize(window: Deque[float]) -> dict:
    ordered = sorted(window)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    """
    Everything collected so far, shaped for the /metrics endpoint.

    failure_rate is the share of processed instances that ended the sweep
    failed, as a percentage.
    """
    now = time.time()
    with _lock:
        processed = _counters.get("sweep.processed", 0)
        failed = _counters.get("sweep.failed", 0)
        patterns = Counter(f"{e['source']}:{e['error_type']}" for e in _errors)

        return {
            "timestamp": now,
            "uptime_seconds": now - _gauges.get("start_time", now),
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {name: _summarize(w) for name, w in _latency.items() if w},
            "failure_rate": round(failed / processed * 100, 2) if processed else 0.0,
            "error_patterns": dict(patterns),
            "recent_errors": list(_errors)[-RECENT_ERRORS_SHOWN:],
        }
