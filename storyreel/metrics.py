"""
Thread-safe in-memory metrics collector for the worker.

Tracks what the pipeline needs for root-cause analysis:
  - Traffic: provider requests and pipeline runs by kind
  - Latency: per-endpoint request duration samples
  - Errors: failure counters plus the last 50 error records

All data is ephemeral (resets on restart).
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per key) ───────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Error log (last 50 errors) ───────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50

_started_at = time.time()


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'kie.requests', 'runs.failed')."""
    with _lock:
        _counters[name] += amount


def record_latency(key: str, duration_ms: float):
    """Record a latency sample in milliseconds."""
    with _lock:
        samples = _latency_samples[key]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[key] = samples[-MAX_SAMPLES:]


def record_error(source: str, error_type: str, message: str, run_id: str = ""):
    """Record an error for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "run_id": run_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_snapshot() -> dict:
    """Return a metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for key, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[key] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['source']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _started_at,
        }


def reset():
    """Clear all collected data."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _recent_errors.clear()
