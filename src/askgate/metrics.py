"""
Invocation metrics collector for the AskGate service.

Tracks: latency, throughput, outcome counts, and process memory.
Appends one JSON line per finished invocation to <METRICS_DIR>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil

from .config import METRICS_DIR

_SUCCESS_STATES = {"completed"}


class MetricsCollector:
    """Thread-safe invocation outcome tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Counters.
        self._total: int = 0
        self._total_latency_s: float = 0.0
        self._min_latency_s: float = float("inf")
        self._max_latency_s: float = 0.0
        self._by_state: Counter[str] = Counter()

        # Logging.
        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    def record_invocation(self, duration_s: float, state: str) -> None:
        """Records one settled invocation and appends it to the JSONL log."""
        duration_s = max(0.0, float(duration_s))
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "duration_s": round(duration_s, 3),
            "state": str(state),
        }

        with self._lock:
            self._total += 1
            self._total_latency_s += duration_s
            self._min_latency_s = min(self._min_latency_s, duration_s)
            self._max_latency_s = max(self._max_latency_s, duration_s)
            self._by_state[str(state)] += 1

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            total = self._total
            avg_lat = (self._total_latency_s / total) if total > 0 else 0.0
            min_lat = self._min_latency_s if total > 0 else 0.0
            max_lat = self._max_latency_s if total > 0 else 0.0
            by_state = dict(self._by_state)

        succeeded = sum(count for state, count in by_state.items() if state in _SUCCESS_STATES)
        failed = total - succeeded - by_state.get("cancelled", 0)

        uptime_s = time.time() - self._start_time
        throughput = (total / uptime_s) if uptime_s > 0 else 0.0

        mem_info = self._process.memory_info()

        return {
            "latency": {
                "avg_s": round(avg_lat, 3),
                "min_s": round(min_lat, 3),
                "max_s": round(max_lat, 3),
            },
            "throughput": {
                "total_invocations": total,
                "invocations_per_second": round(throughput, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "outcomes": by_state,
            "errors": {
                "count": failed,
                "rate_percent": round((failed / total * 100) if total > 0 else 0.0, 2),
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
