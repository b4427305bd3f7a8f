"""
Turn metrics collector for the companion service.

Tracks: turn latency, reply sources, extraction outcomes, error count and
process memory. Each turn is appended to <metrics dir>/turns.jsonl.
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
from .observability import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Thread-safe turn metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        self._total_turns: int = 0
        self._total_latency_ms: float = 0.0
        self._error_count: int = 0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._reply_sources: Counter[str] = Counter()
        self._extraction_statuses: Counter[str] = Counter()
        self._closed_sessions: int = 0

        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "turns.jsonl"

        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_turn(
        self,
        latency_ms: float,
        success: bool,
        reply_source: str = "",
        extraction_status: str = "",
        conversation_complete: bool = False,
    ) -> None:
        """Records one turn's outcome and appends it to the JSONL log."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "reply_source": reply_source,
            "extraction_status": extraction_status,
            "conversation_complete": conversation_complete,
        }

        with self._lock:
            self._total_turns += 1
            self._total_latency_ms += latency_ms
            self._min_latency_ms = min(self._min_latency_ms, latency_ms)
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)
            if not success:
                self._error_count += 1
            if reply_source:
                self._reply_sources[reply_source] += 1
            if extraction_status:
                self._extraction_statuses[extraction_status] += 1
            if conversation_complete:
                self._closed_sessions += 1

        # Append outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            total = self._total_turns
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            errors = self._error_count
            sources = dict(self._reply_sources)
            statuses = dict(self._extraction_statuses)
            closed = self._closed_sessions

        uptime_s = time.time() - self._start_time
        throughput = (total / uptime_s) if uptime_s > 0 else 0.0

        mem_info = self._process.memory_info()

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "throughput": {
                "total_turns": total,
                "turns_per_second": round(throughput, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "replies": {
                "by_source": sources,
                "closed_sessions": closed,
            },
            "extraction": {
                "by_status": statuses,
            },
            "errors": {
                "count": errors,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
            },
        }
