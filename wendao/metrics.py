# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Optional in-memory metrics, exposed on ``GET /metrics``.

Components report three kinds of samples:
- HTTP status codes, from the request middleware
- Named events, e.g. ``turn_action``, ``parse_recovered``,
  ``compaction_failed``, ``llm_error_timeout``, ``rejected_session_busy``
- Latencies per operation (``turn``, ``llm_call``, ``compaction`` and one
  ``http_game_*`` series per game route)

Event names follow prefix conventions so the snapshot can summarize
gameplay (turns played and failed, compactions, rejections) without every
caller updating a dedicated counter.
"""

import time
from collections import Counter, defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional


@dataclass
class LatencyStats:
    """Running count, total, min and max of a latency series in milliseconds."""
    count: int = 0
    total: float = 0.0
    min: float = float('inf')
    max: float = 0.0

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def record(self, value: float) -> None:
        self.count += 1
        self.total += value
        if value < self.min:
            self.min = value
        if value > self.max:
            self.max = value

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": round(self.avg, 2),
            "min_ms": round(self.min, 2) if self.count else 0.0,
            "max_ms": round(self.max, 2)
        }


def _count_with_prefix(events: Counter, prefix: str, exclude_suffix: str = "") -> int:
    return sum(
        count for name, count in events.items()
        if name.startswith(prefix) and not (exclude_suffix and name.endswith(exclude_suffix))
    )


class MetricsCollector:
    """Thread-safe counters and latency series for one service process.

    Background compaction runs after the response is sent, so samples can
    arrive from several tasks at once; all updates take the lock.
    """

    def __init__(self):
        self._lock = Lock()
        self._status_codes: Counter = Counter()
        self._events: Counter = Counter()
        self._latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._started = time.time()

    def record_request(self, status_code: int) -> None:
        with self._lock:
            self._status_codes[status_code] += 1

    def record_event(self, event_type: str) -> None:
        """Count one occurrence of ``event_type``."""
        with self._lock:
            self._events[event_type] += 1

    def record_latency(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self._latencies[operation].record(duration_ms)

    def get_metrics(self) -> Dict:
        """Snapshot of everything recorded since start or the last reset."""
        with self._lock:
            statuses = dict(self._status_codes)
            events = Counter(self._events)
            latencies = {name: stats.to_dict() for name, stats in self._latencies.items()}
            uptime = time.time() - self._started

        total = sum(statuses.values())
        succeeded = sum(count for code, count in statuses.items() if 200 <= code < 400)
        client_errors = sum(count for code, count in statuses.items() if 400 <= code < 500)

        strict = events["parse_strict"]
        recovered = events["parse_recovered"]
        parses = strict + recovered

        return {
            "uptime_seconds": round(uptime, 2),
            "requests": {
                "total": total,
                "success": succeeded,
                "errors": total - succeeded,
                "client_errors": client_errors,
                "server_errors": total - succeeded - client_errors,
                "by_status_code": statuses
            },
            "events": {
                "by_type": dict(events)
            },
            "gameplay": {
                "turns_completed": _count_with_prefix(events, "turn_", exclude_suffix="_failed"),
                "turns_failed": _count_with_prefix(events, "turn_") - _count_with_prefix(
                    events, "turn_", exclude_suffix="_failed"
                ),
                "compactions_succeeded": events["compaction_succeeded"],
                "compactions_failed": events["compaction_failed"],
                "requests_rejected": _count_with_prefix(events, "rejected_"),
                "completion_errors": _count_with_prefix(events, "llm_error_")
            },
            "latencies": latencies,
            "schema_conformance": {
                "total_parses": parses,
                "strict_parses": strict,
                "recovered_parses": recovered,
                "conformance_rate": round(strict / parses, 4) if parses else 0.0
            }
        }

    def reset(self) -> None:
        with self._lock:
            self._status_codes.clear()
            self._events.clear()
            self._latencies.clear()
            self._started = time.time()


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Return the process-wide collector, or None when metrics are disabled."""
    return _metrics_collector


def init_metrics_collector() -> MetricsCollector:
    """Create the process-wide collector if it does not exist yet."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def disable_metrics_collector() -> None:
    global _metrics_collector
    _metrics_collector = None


class MetricsTimer:
    """Record the duration of a block as a latency sample.

    Usage:
        with MetricsTimer("turn"):
            outcome = await orchestrator.submit_action(action)

    The collector is looked up once on construction; when metrics are
    disabled the timer does nothing.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.collector = get_metrics_collector()
        self._start = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.collector is not None:
            self.collector.record_latency(self.operation, (time.perf_counter() - self._start) * 1000)
