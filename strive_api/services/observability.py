"""In-process stream outcome counters, keyed by endpoint.

Each finished stream is recorded once with how it ended:

    completed     terminal event sent after the full reply
    interrupted   terminal event sent with an error (upstream failed mid-stream)
    disconnected  client went away before the terminal event
    failed        unexpected server error while streaming

Exposed as-is by ``GET /internal/metrics``.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass
class StreamStats:
    outcomes: Counter = field(default_factory=Counter)
    events: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0

    @property
    def streams(self) -> int:
        return sum(self.outcomes.values())


_stats: dict[str, StreamStats] = defaultdict(StreamStats)


def record_stream(endpoint: str, outcome: StreamOutcome, duration_ms: float, events: int) -> None:
    stats = _stats[endpoint]
    stats.outcomes[outcome] += 1
    stats.events += events
    stats.total_duration_ms += duration_ms
    stats.max_duration_ms = max(stats.max_duration_ms, duration_ms)


def get_metric_snapshot() -> dict[str, dict[str, float]]:
    out: dict[str, dict[str, float]] = {}
    for endpoint, stats in _stats.items():
        streams = stats.streams
        snapshot: dict[str, float] = {"streams": float(streams)}
        for outcome in StreamOutcome:
            snapshot[outcome.value] = float(stats.outcomes[outcome])
        snapshot["avg_duration_ms"] = stats.total_duration_ms / streams if streams else 0.0
        snapshot["max_duration_ms"] = stats.max_duration_ms
        snapshot["avg_events"] = stats.events / streams if streams else 0.0
        snapshot["interruption_rate"] = (
            stats.outcomes[StreamOutcome.INTERRUPTED] / streams if streams else 0.0
        )
        out[endpoint] = snapshot
    return out


def reset_metrics() -> None:
    _stats.clear()
