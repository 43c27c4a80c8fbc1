from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(slots=True)
class AgentHealth:
    name: str
    healthy: bool = False
    ready: bool = False
    last_error: str | None = None
    last_refresh_at: datetime | None = None
    last_event_at: datetime | None = None
    metrics: dict[str, int] = field(default_factory=dict)

    def mark_event(self) -> None:
        self.last_event_at = datetime.now(timezone.utc)

    def mark_refreshed(self) -> None:
        self.healthy = True
        self.ready = True
        self.last_error = None
        self.last_refresh_at = datetime.now(timezone.utc)
        self.incr("refreshes")

    def mark_error(self, error: Exception) -> None:
        self.healthy = False
        self.last_error = str(error)
        self.incr("errors")

    def incr(self, metric: str, amount: int = 1) -> None:
        self.metrics[metric] = self.metrics.get(metric, 0) + amount

    def payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "ready": self.ready,
            "last_error": self.last_error,
            "last_refresh_at": _iso(self.last_refresh_at),
            "last_event_at": _iso(self.last_event_at),
            "metrics": dict(self.metrics),
        }
