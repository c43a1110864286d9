from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from threading import Lock

from fastapi import Request

logger = logging.getLogger("whatsapp_gateway")

METRIC_PREFIX = "whatsapp_gateway"


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    events: dict[str, int] = field(default_factory=dict)
    routes: dict[tuple[str, int], int] = field(default_factory=dict)

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.requests_total if self.requests_total else 0.0


class MetricsRegistry:
    """Process-local counters for HTTP traffic and webhook/dispatch outcomes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._routes: dict[tuple[str, int], int] = {}
        self._events: dict[str, int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        key = (route, status_code)
        with self._lock:
            self._requests_total += 1
            self._requests_5xx += int(status_code >= 500)
            self._total_latency_ms += latency_ms
            self._routes[key] = self._routes.get(key, 0) + 1

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._events[name] = self._events.get(name, 0) + amount

    def count(self, name: str) -> int:
        with self._lock:
            return self._events.get(name, 0)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                events=dict(self._events),
                routes=dict(self._routes),
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        lines: list[str] = []
        _series(lines, "requests_total", "counter", "HTTP requests", [("", snap.requests_total)])
        _series(lines, "requests_5xx_total", "counter", "HTTP 5xx responses", [("", snap.requests_5xx)])
        _series(
            lines,
            "request_avg_latency_ms",
            "gauge",
            "Average request latency ms",
            [("", f"{snap.avg_latency_ms:.2f}")],
        )
        _series(
            lines,
            "events_total",
            "counter",
            "Webhook and dispatch outcomes",
            [(f'event="{name}"', count) for name, count in sorted(snap.events.items())],
        )
        _series(
            lines,
            "route_requests_total",
            "counter",
            "HTTP requests by route and status",
            [
                (f'route="{route}",status="{status_code}"', count)
                for (route, status_code), count in sorted(snap.routes.items())
            ],
        )
        return "\n".join(lines) + "\n"


def _series(lines: list[str], name: str, kind: str, help_text: str, samples: list) -> None:
    metric = f"{METRIC_PREFIX}_{name}"
    lines.append(f"# HELP {metric} {help_text}")
    lines.append(f"# TYPE {metric} {kind}")
    for labels, value in samples:
        lines.append(f"{metric}{{{labels}}} {value}" if labels else f"{metric} {value}")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def hash_identifier(value: str) -> str:
    """Short non-reversible tag for phone numbers in log lines."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _route_label(request: Request) -> str:
    # Templated path keeps ids out of metric labels.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=_route_label(request), status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            latency_ms,
        )
        raise
    latency_ms = (time.perf_counter() - start) * 1000.0
    metrics.record(route=_route_label(request), status_code=response.status_code, latency_ms=latency_ms)
    logger.info(
        "request_complete method=%s path=%s status=%s latency_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response
