"""Prometheus metrics for HTTP traffic and cache behaviour."""

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

__all__ = ["CONTENT_TYPE_LATEST", "Metrics"]


class Metrics:
    """Holds the application's collectors.

    Each application gets its own registry so that several apps (one per
    test, for example) can live in the same process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "http_requests_total",
            "HTTP requests handled",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self.latency = Histogram(
            "http_request_duration_seconds",
            "Time spent handling HTTP requests",
            ["method", "path"],
            registry=self.registry,
        )
        self.cache_lookups = Counter(
            "cache_lookups_total",
            "Cache lookups by resource and result (hit, miss, error)",
            ["resource", "result"],
            registry=self.registry,
        )

    def observe_request(self, method: str, path: str, status: int, seconds: float) -> None:
        self.requests.labels(method=method, path=path, status=str(status)).inc()
        self.latency.labels(method=method, path=path).observe(seconds)

    def cache_result(self, resource: str, result: str) -> None:
        self.cache_lookups.labels(resource=resource, result=result).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
