from __future__ import annotations

from typing import Dict, Iterable, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


def expvar_name(family: str) -> str:
    return f"{family.replace('-', '_')}_instances"


class Metrics:
    """Prometheus collectors for one daemon instance, on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._requests = Counter(
            "checksync_http_requests_total",
            "Total HTTP requests",
            labelnames=("method", "path", "status"),
            registry=self.registry,
        )
        self._latency = Histogram(
            "checksync_http_request_duration_seconds",
            "HTTP request latency seconds",
            labelnames=("method", "path"),
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry,
        )
        self._loops = Counter(
            "checksync_runtime_loops_total",
            "Runtime loop ticks",
            labelnames=("loop", "result"),
            registry=self.registry,
        )
        self._instances = Gauge(
            "checksync_check_instances",
            "Check instances in the last rendered document",
            labelnames=("family",),
            registry=self.registry,
        )
        self._commits = Counter(
            "checksync_commits_total",
            "Config commits by outcome",
            labelnames=("family", "result"),
            registry=self.registry,
        )
        self._reloads = Counter(
            "checksync_reloads_total",
            "Monitoring agent reloads requested",
            registry=self.registry,
        )
        self._gateway_bytes = Counter(
            "checksync_gateway_bytes_total",
            "Response bytes relayed from FastCGI upstreams",
            registry=self.registry,
        )
        self._instance_counts: Dict[str, int] = {}
        self._reload_count = 0
        self._gateway_byte_count = 0

    def observe_http_request(self, *, method: str, path: str, status: int, duration_seconds: float) -> None:
        self._requests.labels(method=method, path=path, status=str(status)).inc()
        self._latency.labels(method=method, path=path).observe(duration_seconds)

    def record_runtime_loop(self, *, loop: str, ok: bool) -> None:
        self._loops.labels(loop=loop, result="ok" if ok else "error").inc()

    def set_instances(self, family: str, count: int) -> None:
        self._instance_counts[family] = count
        self._instances.labels(family=family).set(count)

    def record_commit(self, *, family: str, result: str) -> None:
        self._commits.labels(family=family, result=result).inc()

    def record_reload(self) -> None:
        self._reload_count += 1
        self._reloads.inc()

    def record_gateway_bytes(self, count: int) -> None:
        self._gateway_byte_count += count
        self._gateway_bytes.inc(count)

    @property
    def reloads(self) -> int:
        return self._reload_count

    def instance_count(self, family: str) -> int:
        return self._instance_counts.get(family, 0)

    def debug_vars(self, families: Iterable[str]) -> Dict[str, int]:
        """Counters in the flat shape served at ``/debug/vars``."""
        values = {expvar_name(family): self.instance_count(family) for family in families}
        values["datadog_reload"] = self.reloads
        values["gateway_bytes"] = self._gateway_byte_count
        return values

    def render(self) -> bytes:
        return generate_latest(self.registry)

    @staticmethod
    def content_type() -> str:
        return CONTENT_TYPE_LATEST
