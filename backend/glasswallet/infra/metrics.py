import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.http_requests = None
            self.http_latency = None
            self.http_5xx = None
            self.http_429 = None
            self.credit_pulls = None
            self.pixel_syncs = None
            self.webhook_deliveries = None
            self.outbox_queue_depth = None
            self.circuit_state = None
            return

        self.http_requests = Counter(
            "http_requests_total",
            "HTTP requests by method, route and status class.",
            ["method", "path", "status_class"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_429 = Counter(
            "http_429_total",
            "Rate limited responses by route bucket.",
            ["bucket"],
            registry=self.registry,
        )
        self.credit_pulls = Counter(
            "credit_pulls_total",
            "Credit pull outcomes.",
            ["result"],
            registry=self.registry,
        )
        self.pixel_syncs = Counter(
            "pixel_sync_total",
            "Per-connection pixel sync outcomes.",
            ["platform", "result"],
            registry=self.registry,
        )
        self.webhook_deliveries = Counter(
            "webhook_deliveries_total",
            "Outbound webhook delivery attempts by result.",
            ["result"],
            registry=self.registry,
        )
        self.outbox_queue_depth = Gauge(
            "outbox_queue_messages",
            "Outbox queue depth by status (pending/retry/dead).",
            ["status"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_http_request(self, method: str, path: str, status_code: int) -> None:
        if not self.enabled or self.http_requests is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_requests.labels(method=method, path=path, status_class=status_class).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_429(self, bucket: str) -> None:
        if not self.enabled or self.http_429 is None:
            return
        self.http_429.labels(bucket=bucket or "other").inc()

    def record_credit_pull(self, result: str) -> None:
        if not self.enabled or self.credit_pulls is None:
            return
        self.credit_pulls.labels(result=result or "unknown").inc()

    def record_pixel_sync(self, platform: str, result: str) -> None:
        if not self.enabled or self.pixel_syncs is None:
            return
        self.pixel_syncs.labels(platform=platform or "unknown", result=result).inc()

    def record_webhook_delivery(self, result: str) -> None:
        if not self.enabled or self.webhook_deliveries is None:
            return
        self.webhook_deliveries.labels(result=result).inc()

    def set_outbox_depth(self, status: str, count: int) -> None:
        if not self.enabled or self.outbox_queue_depth is None:
            return
        self.outbox_queue_depth.labels(status=status).set(max(0, count))

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        self.circuit_state.labels(circuit=circuit).set({"closed": 0, "half_open": 1, "open": 2}.get(state, 0))

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
