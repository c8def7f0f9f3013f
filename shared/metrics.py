"""
Prometheus metrics for the metering gateway.
"""

import threading
from typing import Dict, Optional, Sequence, Tuple, Type, Union

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, Info

Metric = Union[Counter, Histogram]

# name -> (type, help, labels)
METRIC_DEFINITIONS: Dict[str, Tuple[Type, str, Sequence[str]]] = {
    "http_requests_total": (Counter, "HTTP requests by route template", ("method", "endpoint", "status_code")),
    "http_request_duration_seconds": (Histogram, "HTTP request latency", ("method", "endpoint")),
    "health_check_total": (Counter, "Health checks by overall status", ("status",)),
    "spend_outcomes_total": (Counter, "Terminal spend outcomes", ("state", "code")),
    "refunds_total": (Counter, "Refunds issued for failed paid work", ("reason",)),
    "refund_failures_total": (Counter, "Refunds that could not be written and await reconciliation", ()),
    "jwks_refresh_total": (Counter, "Key discovery document fetches", ("status",)),
    "grants_total": (Counter, "Periodic grants applied", ("period_key",)),
    "reconciled_spends_total": (Counter, "Orphaned spends refunded by reconciliation", ()),
    "work_duration_seconds": (Histogram, "Paid work duration", ("state",)),
}


class MetricsCollector:
    """Owns the service's metric objects on one registry."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Metric] = {
            name: kind(name, doc, list(labels), registry=self.registry)
            for name, (kind, doc, labels) in METRIC_DEFINITIONS.items()
        }
        Info("service", "Service build information", registry=self.registry).info(
            {"service": service_name, "version": "1.0.0"}
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self._metrics["http_requests_total"].labels(method, endpoint, str(status_code)).inc()
        self._metrics["http_request_duration_seconds"].labels(method, endpoint).observe(duration)

    def record_health_check(self, status: str):
        self._metrics["health_check_total"].labels(status).inc()

    def record_spend_outcome(self, state: str, code: Optional[str] = None):
        self._metrics["spend_outcomes_total"].labels(state, code or "OK").inc()

    def record_refund(self, reason: str):
        self._metrics["refunds_total"].labels(reason).inc()

    def record_refund_failure(self):
        self._metrics["refund_failures_total"].inc()

    def record_jwks_refresh(self, status: str):
        self._metrics["jwks_refresh_total"].labels(status).inc()

    def record_grants(self, period_key: str, count: int):
        if count:
            self._metrics["grants_total"].labels(period_key).inc(count)

    def record_reconciled(self, count: int):
        if count:
            self._metrics["reconciled_spends_total"].inc(count)

    def observe_work(self, state: str, duration: float):
        self._metrics["work_duration_seconds"].labels(state).observe(duration)


_collectors: Dict[str, MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Collector on the default registry, one per service name.

    prometheus_client refuses duplicate registrations, so repeated service
    construction (as in tests) must share the collector.
    """
    with _collectors_lock:
        collector = _collectors.get(service_name)
        if collector is None:
            collector = MetricsCollector(service_name)
            _collectors[service_name] = collector
        return collector
