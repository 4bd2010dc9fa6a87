"""
Metrics collection for the fulfillment workers

Every outcome is recorded twice: on the OpenTelemetry meter (exported when a
MeterProvider is configured for the process) and on Prometheus collectors
served by `start_metrics_server`.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from prometheus_client import Counter as PrometheusCounter, Histogram as PrometheusHistogram
from prometheus_client import start_http_server

logger = logging.getLogger(__name__)

_PROM_COUNTERS: Dict[str, PrometheusCounter] = {}
_PROM_HISTOGRAMS: Dict[str, PrometheusHistogram] = {}


def _prom_counter(name: str, description: str, *, labelnames: tuple) -> PrometheusCounter:
    metric = _PROM_COUNTERS.get(name)
    if metric is None:
        metric = PrometheusCounter(name, description, labelnames=labelnames)
        _PROM_COUNTERS[name] = metric
    return metric


def _prom_histogram(name: str, description: str, *, labelnames: tuple) -> PrometheusHistogram:
    metric = _PROM_HISTOGRAMS.get(name)
    if metric is None:
        metric = PrometheusHistogram(name, description, labelnames=labelnames)
        _PROM_HISTOGRAMS[name] = metric
    return metric


class MetricsCollector:
    """
    Per-worker metrics: message outcomes, retries, dead letters, handler latency
    """

    def __init__(self, worker_name: str):
        self.worker_name = worker_name
        self.meter = metrics.get_meter(f"fulfillment.{worker_name}", "1.0.0")
        self._metrics: Dict[str, Any] = {}
        self._prom: Dict[str, Any] = {}
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        self._metrics["events"] = self.meter.create_counter(
            name="fulfillment_events",
            description="Messages handled, by outcome",
            unit="1",
        )
        self._metrics["retries"] = self.meter.create_counter(
            name="fulfillment_retries",
            description="Retry attempts scheduled",
            unit="1",
        )
        self._metrics["dead_letters"] = self.meter.create_counter(
            name="fulfillment_dead_letters",
            description="Envelopes sent to the dead-letter topic",
            unit="1",
        )
        self._metrics["handler_duration"] = self.meter.create_histogram(
            name="fulfillment_handler_duration",
            description="Handler wall time",
            unit="s",
        )

        self._prom["events_total"] = _prom_counter(
            "fulfillment_events_total",
            "Messages handled, by outcome",
            labelnames=("worker", "event_type", "outcome"),
        )
        self._prom["retries_total"] = _prom_counter(
            "fulfillment_retries_total",
            "Retry attempts scheduled",
            labelnames=("worker",),
        )
        self._prom["dead_letters_total"] = _prom_counter(
            "fulfillment_dead_letters_total",
            "Envelopes sent to the dead-letter topic",
            labelnames=("worker", "error_class"),
        )
        self._prom["handler_seconds"] = _prom_histogram(
            "fulfillment_handler_seconds",
            "Handler wall time",
            labelnames=("worker",),
        )

    def record_event(self, event_type: str, outcome: str, duration: Optional[float] = None) -> None:
        attributes = {"worker": self.worker_name, "event_type": event_type, "outcome": outcome}
        self._metrics["events"].add(1, attributes)
        self._prom["events_total"].labels(self.worker_name, event_type, outcome).inc()
        if duration is not None:
            self._metrics["handler_duration"].record(duration, {"worker": self.worker_name})
            self._prom["handler_seconds"].labels(self.worker_name).observe(duration)

    def record_retry(self) -> None:
        self._metrics["retries"].add(1, {"worker": self.worker_name})
        self._prom["retries_total"].labels(self.worker_name).inc()

    def record_dead_letter(self, error_class: str) -> None:
        self._metrics["dead_letters"].add(1, {"worker": self.worker_name, "error_class": error_class})
        self._prom["dead_letters_total"].labels(self.worker_name, error_class).inc()


_metrics_collectors: Dict[str, MetricsCollector] = {}


def get_metrics_collector(worker_name: str) -> MetricsCollector:
    """
    Get or create the metrics collector for a worker

    Args:
        worker_name: Name of the worker

    Returns:
        MetricsCollector instance
    """
    collector = _metrics_collectors.get(worker_name)
    if collector is None:
        collector = MetricsCollector(worker_name)
        _metrics_collectors[worker_name] = collector
    return collector


def start_metrics_server(port: int) -> bool:
    """Expose Prometheus metrics on `port`; 0 disables the exporter."""
    if port <= 0:
        return False
    start_http_server(port)
    logger.info(f"Prometheus metrics exposed on :{port}")
    return True
