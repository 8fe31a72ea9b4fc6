"""Observability layer - logging and metrics."""

from rabbitmq_producer.observability.logging import bind_producer_context, setup_logging
from rabbitmq_producer.observability.metrics import MetricsCollector, get_metrics

__all__ = ["bind_producer_context", "setup_logging", "MetricsCollector", "get_metrics"]
