"""
Prometheus metrics for monitoring the RabbitMQ producer.

Defines and exposes metrics for:
- Delivered messages per queue
- Acknowledgments by policy and outcome
- Connection attempts and reconnect delays
- Connection health
- Host buffer overflow

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from rabbitmq_producer.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for reconnect delay histogram (in seconds)
DELAY_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)


class MetricsCollector:
    """
    Prometheus metrics collector for the RabbitMQ producer.

    Usage:
        metrics = MetricsCollector()
        metrics.start_server()

        metrics.messages_received.labels(queue="orders").inc()
        metrics.record_ack("ack", success=True)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        self.messages_received = Counter(
            "rabbitmq_producer_messages_received_total",
            "Total number of deliveries converted into messages",
            ["queue"],
        )

        self.stale_deliveries = Counter(
            "rabbitmq_producer_stale_deliveries_total",
            "Deliveries dropped because their channel was superseded",
            ["queue"],
        )

        self.acks = Counter(
            "rabbitmq_producer_acks_total",
            "Acknowledgment calls issued to the broker",
            ["policy", "status"],  # status: success, error, stale
        )

        self.connection_attempts = Counter(
            "rabbitmq_producer_connection_attempts_total",
            "Connection setup attempts",
            ["queue", "result"],  # result: success, retry, fatal
        )

        self.reconnect_delay = Histogram(
            "rabbitmq_producer_reconnect_delay_seconds",
            "Backoff delay scheduled before the next connection attempt",
            ["queue"],
            buckets=DELAY_BUCKETS,
        )

        self.connected = Gauge(
            "rabbitmq_producer_connected",
            "Whether the producer currently holds a live channel (1=yes, 0=no)",
            ["queue"],
        )

        self.drain_errors = Counter(
            "rabbitmq_producer_drain_errors_total",
            "Consumer cancellations that failed while draining",
            ["queue"],
        )

        self.buffer_dropped = Counter(
            "rabbitmq_producer_buffer_dropped_total",
            "Messages dropped because the host buffer was full",
            ["keep"],
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    # Convenience methods

    def record_ack(self, policy: str, success: bool) -> None:
        """
        Record the outcome of one acknowledgment call.

        Args:
            policy: AckPolicy value that was applied
            success: Whether the broker call completed without error
        """
        status = "success" if success else "error"
        self.acks.labels(policy=policy, status=status).inc()

    def record_stale_ack(self, policy: str) -> None:
        """Record an acknowledgment dropped because its channel is gone."""
        self.acks.labels(policy=policy, status="stale").inc()

    def record_connection_attempt(self, queue: str, result: str) -> None:
        """
        Record a connection attempt.

        Args:
            queue: Queue name (empty string for server-named queues)
            result: One of success, retry, fatal
        """
        self.connection_attempts.labels(queue=queue, result=result).inc()

    def record_reconnect_delay(self, queue: str, delay_ms: int) -> None:
        """Record a scheduled reconnect delay given in milliseconds."""
        self.reconnect_delay.labels(queue=queue).observe(delay_ms / 1000)

    def set_connected(self, queue: str, connected: bool) -> None:
        """Set connection health gauge."""
        self.connected.labels(queue=queue).set(1 if connected else 0)


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
