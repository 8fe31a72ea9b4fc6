"""
Error taxonomy for the RabbitMQ producer.

Only ConfigError and ProducerTerminatedError ever reach the host pipeline.
Connection loss is self-healing through backoff, and acknowledgment or
drain faults are absorbed where they happen.
"""

# Reasons that describe a transient broker outage rather than misconfiguration.
RETRYABLE_REASONS = frozenset(
    {
        "auth_failure",
        "socket_closed_unexpectedly",
        "econnrefused",
        "unknown_host",
        "not_allowed",
        "after_connect_failed",
    }
)


class ConfigError(ValueError):
    """Raised when producer or client options are invalid."""


class ConnectError(Exception):
    """
    Raised by a broker client when a channel could not be set up.

    Attributes:
        reason: Short classification such as "econnrefused" or "unexpected"
    """

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or reason)

    @property
    def retryable(self) -> bool:
        """Whether the failure should drive backoff instead of crashing."""
        return self.reason in RETRYABLE_REASONS


class StaleChannelError(Exception):
    """Raised when an ack or reject targets a channel that is no longer open."""


class AckDispatchError(Exception):
    """Wraps a failure while acknowledging a single message."""


class DrainError(Exception):
    """Raised when the consumer could not be cancelled while draining."""


class ProducerTerminatedError(RuntimeError):
    """The producer stopped because of a fatal connection error."""
