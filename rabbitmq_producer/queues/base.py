"""
Abstract broker client used by the producer.

The producer never talks to a broker library directly. Everything it needs
(validating options, opening a channel, subscribing, settling deliveries,
watching for connection and channel death) goes through this interface, so a
test double can stand in for the real AMQP client.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

from rabbitmq_producer.queues.config import ClientConfig, build_client_config
from rabbitmq_producer.queues.schemas import Delivery


class Watch:
    """
    Registration for a "resource went away" notification.

    Cancelling is idempotent; after cancel() the callback is never invoked
    through this watch again.
    """

    def __init__(self, unregister: Callable[[], None] | None = None):
        self._unregister = unregister
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._unregister is not None:
            self._unregister()


class BaseBrokerClient(ABC):
    """
    Abstract base class for broker clients.

    Subclasses must implement channel setup, subscription, settlement and
    the two watch registrations. init() has a default that validates the
    options and applies merge_options; override it to add client-specific
    normalization.

    Channel handles are opaque to the producer. They must compare by
    identity and be weak-referenceable.
    """

    def init(self, options: Mapping[str, Any]) -> ClientConfig:
        """
        Validate and normalize connection options.

        Raises:
            ConfigError: If the options are invalid
        """
        return build_client_config(options)

    @abstractmethod
    async def setup_channel(self, config: ClientConfig) -> Any:
        """
        Open a connection and channel and prepare the queue.

        Runs after_connect, applies QoS, declares the queue when asked to and
        applies bindings, in that order. Steps that completed before a
        failure are not rolled back.

        Returns:
            Channel handle

        Raises:
            ConnectError: If any step fails
        """
        ...

    @abstractmethod
    async def consume(
        self,
        channel: Any,
        config: ClientConfig,
        on_delivery: Callable[[Delivery], None],
        on_cancel: Callable[[], None],
    ) -> str:
        """
        Subscribe to the configured queue.

        Args:
            channel: Handle returned by setup_channel
            config: Configuration the channel was set up with
            on_delivery: Called once per delivered message
            on_cancel: Called when the broker cancels the subscription

        Returns:
            Consumer tag
        """
        ...

    @abstractmethod
    async def cancel(self, channel: Any, consumer_tag: str) -> str:
        """Stop the subscription, leaving the channel open for acks."""
        ...

    @abstractmethod
    async def ack(self, channel: Any, delivery_tag: int) -> None:
        """
        Acknowledge a delivery.

        Raises:
            StaleChannelError: If the channel is no longer open
        """
        ...

    @abstractmethod
    async def reject(self, channel: Any, delivery_tag: int, *, requeue: bool) -> None:
        """
        Reject a delivery, optionally asking the broker to requeue it.

        Raises:
            StaleChannelError: If the channel is no longer open
        """
        ...

    @abstractmethod
    async def close_connection(self, channel: Any) -> None:
        """Close the connection that owns the channel."""
        ...

    @abstractmethod
    def monitor_connection(self, channel: Any, callback: Callable[[], None]) -> Watch:
        """Call callback once when the channel's connection closes."""
        ...

    @abstractmethod
    def monitor_channel(self, channel: Any, callback: Callable[[], None]) -> Watch:
        """Call callback once when the channel closes."""
        ...
