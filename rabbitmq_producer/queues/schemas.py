"""
Value types exchanged between the producer, the acknowledger and the host.

Everything here is immutable. A message and its ack context are built once
per delivery and handed to the pipeline, and per-message overrides produce
new values rather than changing the ones other tasks may be holding.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from rabbitmq_producer.queues.config import AckPolicy

if TYPE_CHECKING:
    from rabbitmq_producer.queues.acknowledger import Acknowledger


@dataclass(frozen=True)
class Delivery:
    """
    A message pushed by the broker on a subscribed channel.

    Attributes:
        body: Raw payload
        attributes: Delivery fields and message properties; always includes
            delivery_tag and redelivered
    """

    body: bytes
    attributes: Mapping[str, Any]

    @property
    def delivery_tag(self) -> int:
        return self.attributes["delivery_tag"]

    @property
    def redelivered(self) -> bool:
        return bool(self.attributes.get("redelivered", False))


@dataclass(frozen=True)
class AckContext:
    """
    What the acknowledger needs to settle one message.

    Attributes:
        channel: Handle of the channel the message arrived on
        delivery_tag: Channel-scoped delivery identifier
        redelivered: Whether the broker delivered this message before
        on_success: Policy applied when the message succeeds
        on_failure: Policy applied when the message fails
    """

    channel: Any
    delivery_tag: int
    redelivered: bool
    on_success: AckPolicy
    on_failure: AckPolicy

    def merge(self, **overrides: AckPolicy) -> "AckContext":
        """Return a copy with the given policies replaced."""
        return replace(self, **overrides)


@dataclass(frozen=True)
class Message:
    """
    A delivery converted for the pipeline.

    Attributes:
        data: Message payload
        metadata: Selected delivery attributes (read-only)
        ack_context: Settlement data for the acknowledger
        acknowledger: Dispatcher that settles this message
    """

    data: bytes
    ack_context: AckContext
    acknowledger: "Acknowledger"
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def configure_ack(self, **options: Any) -> "Message":
        """
        Override the ack policies for this message only.

        Raises:
            ConfigError: On unknown keys or unsupported policies
        """
        ack_context = self.acknowledger.configure(self.ack_context, options)
        return replace(self, ack_context=ack_context)
