"""
Acknowledgment dispatcher.

Settles processed messages with the broker. Every message is settled with a
single ack or reject call and each call is isolated: a failure is logged and
counted, and the remaining messages are still settled. Nothing is ever raised
back to the pipeline.

Calls may arrive from many pipeline tasks at once. Calls targeting the same
channel go through one lock so a channel only ever has one settlement in
flight; calls on different channels do not wait for each other.
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from weakref import WeakKeyDictionary

import structlog

from rabbitmq_producer.observability.metrics import get_metrics
from rabbitmq_producer.queues.base import BaseBrokerClient
from rabbitmq_producer.queues.config import AckPolicy, parse_ack_policy
from rabbitmq_producer.queues.errors import AckDispatchError, ConfigError
from rabbitmq_producer.queues.schemas import AckContext, Message

logger = structlog.get_logger(__name__)

CONFIGURABLE_OPTIONS = frozenset({"on_success", "on_failure"})


def requeue_for(policy: AckPolicy, redelivered: bool) -> bool:
    """
    Decide the requeue flag for a reject policy.

    reject_and_requeue_once only requeues first deliveries, so a message
    that keeps failing is dropped on its second failure instead of looping.
    """
    if policy is AckPolicy.REJECT:
        return False
    if policy is AckPolicy.REJECT_AND_REQUEUE:
        return True
    if policy is AckPolicy.REJECT_AND_REQUEUE_ONCE:
        return not redelivered
    raise ValueError(f"{policy.value} is not a reject policy")


class Acknowledger:
    """
    Dispatches ack/reject calls for processed messages.

    Usage:
        acknowledger = Acknowledger(client, is_live=producer.is_live_channel)
        await acknowledger.ack(successful=[msg1], failed=[msg2])
    """

    def __init__(
        self,
        client: BaseBrokerClient,
        is_live: Callable[[Any], bool] | None = None,
    ):
        """
        Initialize the acknowledger.

        Args:
            client: Broker client used to issue ack and reject calls
            is_live: Returns False for channels the producer has discarded;
                messages on those channels are dropped without a broker call
        """
        self._client = client
        self._is_live = is_live
        self._lanes: WeakKeyDictionary[Any, asyncio.Lock] = WeakKeyDictionary()
        self._metrics = get_metrics()

    async def ack(
        self,
        successful: Iterable[Message],
        failed: Iterable[Message],
    ) -> None:
        """
        Settle a batch of processed messages.

        Args:
            successful: Messages settled with their on_success policy
            failed: Messages settled with their on_failure policy
        """
        for message in successful:
            await self._settle(message.ack_context, message.ack_context.on_success)
        for message in failed:
            await self._settle(message.ack_context, message.ack_context.on_failure)

    def configure(self, ack_context: AckContext, options: Mapping[str, Any]) -> AckContext:
        """
        Override on_success/on_failure for a single message.

        All options are validated before anything is merged, so a rejected
        call leaves no partial override behind.

        Raises:
            ConfigError: On an unknown option or unsupported policy value
        """
        overrides: dict[str, AckPolicy] = {}
        for name, value in options.items():
            if name not in CONFIGURABLE_OPTIONS:
                raise ConfigError(f"unsupported configure option {name!r}")
            overrides[name] = parse_ack_policy(name, value)
        return ack_context.merge(**overrides)

    def _lane(self, channel: Any) -> asyncio.Lock:
        lock = self._lanes.get(channel)
        if lock is None:
            lock = self._lanes[channel] = asyncio.Lock()
        return lock

    async def _settle(self, ack_context: AckContext, policy: AckPolicy) -> None:
        channel = ack_context.channel

        if self._is_live is not None and not self._is_live(channel):
            logger.warning(
                "Dropping acknowledgment for a closed channel",
                delivery_tag=ack_context.delivery_tag,
                policy=policy.value,
            )
            self._metrics.record_stale_ack(policy.value)
            return

        try:
            async with self._lane(channel):
                await self._apply(policy, ack_context)
        except Exception as e:
            error = AckDispatchError(
                f"could not {policy.value} delivery {ack_context.delivery_tag}: {e}"
            )
            logger.error(
                "Failed to acknowledge message",
                delivery_tag=ack_context.delivery_tag,
                policy=policy.value,
                error=str(error),
                exc_info=e,
            )
            self._metrics.record_ack(policy.value, success=False)
        else:
            self._metrics.record_ack(policy.value, success=True)

    async def _apply(self, policy: AckPolicy, ack_context: AckContext) -> None:
        if policy is AckPolicy.ACK:
            await self._client.ack(ack_context.channel, ack_context.delivery_tag)
            return

        await self._client.reject(
            ack_context.channel,
            ack_context.delivery_tag,
            requeue=requeue_for(policy, ack_context.redelivered),
        )
