"""
aio-pika implementation of the broker client.

Opens a plain (non-robust) connection per attempt: reconnection is driven by
the producer's backoff policy, not by aio-pika. Acks and rejects go through
the underlying aiormq channel using the delivery tag captured at delivery
time, so settling never depends on aio-pika message objects staying alive.
"""

import asyncio
import inspect
import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aio_pika
import aiormq.exceptions
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)

from rabbitmq_producer.queues.base import BaseBrokerClient, Watch
from rabbitmq_producer.queues.config import ClientConfig
from rabbitmq_producer.queues.errors import ConnectError, StaleChannelError
from rabbitmq_producer.queues.schemas import Delivery

logger = logging.getLogger(__name__)

# Checked in order; more specific aiormq errors first.
_CONNECT_ERRORS: tuple[tuple[type[BaseException], str], ...] = (
    (aiormq.exceptions.AuthenticationError, "auth_failure"),
    (aiormq.exceptions.ConnectionNotAllowed, "not_allowed"),
    (aiormq.exceptions.IncompatibleProtocolError, "socket_closed_unexpectedly"),
    (ConnectionRefusedError, "econnrefused"),
    (socket.gaierror, "unknown_host"),
    (ConnectionResetError, "socket_closed_unexpectedly"),
    (asyncio.IncompleteReadError, "socket_closed_unexpectedly"),
)


def classify_connect_error(error: BaseException) -> str:
    """
    Map a connection failure to a ConnectError reason.

    aiormq wraps socket errors, so the __cause__/__context__ chain is
    searched as well. Anything unrecognized is "unexpected".
    """
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for error_type, reason in _CONNECT_ERRORS:
            if isinstance(current, error_type):
                return reason
        current = current.__cause__ or current.__context__
    return "unexpected"


@dataclass(eq=False)
class AmqpChannel:
    """Channel handle bundling the aio-pika objects of one attempt."""

    connection: AbstractConnection
    channel: AbstractChannel
    queue: AbstractQueue

    @property
    def is_closed(self) -> bool:
        return self.channel.is_closed or self.connection.is_closed


def message_attributes(message: AbstractIncomingMessage) -> dict[str, Any]:
    """Collect delivery fields and message properties of an incoming message."""
    return {
        "delivery_tag": message.delivery_tag,
        "redelivered": bool(message.redelivered),
        "exchange": message.exchange,
        "routing_key": message.routing_key,
        "message_count": message.message_count,
        "content_type": message.content_type,
        "content_encoding": message.content_encoding,
        "headers": dict(message.headers or {}),
        "persistent": message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT,
        "priority": message.priority,
        "correlation_id": message.correlation_id,
        "message_id": message.message_id,
        "timestamp": message.timestamp,
        "type": message.type,
        "user_id": message.user_id,
        "app_id": message.app_id,
        "cluster_id": message.cluster_id,
        "reply_to": message.reply_to,
        "expiration": message.expiration,
        "consumer_tag": message.consumer_tag,
    }


class AioPikaClient(BaseBrokerClient):
    """
    Broker client backed by aio-pika.

    Usage:
        client = AioPikaClient()
        config = client.init({"queue": "orders", "connection": "amqp://..."})
        channel = await client.setup_channel(config)
        tag = await client.consume(channel, config, on_delivery, on_cancel)
    """

    async def setup_channel(self, config: ClientConfig) -> AmqpChannel:
        try:
            connection = await self._connect(config)
        except Exception as e:
            raise ConnectError(classify_connect_error(e), str(e)) from e

        try:
            channel = await connection.channel()
            await self._run_after_connect(config, channel)
            await channel.set_qos(
                prefetch_count=config.qos.prefetch_count,
                prefetch_size=config.qos.prefetch_size or 0,
            )

            if config.declare is not None:
                queue = await channel.declare_queue(config.queue, **config.declare)
            else:
                queue = await channel.get_queue(config.queue, ensure=False)

            for exchange, options in config.bindings:
                await queue.bind(exchange, **options)

        except BaseException as e:
            await self._close_quietly(connection)
            if isinstance(e, ConnectError) or not isinstance(e, Exception):
                raise
            raise ConnectError(classify_connect_error(e), str(e)) from e

        logger.info(
            f"Channel ready on queue '{queue.name}' "
            f"(prefetch_count={config.qos.prefetch_count})"
        )
        return AmqpChannel(connection=connection, channel=channel, queue=queue)

    async def _connect(self, config: ClientConfig) -> AbstractConnection:
        if isinstance(config.connection, str):
            return await aio_pika.connect(config.connection)
        return await aio_pika.connect(**config.connection)

    async def _run_after_connect(
        self, config: ClientConfig, channel: AbstractChannel
    ) -> None:
        if config.after_connect is None:
            return
        try:
            result = config.after_connect(channel)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            raise ConnectError("after_connect_failed", str(e)) from e

    async def consume(
        self,
        channel: AmqpChannel,
        config: ClientConfig,
        on_delivery: Callable[[Delivery], None],
        on_cancel: Callable[[], None],
    ) -> str:
        async def on_message(message: AbstractIncomingMessage) -> None:
            on_delivery(Delivery(body=message.body, attributes=message_attributes(message)))

        consumer_tag = await channel.queue.consume(on_message, no_ack=False)

        def on_consumer_cancel(frame: aiormq.spec.Basic.Cancel) -> None:
            # CancelOk replies to our own cancel() never reach this callback.
            if frame.consumer_tag != consumer_tag:
                return
            logger.warning(f"Broker cancelled consumer '{consumer_tag}'")
            on_cancel()

        # The broker keeps the channel open after Basic.Cancel (e.g. queue
        # deleted), so this is the only signal that the subscription is gone.
        underlay = await channel.channel.get_underlay_channel()
        underlay.on_consumer_cancel_callbacks.add(on_consumer_cancel)
        return consumer_tag

    async def cancel(self, channel: AmqpChannel, consumer_tag: str) -> str:
        await channel.queue.cancel(consumer_tag)
        return consumer_tag

    async def ack(self, channel: AmqpChannel, delivery_tag: int) -> None:
        underlay = await self._live_underlay(channel)
        await underlay.basic_ack(delivery_tag)

    async def reject(self, channel: AmqpChannel, delivery_tag: int, *, requeue: bool) -> None:
        underlay = await self._live_underlay(channel)
        await underlay.basic_reject(delivery_tag, requeue=requeue)

    async def _live_underlay(self, channel: AmqpChannel) -> Any:
        if channel.is_closed:
            raise StaleChannelError("channel is closed")
        return await channel.channel.get_underlay_channel()

    async def close_connection(self, channel: AmqpChannel) -> None:
        await channel.connection.close()

    def monitor_connection(self, channel: AmqpChannel, callback: Callable[[], None]) -> Watch:
        return self._watch(channel.connection, callback)

    def monitor_channel(self, channel: AmqpChannel, callback: Callable[[], None]) -> Watch:
        return self._watch(channel.channel, callback)

    def _watch(self, resource: Any, callback: Callable[[], None]) -> Watch:
        def on_close(*_: Any) -> None:
            callback()

        resource.close_callbacks.add(on_close)
        return Watch(lambda: resource.close_callbacks.discard(on_close))

    async def _close_quietly(self, connection: AbstractConnection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing failed connection: {e}")
