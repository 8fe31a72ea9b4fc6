"""
RabbitMQ producer: connection lifecycle and delivery forwarding.

A single asyncio task owns all connection state. Deliveries, watch
callbacks, reconnect timers, drain and shutdown requests are posted to that
task's inbox and handled one at a time, so nothing outside the task ever
mutates the connection state. Channel setup runs as a child task whose
result is posted back to the inbox, which keeps the owner responsive while a
connection attempt is in progress.

States:
    DISCONNECTED -> CONNECTING -> CONSUMING -> DRAINING -> DISCONNECTED

CONNECTING loops on itself through the backoff policy while attempts fail
with retryable errors. Unexpected errors, and any failure under the stop
backoff strategy, terminate the producer.
"""

import asyncio
import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from rabbitmq_producer.observability.logging import bind_producer_context
from rabbitmq_producer.observability.metrics import get_metrics
from rabbitmq_producer.queues.acknowledger import Acknowledger
from rabbitmq_producer.queues.backoff import BackoffState, advance, new_backoff, reset
from rabbitmq_producer.queues.base import BaseBrokerClient, Watch
from rabbitmq_producer.queues.buffer import MessageBuffer
from rabbitmq_producer.queues.config import ClientConfig, resolve_buffer_size, split_options
from rabbitmq_producer.queues.errors import (
    ConfigError,
    ConnectError,
    DrainError,
    ProducerTerminatedError,
)
from rabbitmq_producer.queues.metadata import project_metadata
from rabbitmq_producer.queues.schemas import AckContext, Delivery, Message

logger = structlog.get_logger(__name__)


class ProducerState(enum.Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONSUMING = "consuming"
    DRAINING = "draining"


@dataclass
class ConnectionState:
    """
    Mutable connection state, owned by the producer task.

    Attributes:
        config: Client configuration of the current (or next) attempt
        backoff: Position in the reconnect backoff sequence
        channel: Live channel handle, if any
        consumer_tag: Tag of the active subscription, if any
        connection_watch: Watch on the channel's connection
        channel_watch: Watch on the channel itself
    """

    config: ClientConfig
    backoff: BackoffState
    channel: Any = None
    consumer_tag: str | None = None
    connection_watch: Watch | None = None
    channel_watch: Watch | None = None


# Inbox events


@dataclass(frozen=True, eq=False)
class _Connect:
    reinit: bool


@dataclass(frozen=True, eq=False)
class _SetupDone:
    task: asyncio.Task


@dataclass(frozen=True, eq=False)
class _Deliver:
    channel: Any
    delivery: Delivery


@dataclass(frozen=True, eq=False)
class _ResourceDown:
    channel: Any
    resource: str  # "connection" or "channel"


@dataclass(frozen=True, eq=False)
class _BrokerCancel:
    channel: Any


@dataclass(frozen=True, eq=False)
class _Drain:
    done: asyncio.Future


@dataclass(frozen=True, eq=False)
class _Shutdown:
    done: asyncio.Future


class RabbitMQProducer:
    """
    Long-lived queue subscription feeding messages into a pipeline.

    Messages carry an ack context bound to the channel they arrived on;
    the pipeline settles them through the producer's acknowledger.

    Usage:
        async with RabbitMQProducer({"queue": "orders"}) as producer:
            async for message in producer.messages():
                await process(message.data)
                await producer.ack([message], [])
    """

    def __init__(
        self,
        options: Mapping[str, Any],
        client: BaseBrokerClient | None = None,
        index: int = 0,
        buffer: MessageBuffer | None = None,
    ):
        """
        Initialize the producer. No network activity happens until start().

        Args:
            options: Flat producer and client options
            client: Broker client (aio-pika client if None)
            index: Position of this producer among its siblings, passed to
                merge_options
            buffer: Host buffer receiving messages (one is created from
                buffer_size/buffer_keep if None)

        Raises:
            ConfigError: If the options are invalid
        """
        if client is None:
            from rabbitmq_producer.queues.amqp_client import AioPikaClient

            client = AioPikaClient()

        self._client = client
        self._index = index

        self._options, client_options = split_options(options)
        self._client_options = {**client_options, "producer_index": index}
        config = self._client.init(self._client_options)

        self._buffer_size = resolve_buffer_size(self._options, config.qos.prefetch_count)
        self._buffer = buffer or MessageBuffer(
            max_size=self._buffer_size,
            keep=self._options.buffer_keep,
        )

        self._conn = ConnectionState(
            config=config,
            backoff=new_backoff(
                self._options.backoff_type,
                self._options.backoff_min,
                self._options.backoff_max,
            ),
        )
        self._acknowledger = Acknowledger(self._client, is_live=self.is_live_channel)

        self._state = ProducerState.DISCONNECTED
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._setup_task: asyncio.Task | None = None
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._stopping = False
        self._metrics = get_metrics()

        logger.info(
            "RabbitMQProducer initialized",
            queue=config.queue,
            producer_index=index,
            prefetch_count=config.qos.prefetch_count,
            buffer_size=self._buffer_size,
            backoff_type=self._options.backoff_type.value,
        )

    # Public API

    @property
    def state(self) -> ProducerState:
        return self._state

    @property
    def channel(self) -> Any:
        return self._conn.channel

    @property
    def consumer_tag(self) -> str | None:
        return self._conn.consumer_tag

    @property
    def config(self) -> ClientConfig:
        return self._conn.config

    @property
    def backoff(self) -> BackoffState:
        return self._conn.backoff

    @property
    def acknowledger(self) -> Acknowledger:
        return self._acknowledger

    @property
    def buffer(self) -> MessageBuffer:
        return self._buffer

    @property
    def reconnect_scheduled(self) -> bool:
        """Whether a backoff timer is waiting to trigger the next attempt."""
        return self._reconnect_timer is not None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_live_channel(self, channel: Any) -> bool:
        """Whether channel is the one currently owned by this producer."""
        return channel is not None and channel is self._conn.channel

    def producer_options(self) -> dict[str, Any]:
        """Buffer settings the host pipeline should apply."""
        return {"buffer_size": self._buffer_size, "buffer_keep": self._options.buffer_keep}

    def handle_demand(self, demand: int) -> list[Message]:
        """
        Accept pipeline demand without pulling anything.

        Deliveries are pushed by the broker as they arrive and forwarded
        immediately; flow control comes from the channel's prefetch limit.
        """
        return []

    def messages(self):
        """Iterate over messages as the pipeline receives them."""
        return self._buffer.__aiter__()

    async def ack(self, successful: Iterable[Message], failed: Iterable[Message]) -> None:
        """Settle processed messages. Never raises."""
        await self._acknowledger.ack(successful, failed)

    def start(self) -> None:
        """
        Spawn the owner task and begin the first connection attempt.

        The first attempt reuses the configuration built in __init__.
        """
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"rabbitmq-producer-{self._index}"
        )
        self._post(_Connect(reinit=False))

    def reconnect(self, reinit: bool = True) -> None:
        """
        Request a connection attempt.

        Args:
            reinit: Rebuild the client configuration first, re-running
                merge_options
        """
        self._post(_Connect(reinit=reinit))

    async def drain(self) -> None:
        """
        Stop receiving new deliveries.

        Returns once the consumer is cancelled, without waiting for
        in-flight messages to be acknowledged.
        """
        if not self.is_running:
            return
        await self._request(_Drain)

    async def shutdown(self) -> None:
        """Close the connection and stop the producer. Never raises."""
        if self._task is None:
            self._state = ProducerState.DISCONNECTED
            self._buffer.close()
            return
        if self._task.done():
            return
        await self._request(_Shutdown)

    async def join(self) -> None:
        """
        Wait for the owner task to finish.

        Raises:
            ProducerTerminatedError: If the producer stopped on a fatal error
        """
        if self._task is not None:
            await self._task

    async def __aenter__(self) -> "RabbitMQProducer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # Owner task

    def _post(self, event: object) -> None:
        self._inbox.put_nowait(event)

    async def _request(self, event_type: type) -> None:
        done = asyncio.get_running_loop().create_future()
        self._post(event_type(done))
        await asyncio.wait({done, self._task}, return_when=asyncio.FIRST_COMPLETED)

    async def _run(self) -> None:
        bind_producer_context(self._conn.config.queue, self._index)
        try:
            while True:
                event = await self._inbox.get()

                if isinstance(event, _Shutdown):
                    await self._terminate()
                    event.done.set_result(None)
                    return

                await self._dispatch(event)

        except ProducerTerminatedError:
            await self._terminate()
            raise
        except asyncio.CancelledError:
            await self._terminate()
            raise
        except Exception as e:
            logger.exception("RabbitMQ producer task failed", error=str(e))
            await self._terminate()
            raise ProducerTerminatedError(f"producer task failed: {e}") from e

    async def _dispatch(self, event: object) -> None:
        if isinstance(event, _Deliver):
            self._on_deliver(event)
        elif isinstance(event, _Connect):
            self._connect(event.reinit)
        elif isinstance(event, _SetupDone):
            await self._on_setup_done(event.task)
        elif isinstance(event, _ResourceDown):
            await self._on_resource_down(event)
        elif isinstance(event, _BrokerCancel):
            await self._on_broker_cancel(event)
        elif isinstance(event, _Drain):
            await self._drain()
            event.done.set_result(None)

    # Connecting

    def _connect(self, reinit: bool) -> None:
        if self._stopping:
            logger.debug("Ignoring connect request while stopping")
            return
        if self._conn.channel is not None or self._setup_task is not None:
            logger.debug("Ignoring connect request, already connected or connecting")
            return

        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        if reinit:
            try:
                self._conn.config = self._client.init(self._client_options)
            except ConfigError as e:
                logger.error("Invalid options on reconnect", error=str(e))
                raise ProducerTerminatedError(f"invalid options on reconnect: {e}") from e
            except Exception as e:
                logger.error("Client init failed on reconnect", error=str(e))
                raise ProducerTerminatedError(f"client init failed on reconnect: {e}") from e
            bind_producer_context(self._conn.config.queue, self._index)

        self._state = ProducerState.CONNECTING
        logger.info("Connecting to RabbitMQ", queue=self._conn.config.queue, reinit=reinit)

        task = asyncio.get_running_loop().create_task(
            self._client.setup_channel(self._conn.config)
        )
        task.add_done_callback(lambda t: self._post(_SetupDone(t)))
        self._setup_task = task

    async def _on_setup_done(self, task: asyncio.Task) -> None:
        if task is not self._setup_task:
            return
        self._setup_task = None

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            if self._stopping:
                self._state = ProducerState.DISCONNECTED
                return
            self._on_connect_failure(error)
            return

        if self._stopping:
            # Drain was requested while this attempt was in flight.
            await self._close_quietly(task.result())
            self._state = ProducerState.DISCONNECTED
            return

        await self._on_connected(task.result())

    async def _on_connected(self, channel: Any) -> None:
        conn = self._conn
        conn.channel = channel
        conn.connection_watch = self._client.monitor_connection(
            channel, lambda: self._post(_ResourceDown(channel, "connection"))
        )
        conn.channel_watch = self._client.monitor_channel(
            channel, lambda: self._post(_ResourceDown(channel, "channel"))
        )
        conn.backoff = reset(conn.backoff)

        try:
            conn.consumer_tag = await self._client.consume(
                channel,
                conn.config,
                on_delivery=lambda delivery: self._post(_Deliver(channel, delivery)),
                on_cancel=lambda: self._post(_BrokerCancel(channel)),
            )
        except Exception as e:
            self._clear_channel()
            await self._close_quietly(channel)
            self._on_connect_failure(e)
            return

        self._state = ProducerState.CONSUMING
        self._metrics.record_connection_attempt(conn.config.queue, "success")
        self._metrics.set_connected(conn.config.queue, True)
        logger.info(
            "Consuming from RabbitMQ",
            queue=conn.config.queue,
            consumer_tag=conn.consumer_tag,
        )

    def _on_connect_failure(self, error: BaseException) -> None:
        conn = self._conn
        queue = conn.config.queue
        if not isinstance(error, ConnectError):
            cause = error
            error = ConnectError("unexpected", str(cause))
            error.__cause__ = cause

        logger.error("Cannot connect to RabbitMQ broker", reason=error.reason, error=str(error))
        self._clear_channel()
        self._state = ProducerState.CONNECTING

        if not error.retryable:
            self._metrics.record_connection_attempt(queue, "fatal")
            logger.error("Crashing because of unexpected error when connecting to RabbitMQ")
            raise ProducerTerminatedError(
                "unexpected error when connecting to RabbitMQ broker"
            ) from error

        if conn.backoff.stopped:
            self._metrics.record_connection_attempt(queue, "fatal")
            logger.error("Reconnection is disabled (backoff_type=stop), stopping producer")
            raise ProducerTerminatedError("connection failed and backoff is disabled") from error

        self._metrics.record_connection_attempt(queue, "retry")
        delay, conn.backoff = advance(conn.backoff)
        self._schedule_reconnect(delay)

    def _schedule_reconnect(self, delay_ms: int) -> None:
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(delay_ms / 1000, self._fire_reconnect)
        self._metrics.record_reconnect_delay(self._conn.config.queue, delay_ms)
        logger.warning(
            "Scheduled reconnect",
            delay_ms=delay_ms,
            attempt=self._conn.backoff.attempt,
        )

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        self._post(_Connect(reinit=True))

    # Consuming

    def _on_deliver(self, event: _Deliver) -> None:
        conn = self._conn
        if not self.is_live_channel(event.channel):
            self._metrics.stale_deliveries.labels(queue=conn.config.queue).inc()
            logger.debug("Dropping delivery from a superseded channel")
            return

        delivery = event.delivery
        ack_context = AckContext(
            channel=event.channel,
            delivery_tag=delivery.delivery_tag,
            redelivered=delivery.redelivered,
            on_success=self._options.on_success,
            on_failure=self._options.on_failure,
        )
        message = Message(
            data=delivery.body,
            metadata=project_metadata(delivery.attributes, conn.config.metadata),
            ack_context=ack_context,
            acknowledger=self._acknowledger,
        )
        self._buffer.push(message)
        self._metrics.messages_received.labels(queue=conn.config.queue).inc()

    async def _on_resource_down(self, event: _ResourceDown) -> None:
        if not self.is_live_channel(event.channel):
            return

        logger.warning(
            "RabbitMQ resource lost",
            resource=event.resource,
            queue=self._conn.config.queue,
        )
        draining = self._state is ProducerState.DRAINING
        self._clear_channel()
        if event.resource == "channel":
            # The connection may still be open underneath a dead channel.
            await self._close_quietly(event.channel)

        if draining:
            self._state = ProducerState.DISCONNECTED
            return
        self._connect(reinit=True)

    async def _on_broker_cancel(self, event: _BrokerCancel) -> None:
        if not self.is_live_channel(event.channel):
            return

        if self._state is ProducerState.DRAINING:
            self._conn.consumer_tag = None
            return

        logger.warning(
            "Consumer cancelled by broker",
            queue=self._conn.config.queue,
            consumer_tag=self._conn.consumer_tag,
        )
        self._clear_channel()
        await self._close_quietly(event.channel)
        self._connect(reinit=True)

    def _clear_channel(self) -> None:
        conn = self._conn
        for watch in (conn.connection_watch, conn.channel_watch):
            if watch is not None:
                watch.cancel()
        if conn.channel is not None:
            self._metrics.set_connected(conn.config.queue, False)
        conn.channel = None
        conn.consumer_tag = None
        conn.connection_watch = None
        conn.channel_watch = None

    # Draining and shutdown

    async def _drain(self) -> None:
        # No reconnect may start consuming again once draining was requested.
        self._stopping = True
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        conn = self._conn
        if conn.channel is None:
            logger.debug("Drain requested without a live channel")
            return

        self._state = ProducerState.DRAINING
        if conn.consumer_tag is None:
            return

        try:
            await self._client.cancel(conn.channel, conn.consumer_tag)
        except Exception as e:
            error = DrainError(str(e))
            self._metrics.drain_errors.labels(queue=conn.config.queue).inc()
            logger.error("Could not cancel producer while draining", error=str(error))
            return

        conn.consumer_tag = None
        logger.info("Producer drained", queue=conn.config.queue)

    async def _terminate(self) -> None:
        self._stopping = True
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        setup_task, self._setup_task = self._setup_task, None
        if setup_task is not None:
            setup_task.cancel()
            (result,) = await asyncio.gather(setup_task, return_exceptions=True)
            if not isinstance(result, BaseException):
                await self._close_quietly(result)

        channel = self._conn.channel
        self._clear_channel()
        if channel is not None:
            await self._close_quietly(channel)

        self._state = ProducerState.DISCONNECTED
        self._buffer.close()
        logger.info("RabbitMQ producer stopped", queue=self._conn.config.queue)

    async def _close_quietly(self, channel: Any) -> None:
        try:
            await self._client.close_connection(channel)
        except Exception as e:
            logger.debug("Ignoring error while closing connection", error=str(e))
