"""
RabbitMQ producer with reconnection backoff and acknowledgment dispatch.

Classes:
    RabbitMQProducer: Connection lifecycle owner feeding messages to a pipeline
    Acknowledger: Settles processed messages with the broker
    BaseBrokerClient: Interface to the wire-protocol client
    AioPikaClient: aio-pika implementation of BaseBrokerClient
    MessageBuffer: Host-side buffer receiving delivered messages

Example:
    from rabbitmq_producer.queues import RabbitMQProducer

    async with RabbitMQProducer({"queue": "orders", "on_failure": "reject"}) as producer:
        async for message in producer.messages():
            try:
                await handle(message.data)
            except Exception:
                await producer.ack([], [message])
            else:
                await producer.ack([message], [])
"""

from rabbitmq_producer.queues.acknowledger import Acknowledger
from rabbitmq_producer.queues.amqp_client import AioPikaClient
from rabbitmq_producer.queues.backoff import BackoffState, advance, new_backoff, reset
from rabbitmq_producer.queues.base import BaseBrokerClient, Watch
from rabbitmq_producer.queues.buffer import MessageBuffer
from rabbitmq_producer.queues.config import (
    AckPolicy,
    BackoffType,
    ClientConfig,
    ProducerOptions,
    ProducerSettings,
)
from rabbitmq_producer.queues.errors import (
    ConfigError,
    ConnectError,
    ProducerTerminatedError,
    StaleChannelError,
)
from rabbitmq_producer.queues.producer import ProducerState, RabbitMQProducer
from rabbitmq_producer.queues.schemas import AckContext, Delivery, Message

__all__ = [
    "AckContext",
    "AckPolicy",
    "Acknowledger",
    "AioPikaClient",
    "BackoffState",
    "BackoffType",
    "BaseBrokerClient",
    "ClientConfig",
    "ConfigError",
    "ConnectError",
    "Delivery",
    "Message",
    "MessageBuffer",
    "ProducerOptions",
    "ProducerSettings",
    "ProducerState",
    "ProducerTerminatedError",
    "RabbitMQProducer",
    "StaleChannelError",
    "Watch",
    "advance",
    "new_backoff",
    "reset",
]
