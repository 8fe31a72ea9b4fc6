"""
Command-line interface for rabbitmq-producer.

Runs a producer against a broker for smoke-testing queue setups, and
validates option sets without connecting.

Usage:
    rabbitmq-producer consume --queue orders          # Log and ack messages
    rabbitmq-producer check-config --queue orders     # Print normalized options
"""

import asyncio
import json
import signal
import sys
from typing import Any

import click
import structlog
from pydantic import ValidationError

from rabbitmq_producer.observability.logging import setup_logging
from rabbitmq_producer.observability.metrics import get_metrics
from rabbitmq_producer.queues.config import METADATA_FIELDS, AckPolicy, ProducerSettings
from rabbitmq_producer.queues.errors import ConfigError, ProducerTerminatedError
from rabbitmq_producer.queues.producer import RabbitMQProducer

logger = structlog.get_logger(__name__)

ACK_CHOICES = click.Choice([policy.value for policy in AckPolicy])
BACKOFF_CHOICES = click.Choice(
    ["stop", "exponential", "random", "random_exponential", "exp", "rand", "rand_exp"]
)


def _connection_options(func):
    """Options shared by every command that builds a producer."""
    decorators = [
        click.option("--queue", default=None, help="Queue to consume from"),
        click.option("--url", default=None, help="AMQP URL of the broker"),
        click.option("--prefetch-count", default=None, type=int, help="Channel prefetch limit"),
        click.option("--buffer-size", default=None, type=int, help="Host buffer size"),
        click.option("--declare", is_flag=True, help="Declare the queue (durable) before consuming"),
        click.option("--bind", "bindings", multiple=True, help="Bind the queue to an exchange"),
        click.option(
            "--metadata",
            "metadata",
            multiple=True,
            type=click.Choice(METADATA_FIELDS),
            help="Delivery attribute to keep",
        ),
        click.option("--on-failure", default=None, type=ACK_CHOICES, help="Policy for failed messages"),
        click.option("--backoff-type", default=None, type=BACKOFF_CHOICES, help="Reconnect strategy"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _build_options(
    queue: str | None,
    url: str | None,
    prefetch_count: int | None,
    buffer_size: int | None,
    declare: bool,
    bindings: tuple[str, ...],
    metadata: tuple[str, ...],
    on_failure: str | None,
    backoff_type: str | None,
) -> dict[str, Any]:
    """Merge command-line flags over RABBITMQ_* environment settings."""
    try:
        settings = ProducerSettings()
    except ValidationError as e:
        raise ConfigError(f"invalid RABBITMQ_* settings: {e}") from e
    options = settings.to_options()

    if queue is not None:
        options["queue"] = queue
    if url is not None:
        options["connection"] = url
    if prefetch_count is not None:
        options["qos"] = {"prefetch_count": prefetch_count}
    if buffer_size is not None:
        options["buffer_size"] = buffer_size
    if declare:
        options["declare"] = {"durable": True}
    if bindings:
        options["bindings"] = [(exchange, {}) for exchange in bindings]
    if metadata:
        options["metadata"] = list(metadata)
    if on_failure is not None:
        options["on_failure"] = on_failure
    if backoff_type is not None:
        options["backoff_type"] = backoff_type
    return options


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """RabbitMQ Producer - resilient queue consumer for processing pipelines."""
    setup_logging(level="DEBUG" if debug else None)


@main.command()
@_connection_options
@click.option("--max-messages", default=0, type=int, help="Stop after N messages (0 = run forever)")
@click.option("--metrics/--no-metrics", default=False, help="Enable metrics server")
def consume(max_messages: int, metrics: bool, **flags: Any) -> None:
    """Consume a queue, logging and acknowledging every message."""
    try:
        producer = RabbitMQProducer(_build_options(**flags))
    except ConfigError as e:
        click.echo(click.style(f"Invalid options: {e}", fg="red"))
        sys.exit(2)

    consumed = 0

    async def handle_messages() -> None:
        nonlocal consumed
        async for message in producer.messages():
            logger.info(
                "Message received",
                size=len(message.data),
                delivery_tag=message.ack_context.delivery_tag,
                metadata=dict(message.metadata),
            )
            await producer.ack([message], [])
            consumed += 1
            if max_messages and consumed >= max_messages:
                break

    async def run() -> None:
        if metrics:
            get_metrics().start_server()

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop.set)

        async with producer:
            handler = asyncio.create_task(handle_messages())
            stopper = asyncio.create_task(stop.wait())
            watcher = asyncio.create_task(producer.join())
            await asyncio.wait(
                {handler, stopper, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
            stopper.cancel()
            await producer.drain()

        handler.cancel()
        _, outcome = await asyncio.gather(handler, watcher, return_exceptions=True)
        if isinstance(outcome, ProducerTerminatedError):
            raise outcome

    try:
        asyncio.run(run())
    except ProducerTerminatedError as e:
        click.echo(click.style(f"Producer stopped: {e}", fg="red"))
        sys.exit(1)

    click.echo(f"Consumed {consumed} messages")


@main.command("check-config")
@_connection_options
def check_config(**flags: Any) -> None:
    """Validate options and print the normalized configuration."""
    try:
        producer = RabbitMQProducer(_build_options(**flags))
    except ConfigError as e:
        click.echo(click.style(f"Invalid options: {e}", fg="red"))
        sys.exit(2)

    summary = {
        "client": producer.config.model_dump(mode="json", exclude={"after_connect"}),
        "producer": producer.producer_options(),
        "backoff": {
            "type": producer.backoff.type.value,
            "min_delay": producer.backoff.min_delay,
            "max_delay": producer.backoff.max_delay,
        },
    }
    click.echo(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
