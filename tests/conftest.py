"""Pytest fixtures for rabbitmq-producer tests."""

import asyncio
import itertools
from collections.abc import Callable
from typing import Any

import pytest

from rabbitmq_producer.queues.base import BaseBrokerClient, Watch
from rabbitmq_producer.queues.config import ClientConfig
from rabbitmq_producer.queues.errors import StaleChannelError
from rabbitmq_producer.queues.schemas import Delivery


class FakeChannel:
    """Channel handle handed out by FakeBrokerClient."""

    def __init__(self, number: int):
        self.number = number
        self.closed = False
        self.connection_callbacks: list[Callable[[], None]] = []
        self.channel_callbacks: list[Callable[[], None]] = []
        self.on_delivery: Callable[[Delivery], None] | None = None
        self.on_cancel: Callable[[], None] | None = None

    def __repr__(self) -> str:
        return f"FakeChannel({self.number})"


class FakeBrokerClient(BaseBrokerClient):
    """
    In-memory broker client.

    setup_channel raises the queued failures first, then hands out numbered
    FakeChannel objects. Settlement calls are recorded in `calls`.
    """

    def __init__(self, failures: list[BaseException] | None = None):
        self.failures = list(failures or [])
        self.init_calls: list[dict[str, Any]] = []
        self.setup_calls: list[ClientConfig] = []
        self.channels: list[FakeChannel] = []
        self.calls: list[tuple] = []
        self.cancel_error: BaseException | None = None
        self.setup_gate: asyncio.Event | None = None
        self.auto_deliver: list[bytes] = []
        self._tags = itertools.count(1)

    def init(self, options):
        self.init_calls.append(dict(options))
        return super().init(options)

    async def setup_channel(self, config):
        self.setup_calls.append(config)
        if self.setup_gate is not None:
            await self.setup_gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        channel = FakeChannel(len(self.channels) + 1)
        self.channels.append(channel)
        return channel

    async def consume(self, channel, config, on_delivery, on_cancel):
        channel.on_delivery = on_delivery
        channel.on_cancel = on_cancel
        for body in self.auto_deliver:
            asyncio.get_running_loop().call_soon(self.deliver, channel, body)
        return f"ctag-{channel.number}"

    async def cancel(self, channel, consumer_tag):
        self.calls.append(("cancel", channel, consumer_tag))
        if self.cancel_error is not None:
            raise self.cancel_error
        return consumer_tag

    async def ack(self, channel, delivery_tag):
        if channel.closed:
            raise StaleChannelError("channel is closed")
        self.calls.append(("ack", channel, delivery_tag))

    async def reject(self, channel, delivery_tag, *, requeue):
        if channel.closed:
            raise StaleChannelError("channel is closed")
        self.calls.append(("reject", channel, delivery_tag, requeue))

    async def close_connection(self, channel):
        channel.closed = True
        self.calls.append(("close", channel))

    def monitor_connection(self, channel, callback):
        channel.connection_callbacks.append(callback)
        return Watch(lambda: channel.connection_callbacks.remove(callback))

    def monitor_channel(self, channel, callback):
        channel.channel_callbacks.append(callback)
        return Watch(lambda: channel.channel_callbacks.remove(callback))

    # Test helpers

    def deliver(self, channel: FakeChannel, body: bytes = b"payload", **attributes: Any) -> None:
        attributes.setdefault("delivery_tag", next(self._tags))
        attributes.setdefault("redelivered", False)
        channel.on_delivery(Delivery(body=body, attributes=attributes))

    def kill_connection(self, channel: FakeChannel) -> None:
        """Simulate the connection dying: both watches fire."""
        channel.closed = True
        for callback in list(channel.connection_callbacks):
            callback()
        for callback in list(channel.channel_callbacks):
            callback()

    def kill_channel(self, channel: FakeChannel) -> None:
        channel.closed = True
        for callback in list(channel.channel_callbacks):
            callback()

    def calls_named(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate() is true, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_client() -> FakeBrokerClient:
    """Broker client double with no queued failures."""
    return FakeBrokerClient()


@pytest.fixture
def base_options() -> dict[str, Any]:
    """Minimal valid producer options."""
    return {"queue": "orders"}
