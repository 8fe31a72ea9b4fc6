"""
Host-side message buffer.

The producer pushes every delivery straight into this buffer and never
waits for demand; the broker's prefetch limit is what bounds the number of
messages in flight. The buffer only matters when prefetch is disabled or
sized above what the pipeline drains, in which case it evicts according to
buffer_keep.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Literal

from rabbitmq_producer.observability.metrics import get_metrics
from rabbitmq_producer.queues.schemas import Message

logger = logging.getLogger(__name__)


class MessageBuffer:
    """
    Non-blocking FIFO of messages awaiting the pipeline.

    Usage:
        buffer = MessageBuffer(max_size=250, keep="last")
        buffer.push(message)

        async for message in buffer:
            handle(message)
    """

    def __init__(
        self,
        max_size: int | Literal["infinity"] | None = None,
        keep: Literal["first", "last"] = "last",
    ):
        """
        Initialize the buffer.

        Args:
            max_size: Maximum number of buffered messages, "infinity" or
                None for no limit
            keep: On overflow, "last" evicts the oldest message and "first"
                drops the incoming one
        """
        self._max_size = None if max_size == "infinity" else max_size
        self._keep = keep
        self._items: deque[Message] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self._dropped = 0

    @property
    def max_size(self) -> int | None:
        return self._max_size

    @property
    def dropped(self) -> int:
        """Number of messages discarded because the buffer was full."""
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def push(self, message: Message) -> None:
        """Add a message, evicting according to keep when full."""
        if self._closed:
            logger.warning("Discarding message pushed to a closed buffer")
            return

        if self._max_size is not None and len(self._items) >= self._max_size:
            self._dropped += 1
            get_metrics().buffer_dropped.labels(keep=self._keep).inc()
            logger.warning(
                f"Buffer full ({self._max_size}), dropping "
                f"{'oldest' if self._keep == 'last' else 'incoming'} message"
            )
            if self._keep == "first":
                return
            self._items.popleft()

        self._items.append(message)
        self._ready.set()

    def get_nowait(self) -> Message | None:
        """Pop the oldest message, or None if the buffer is empty."""
        if not self._items:
            return None
        message = self._items.popleft()
        if not self._items and not self._closed:
            self._ready.clear()
        return message

    async def get(self) -> Message | None:
        """
        Wait for the next message.

        Returns:
            The oldest message, or None once the buffer is closed and empty
        """
        while not self._items:
            if self._closed:
                return None
            await self._ready.wait()
        return self.get_nowait()

    def close(self) -> None:
        """Stop accepting messages and wake up waiting consumers."""
        self._closed = True
        self._ready.set()

    async def __aiter__(self) -> AsyncIterator[Message]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message
