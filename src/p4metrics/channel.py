"""Bounded message channels between pipeline tasks.

A Channel is a fixed-capacity asyncio queue that can be closed once by its
producer. Consumers drain whatever is buffered and then see ChannelClosed.
"""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class ChannelClosed(Exception):
    """Raised when receiving from a drained closed channel or sending to a closed one."""


class Channel(Generic[T]):
    """A bounded FIFO channel with close semantics.

    Usage:
        chan: Channel[str] = Channel(100)
        await chan.put("line")
        chan.close()
        async for item in chan:
            ...
    """

    def __init__(self, capacity: int = 0, name: str = ""):
        """Initialize the channel.

        Args:
            capacity: Maximum buffered items (0 for unbounded).
            name: Name used in error messages.
        """
        self.capacity = capacity
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._marker = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        """Number of buffered items."""
        return self._queue.qsize() - (1 if self._marker else 0)

    async def put(self, item: T) -> None:
        """Send an item, waiting while the channel is full.

        Raises:
            ChannelClosed: If the channel has been closed.
        """
        if self._closed:
            raise ChannelClosed(f"send on closed channel {self.name!r}")
        await self._queue.put(item)

    async def get(self) -> T:
        """Receive the next item.

        Raises:
            ChannelClosed: Once the channel is closed and fully drained.
        """
        if self._closed and self._queue.empty():
            raise ChannelClosed(f"channel {self.name!r} is closed")
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker in place for any other waiting receivers
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosed(f"channel {self.name!r} is closed")
        return item

    def close(self) -> None:
        """Close the channel.

        Buffered items remain readable. A channel may only be closed once.

        Raises:
            RuntimeError: If the channel is already closed.
        """
        if self._closed:
            raise RuntimeError(f"close of closed channel {self.name!r}")
        self._closed = True
        # A full queue has no blocked receivers; they see the closed flag
        # once they have drained it.
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)
            self._marker = True

    def __aiter__(self) -> Channel[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except ChannelClosed:
            raise StopAsyncIteration from None
