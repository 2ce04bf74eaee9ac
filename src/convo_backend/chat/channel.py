"""Bounded single-producer/single-consumer channel for turn output."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

logger = logging.getLogger(__name__)

ERROR_MARKER_PREFIX = b"\n[[error]] "


class ChannelClosed(Exception):
    """Raised to the producer once the receiving side has gone away."""


@dataclass(frozen=True)
class _End:
    pass


_END = _End()


def error_marker(message: str) -> bytes:
    """Terminal frame appended after partial output when a turn fails."""

    return ERROR_MARKER_PREFIX + message.replace("\n", " ").encode("utf-8") + b"\n"


class TurnChannel:
    """
    Ordered frame queue between a turn's producer task and the response body.

    ``maxsize`` is the backpressure bound: ``send`` suspends the producer while
    that many frames are waiting, which in turn stops reads from the provider.
    """

    def __init__(self, maxsize: int):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue[bytes | _End] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._finished = False
        self._space = asyncio.Event()

    async def send(self, frame: bytes) -> None:
        """Queue a data frame, waiting while the channel is full."""

        if not frame:
            return
        await self._put(frame)

    async def fail(self, message: str) -> None:
        """Send the terminal error marker and end the stream."""

        try:
            await self._put(error_marker(message))
        finally:
            await self.finish()

    async def finish(self) -> None:
        """Signal the end of output; later calls are ignored."""

        if self._finished or self._closed:
            self._finished = True
            return
        self._finished = True
        try:
            await self._put(_END)
        except ChannelClosed:
            logger.debug("Receiver closed before the end marker was queued")

    async def _put(self, item: bytes | _End) -> None:
        while True:
            if self._closed:
                raise ChannelClosed("Client disconnected")
            if self._finished and item is not _END:
                raise ChannelClosed("Channel already finished")
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._space.clear()
                await self._space.wait()

    def close(self) -> None:
        """Drop the receiving end; pending frames are discarded."""

        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._space.set()

    async def receive(self) -> AsyncIterator[bytes]:
        """Yield frames in send order until the end marker arrives."""

        while not self._closed:
            item = await self._queue.get()
            self._space.set()
            if isinstance(item, _End):
                return
            yield item


__all__ = ["ChannelClosed", "ERROR_MARKER_PREFIX", "TurnChannel", "error_marker"]
