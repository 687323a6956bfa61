from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from bot.config import OUTBOUND_QUEUE_SIZE, SEND_DELAY

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised by the chat transport when Twitch rejects a request."""


@dataclass(frozen=True)
class Say:
    channel: str
    text: str


@dataclass(frozen=True)
class Reply:
    text: str
    original: Any

    @property
    def channel(self) -> str:
        broadcaster = getattr(self.original, 'broadcaster', None)
        return getattr(broadcaster, 'name', None) or ''


@dataclass(frozen=True)
class Raw:
    channel: str
    text: str


OutboundMessage = Union[Say, Reply, Raw]
Sender = Callable[[OutboundMessage], Awaitable[None]]


class OutboundQueue:
    """Single FIFO of chat messages drained by one consumer task.

    After every send the consumer waits ``delay`` seconds, which is the only
    rate limit and applies to all channels together. Messages still queued
    when the process dies are lost.
    """

    def __init__(
        self,
        send: Sender,
        *,
        maxsize: int = OUTBOUND_QUEUE_SIZE,
        delay: float = SEND_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._send = send
        self._queue: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=maxsize)
        self.delay = delay
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    def handle(self, producer: str) -> 'OutboundHandle':
        return OutboundHandle(self, producer)

    async def put(self, message: OutboundMessage) -> None:
        await self._queue.put(message)

    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def join(self) -> None:
        await self._queue.join()

    async def run(self) -> None:
        logger.info('starting outbound message consumer')
        while True:
            message = await self._queue.get()
            try:
                await self._send(message)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('failed to send %s to %s', type(message).__name__, message.channel)
            finally:
                self._queue.task_done()
            await self._sleep(self.delay)


class OutboundHandle:
    """Writer side of the queue held by one producer."""

    def __init__(self, queue: OutboundQueue, producer: str):
        self._queue = queue
        self.producer = producer

    async def send(self, message: OutboundMessage) -> None:
        logger.debug('%s enqueued %s for %s', self.producer, type(message).__name__, message.channel)
        await self._queue.put(message)

    async def say(self, channel: str, text: str) -> None:
        await self.send(Say(channel, text))

    async def reply(self, text: str, original: Any) -> None:
        await self.send(Reply(text, original))

    async def raw(self, channel: str, text: str) -> None:
        await self.send(Raw(channel, text))
