import asyncio
import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot.outbound import OutboundQueue, Raw, Reply, Say


class OutboundQueueTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_producers_are_sent_in_arrival_order(self) -> None:
        sent = []

        async def send(message):
            sent.append(message.text)

        queue = OutboundQueue(send, delay=0)
        handles = [queue.handle(name) for name in ("router", "pubsub", "actions")]
        await asyncio.gather(
            handles[0].say("chan", "A"),
            handles[1].say("chan", "B"),
            handles[2].say("chan", "C"),
        )
        queue.start()
        await asyncio.wait_for(queue.join(), timeout=1)
        await queue.stop()

        self.assertEqual(sent, ["A", "B", "C"])

    async def test_waits_after_every_send(self) -> None:
        events = []

        async def send(message):
            events.append(("send", message.text))

        async def fake_sleep(delay):
            events.append(("sleep", delay))

        queue = OutboundQueue(send, delay=1.0, sleep=fake_sleep)
        handle = queue.handle("router")
        await handle.say("chan", "one")
        await handle.raw("chan", "/timeout someone 600")
        queue.start()
        await asyncio.wait_for(queue.join(), timeout=1)
        await asyncio.sleep(0)
        await queue.stop()

        self.assertEqual(
            events,
            [("send", "one"), ("sleep", 1.0), ("send", "/timeout someone 600"), ("sleep", 1.0)],
        )

    async def test_failed_send_does_not_stop_consumer(self) -> None:
        send = AsyncMock(side_effect=[RuntimeError("rate limited"), None])
        queue = OutboundQueue(send, delay=0)
        handle = queue.handle("router")
        await handle.say("chan", "first")
        await handle.say("chan", "second")
        queue.start()
        await asyncio.wait_for(queue.join(), timeout=1)
        await queue.stop()

        self.assertEqual(send.await_count, 2)
        self.assertEqual(send.await_args.args[0], Say("chan", "second"))
        self.assertEqual(queue.pending(), 0)

    async def test_reply_channel_comes_from_original_message(self) -> None:
        original = SimpleNamespace(id="m1", broadcaster=SimpleNamespace(name="somechannel"))
        self.assertEqual(Reply("hi", original).channel, "somechannel")
        self.assertEqual(Raw("chan", "/me waves").channel, "chan")

    async def test_stop_without_start(self) -> None:
        queue = OutboundQueue(AsyncMock())
        await queue.stop()


if __name__ == "__main__":
    unittest.main()
