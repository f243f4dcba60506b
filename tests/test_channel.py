"""Tests for the in-process duplex channel."""

import asyncio

import pytest

from llm_relay.channel import Channel, QueueChannel
from llm_relay.errors import CancellationError


class TestQueueChannel:
    async def test_replies_in_order_and_drained_after_close(self):
        channel = QueueChannel()
        await channel.send({"n": 1})
        await channel.send({"n": 2})
        await channel.close()
        assert [m async for m in channel.replies()] == [{"n": 1}, {"n": 2}]

    async def test_replies_wait_for_messages(self):
        channel = QueueChannel()

        async def produce():
            for n in range(3):
                await asyncio.sleep(0)
                await channel.send({"n": n})
            await channel.close()

        task = asyncio.create_task(produce())
        received = [m["n"] async for m in channel.replies()]
        await task
        assert received == [0, 1, 2]

    async def test_send_after_close(self):
        channel = QueueChannel()
        await channel.close()
        assert channel.closed
        with pytest.raises(CancellationError):
            await channel.send({"n": 1})

    async def test_post_and_receive(self):
        channel = QueueChannel()
        channel.post({"kind": "PROCESS_CONTENT"})
        assert await channel.receive() == {"kind": "PROCESS_CONTENT"}

    async def test_receive_unblocks_on_close(self):
        channel = QueueChannel()
        waiter = asyncio.create_task(channel.receive())
        await asyncio.sleep(0)
        await channel.close()
        with pytest.raises(CancellationError):
            await waiter

    async def test_post_after_close(self):
        channel = QueueChannel()
        await channel.close()
        with pytest.raises(CancellationError):
            channel.post({})

    async def test_bounded_send_unblocks_on_close(self):
        channel = QueueChannel(maxsize=1)
        await channel.send({"n": 1})
        blocked = asyncio.create_task(channel.send({"n": 2}))
        await asyncio.sleep(0)
        assert not blocked.done()
        await channel.close()
        with pytest.raises(CancellationError):
            await blocked

    def test_satisfies_protocol(self):
        channel = QueueChannel()
        assert isinstance(channel, Channel)
        assert channel.name == "llm_stream"
