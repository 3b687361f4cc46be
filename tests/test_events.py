"""
Tests for typed event channels.
"""

import asyncio

import pytest

from src.callagent.events import Channel


@pytest.mark.asyncio
async def test_publish_reaches_handlers_in_subscription_order():
    channel = Channel("test")
    seen = []

    async def first(event):
        seen.append(("first", event))

    async def second(event):
        seen.append(("second", event))

    channel.subscribe(first)
    channel.subscribe(second)
    await channel.publish(1)

    assert seen == [("first", 1), ("second", 1)]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    channel = Channel("test")
    seen = []

    async def broken(event):
        raise RuntimeError("boom")

    async def ok(event):
        seen.append(event)

    channel.subscribe(broken)
    channel.subscribe(ok)
    await channel.publish("x")

    assert seen == ["x"]


@pytest.mark.asyncio
async def test_cancellation_propagates():
    channel = Channel("test")

    async def cancelled(event):
        raise asyncio.CancelledError()

    channel.subscribe(cancelled)

    with pytest.raises(asyncio.CancelledError):
        await channel.publish("x")


@pytest.mark.asyncio
async def test_unsubscribe_and_close():
    channel = Channel("test")
    seen = []

    async def handler(event):
        seen.append(event)

    unsubscribe = channel.subscribe(handler)
    await channel.publish(1)
    unsubscribe()
    await channel.publish(2)

    channel.subscribe(handler)
    channel.close()
    await channel.publish(3)

    assert seen == [1]
    assert channel.closed is True
