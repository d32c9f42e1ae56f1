import asyncio

import fakeredis
import pytest

from block_ingest.channel import create_channel, topic_name
from block_ingest.channel import redis_streams
from block_ingest.codec import decode_block, make_message
from block_ingest.config import ChannelConfig
from block_ingest.errors import ChannelConsumeError, ChannelPublishError
from block_ingest.types import TaskMode
from tests.fakes import make_block

TOPIC = "blocks:ethereum-blocks"
GROUP = "block-persister"


def channel_config(**overrides) -> ChannelConfig:
    options = dict(block_ms=10, claim_idle_ms=0, backlog_poll_ms=1)
    options.update(overrides)
    return ChannelConfig(**options)


@pytest.fixture
def server():
    return fakeredis.FakeServer()


def make_channel(server, **overrides) -> redis_streams.Channel:
    client = fakeredis.FakeAsyncRedis(server=server)
    return redis_streams.Channel(channel_config(**overrides), client=client)


def message(n: int):
    return make_message("ethereum", "blocks", make_block(n))


async def take(deliveries, count: int):
    return [await asyncio.wait_for(deliveries.__anext__(), timeout=5) for _ in range(count)]


@pytest.mark.asyncio
async def test_publish_consume_ack(server):
    channel = make_channel(server)
    for n in (1, 2, 3):
        await channel.publish(TOPIC, message(n))

    deliveries = channel.consume(TOPIC, GROUP)
    received = await take(deliveries, 3)

    assert [decode_block(d.payload)[1].number for d in received] == [1, 2, 3]
    assert all(d.topic == TOPIC and d.subscription == GROUP for d in received)

    for d in received:
        await channel.ack(d)
    assert await channel._client.xlen(TOPIC) == 0

    await deliveries.aclose()
    await channel.close()


@pytest.mark.asyncio
async def test_unacked_entries_are_redelivered_after_restart(server):
    channel = make_channel(server)
    for n in (1, 2, 3):
        await channel.publish(TOPIC, message(n))

    deliveries = channel.consume(TOPIC, GROUP)
    first, _ = await take(deliveries, 2)
    await channel.ack(first)
    await deliveries.aclose()
    await channel.close()

    restarted = make_channel(server)
    deliveries = restarted.consume(TOPIC, GROUP)
    redelivered = await take(deliveries, 2)

    assert [decode_block(d.payload)[1].number for d in redelivered] == [2, 3]

    await restarted.publish(TOPIC, message(4))
    (fresh,) = await take(deliveries, 1)
    assert decode_block(fresh.payload)[1].number == 4

    await deliveries.aclose()
    await restarted.close()


@pytest.mark.asyncio
async def test_publish_waits_while_backlog_is_full(server):
    channel = make_channel(server, max_backlog=2)
    await channel.publish(TOPIC, message(1))
    await channel.publish(TOPIC, message(2))

    blocked = asyncio.create_task(channel.publish(TOPIC, message(3)))
    await asyncio.sleep(0.05)
    assert not blocked.done()

    deliveries = channel.consume(TOPIC, GROUP)
    (first,) = await take(deliveries, 1)
    await channel.ack(first)

    await asyncio.wait_for(blocked, timeout=5)
    assert await channel._client.xlen(TOPIC) == 2

    await deliveries.aclose()
    await channel.close()


@pytest.mark.asyncio
async def test_broker_errors_are_wrapped(server):
    channel = make_channel(server)
    server.connected = False

    with pytest.raises(ChannelPublishError):
        await channel.publish(TOPIC, message(1))

    with pytest.raises(ChannelConsumeError):
        await channel.consume(TOPIC, GROUP).__anext__()


def test_topic_names():
    assert topic_name("blocks:", "ethereum", "blocks", TaskMode.REALTIME) == "blocks:ethereum-blocks"
    assert (
        topic_name("blocks:", "ethereum", "blocks", TaskMode.HISTORICAL)
        == "blocks:ethereum-blocks-historical"
    )


def test_create_channel():
    channel = create_channel(ChannelConfig())

    assert isinstance(channel, redis_streams.Channel)
