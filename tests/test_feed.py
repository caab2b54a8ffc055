import anyio
import pytest
from fakeredis.aioredis import FakeRedis

from ordersync.schemas import ChangeEvent, ChangeType
from ordersync.services.backend.base import ChangeFilter
from ordersync.services.backend.feed import RedisChangeFeed, decode_envelope, encode_envelope
from tests.conftest import at


def test_envelope_round_trip_keeps_filter_row():
    event = ChangeEvent(
        event_type=ChangeType.UPDATE,
        table="chat_messages",
        new_record={"id": "m1", "read": True, "updated_at": at(1)},
        old_record={"id": "m1"},
    )

    decoded, row = decode_envelope(encode_envelope(event, {"id": "m1", "chat_id": "c1", "read": True}))

    assert decoded.key == "m1"
    assert decoded.new_record["read"] is True
    assert row["chat_id"] == "c1"


@pytest.mark.parametrize("payload", [b"not json", "{}", '{"event": {"event_type": "update"}}'])
def test_malformed_envelopes_are_rejected(payload):
    with pytest.raises(ValueError):
        decode_envelope(payload)


@pytest.mark.anyio
async def test_publish_reaches_matching_subscribers():
    feed = RedisChangeFeed(FakeRedis(), prefix="test")
    received = []

    async def handler(event):
        received.append(event)

    subscription = await feed.subscribe("chat_messages", handler, ChangeFilter.parse("chat_id=eq.c1"))
    try:
        for chat_id, key in [("c2", "m0"), ("c1", "m1")]:
            event = ChangeEvent(
                event_type=ChangeType.INSERT,
                table="chat_messages",
                new_record={"id": key, "chat_id": chat_id},
            )
            await feed.publish(event, event.new_record)

        with anyio.fail_after(5):
            while not received:
                await anyio.sleep(0.01)
    finally:
        assert await subscription.unsubscribe() is True
        assert await subscription.unsubscribe() is False

    assert [e.key for e in received] == ["m1"]
    assert feed.channel_name("orders") == "test:orders"
    assert await feed.ping() is True
    await feed.close()
