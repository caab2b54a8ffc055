import pytest

from ordersync.schemas import ChangeType, Order
from ordersync.sync.collection import LiveCollection, SortOrder, is_stale
from tests.conftest import at, message


def transcript(*records):
    return LiveCollection(SortOrder.OLDEST_FIRST, sort_key="sent_at", records=records)


def test_upsert_same_id_twice_keeps_one_entry():
    messages = transcript()
    messages.upsert(message("m1", 1))
    messages.upsert(message("m1", 1, content="edited"))

    assert len(messages) == 1
    assert messages.get("m1").content == "edited"


def test_apply_insert_is_idempotent():
    messages = transcript(message("m1", 1))
    for _ in range(3):
        messages.apply(ChangeType.INSERT, message("m2", 2))

    assert messages.ids() == ["m1", "m2"]


def test_oldest_first_order_regardless_of_arrival():
    messages = transcript()
    for key, sent in [("m3", 3), ("m1", 1), ("m4", 4), ("m2", 2)]:
        messages.upsert(message(key, sent))

    assert messages.ids() == ["m1", "m2", "m3", "m4"]
    sent_at = [m.sent_at for m in messages]
    assert sent_at == sorted(sent_at)


def test_equal_sort_keys_keep_arrival_order():
    messages = transcript(message("a", 1), message("b", 1))
    messages.upsert(message("c", 1))

    assert messages.ids() == ["a", "b", "c"]


def test_newest_first_order():
    orders = LiveCollection(SortOrder.NEWEST_FIRST, sort_key="created_at")
    orders.upsert(Order(id="o1", created_at=at(1)))
    orders.upsert(Order(id="o3", created_at=at(3)))
    orders.upsert(Order(id="o2", created_at=at(2)))

    assert orders.ids() == ["o3", "o2", "o1"]


def test_insertion_order():
    items = LiveCollection()
    items.upsert(message("b", 2))
    items.upsert(message("a", 1))

    assert items.ids() == ["b", "a"]


def test_sorted_collection_requires_sort_key():
    with pytest.raises(ValueError):
        LiveCollection(SortOrder.OLDEST_FIRST)


def test_update_unknown_id_is_noop():
    messages = transcript(message("m1", 1))

    assert messages.update(message("ghost", 2)) is False
    assert messages.ids() == ["m1"]


def test_delete_unknown_id_is_noop():
    messages = transcript(message("m1", 1))

    assert messages.remove("ghost") is None
    assert messages.apply(ChangeType.DELETE, {"id": "ghost"}) is False
    assert len(messages) == 1


def test_delete_accepts_key_bearing_fragment():
    messages = transcript(message("m1", 1), message("m2", 2))

    assert messages.apply(ChangeType.DELETE, {"id": "m1"}) is True
    assert messages.ids() == ["m2"]


def test_replace_keeps_placeholder_position():
    messages = transcript(message("m1", 1), message("temp-1", 2), message("m3", 3))

    index = messages.replace("temp-1", message("m2", 2))

    assert index == 1
    assert messages.ids() == ["m1", "m2", "m3"]


def test_replace_when_server_record_already_merged():
    messages = transcript(message("m1", 1), message("temp-1", 2))
    # Realtime insert for the confirmed id landed first
    messages.upsert(message("m2", 2))

    messages.replace("temp-1", message("m2", 2))

    assert messages.ids() == ["m1", "m2"]


def test_replace_missing_placeholder_inserts():
    messages = transcript(message("m1", 1))

    messages.replace("temp-gone", message("m2", 2))

    assert messages.ids() == ["m1", "m2"]


def test_replace_moves_record_when_server_time_passes_neighbour():
    messages = transcript(message("temp-1", 1), message("admin-1", 2))

    messages.replace("temp-1", message("m1", 3))

    assert messages.ids() == ["admin-1", "m1"]


def test_update_replaces_whole_entry():
    messages = transcript(message("m1", 1, content="old"))

    messages.apply(ChangeType.UPDATE, message("m1", 1, content="new", read=True))

    current = messages.get("m1")
    assert current.content == "new"
    assert current.read is True


def test_apply_fenced_ignores_older_versions():
    orders = LiveCollection(SortOrder.NEWEST_FIRST, sort_key="created_at")
    orders.upsert(Order(id="o1", status="ready", created_at=at(0), updated_at=at(20)))

    applied = orders.apply_fenced(
        ChangeType.UPDATE,
        Order(id="o1", status="preparing", created_at=at(0), updated_at=at(10)),
    )

    assert applied is False
    assert orders.get("o1").status == "ready"


def test_apply_fenced_accepts_newer_versions():
    orders = LiveCollection(SortOrder.NEWEST_FIRST, sort_key="created_at")
    orders.upsert(Order(id="o1", status="preparing", created_at=at(0), updated_at=at(10)))

    assert orders.apply_fenced(
        ChangeType.UPDATE,
        Order(id="o1", status="ready", created_at=at(0), updated_at=at(20)),
    )
    assert orders.get("o1").status == "ready"


def test_reset_drops_duplicate_ids():
    messages = transcript()
    messages.reset([message("m1", 1), message("m1", 1), message("m2", 2)])

    assert messages.ids() == ["m1", "m2"]


def test_snapshot_is_a_copy():
    messages = transcript(message("m1", 1))
    snapshot = messages.snapshot()
    messages.upsert(message("m2", 2))

    assert len(snapshot) == 1
    assert "m2" in messages


def test_is_stale_without_versions():
    assert is_stale(Order(id="o1"), Order(id="o1")) is False
    assert is_stale(
        Order(id="o1", updated_at=at(2)),
        Order(id="o1", updated_at=at(1)),
    ) is True
