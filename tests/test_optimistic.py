import pytest

from ordersync.core.config import OptimisticFailurePolicy
from ordersync.services.backend.base import BackendError
from ordersync.sync.collection import LiveCollection, SortOrder
from ordersync.sync.errors import WriteFailed
from ordersync.sync.optimistic import FAILED_HISTORY, ActionState, OptimisticReconciler, TempIdFactory
from tests.conftest import message


def transcript(*records):
    return LiveCollection(SortOrder.OLDEST_FIRST, sort_key="sent_at", records=records)


def placeholder(content="hello", sent=5):
    return lambda temp_id: message(temp_id, sent, content=content, pending=True)


def test_temp_ids_are_unique_and_prefixed():
    temp_ids = TempIdFactory()
    issued = {temp_ids() for _ in range(100)}

    assert len(issued) == 100
    assert all(TempIdFactory.is_temp(key) for key in issued)
    assert not TempIdFactory.is_temp("3f2a9c0e1b6d4e7f8a9b0c1d2e3f4a5b")


@pytest.mark.anyio
async def test_placeholder_shown_before_write_and_replaced_in_place(notifier):
    messages = transcript(message("m1", 1), message("m9", 9))
    reconciler = OptimisticReconciler(messages, notifier=notifier)
    seen = {}

    async def write():
        # Local state already carries the placeholder
        seen["ids"] = messages.ids()
        seen["states"] = [a.state for a in reconciler.actions]
        return message("server-1", 5, content="hello")

    confirmed = await reconciler.submit(placeholder(), write)

    assert seen["ids"][0] == "m1" and seen["ids"][2] == "m9"
    assert TempIdFactory.is_temp(seen["ids"][1])
    assert messages.ids() == ["m1", "server-1", "m9"]
    assert confirmed.id == "server-1"
    assert seen["states"] == [ActionState.IN_FLIGHT]
    assert reconciler.actions == []
    assert not reconciler.has_pending


@pytest.mark.anyio
async def test_realtime_insert_before_write_returns(notifier):
    messages = transcript()
    reconciler = OptimisticReconciler(messages, notifier=notifier)

    async def write():
        messages.upsert(message("server-1", 5, content="hello"))
        return message("server-1", 5, content="hello")

    await reconciler.submit(placeholder(), write)

    assert messages.ids() == ["server-1"]


@pytest.mark.anyio
async def test_realtime_insert_after_confirmation(notifier):
    messages = transcript()
    reconciler = OptimisticReconciler(messages, notifier=notifier)

    async def write():
        return message("server-1", 5, content="hello")

    await reconciler.submit(placeholder(), write)
    messages.upsert(message("server-1", 5, content="hello"))

    assert messages.ids() == ["server-1"]


@pytest.mark.anyio
async def test_failed_write_rolls_back_and_notifies(notifier):
    messages = transcript(message("m1", 1))
    reconciler = OptimisticReconciler(
        messages, notifier=notifier, on_failure=OptimisticFailurePolicy.ROLLBACK
    )

    async def write():
        raise BackendError("insert failed")

    with pytest.raises(WriteFailed) as exc_info:
        await reconciler.submit(placeholder("keep me"), write)

    assert messages.ids() == ["m1"]
    assert exc_info.value.placeholder.content == "keep me"
    assert notifier.messages("error") == ["Failed to send message"]
    assert reconciler.actions == []
    assert reconciler.failed[0].state == ActionState.FAILED


@pytest.mark.anyio
async def test_failed_write_can_mark_placeholder(notifier):
    messages = transcript()
    reconciler = OptimisticReconciler(
        messages, notifier=notifier, on_failure=OptimisticFailurePolicy.MARK_FAILED
    )

    async def write():
        raise BackendError("insert failed")

    with pytest.raises(WriteFailed):
        await reconciler.submit(placeholder(), write)

    [kept] = messages.snapshot()
    assert kept.failed is True
    assert kept.pending is False


@pytest.mark.anyio
async def test_failed_write_can_keep_placeholder(notifier):
    messages = transcript()
    reconciler = OptimisticReconciler(
        messages, notifier=notifier, on_failure=OptimisticFailurePolicy.KEEP
    )

    async def write():
        raise BackendError("insert failed")

    with pytest.raises(WriteFailed):
        await reconciler.submit(placeholder(), write)

    [kept] = messages.snapshot()
    assert kept.pending is True
    assert kept.is_placeholder


@pytest.mark.anyio
async def test_settled_actions_are_not_retained(notifier):
    messages = transcript()
    reconciler = OptimisticReconciler(messages, notifier=notifier)
    outcomes = iter([True] * 50 + [False] * (FAILED_HISTORY + 5))

    async def write():
        if not next(outcomes):
            raise BackendError("timeout")
        return message(f"server-{len(messages)}", len(messages), content="hello")

    for _ in range(50 + FAILED_HISTORY + 5):
        try:
            await reconciler.submit(placeholder(), write)
        except WriteFailed:
            pass

    assert reconciler.actions == []
    assert not reconciler.has_pending
    assert len(reconciler.failed) == FAILED_HISTORY
    assert len(messages) == 50
