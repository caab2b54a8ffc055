import pytest

from ordersync.schemas import ChatStatus, OrderStatus, PaymentStatus, SenderType
from ordersync.services.backend.base import RecordNotFound
from ordersync.sync.errors import InvalidTransition, WriteFailed
from ordersync.views import (
    AdminChatDashboard,
    OrderManagementView,
    OrderTrackingView,
    SupportChatView,
)
from tests.conftest import at


# =============================================================================
# ORDER TRACKING
# =============================================================================

@pytest.mark.anyio
async def test_tracking_view_follows_remote_status(backend, order_row, notifier):
    async with OrderTrackingView(backend, order_row["id"], notifier=notifier, poll_interval=60) as view:
        assert view.order.status == OrderStatus.PENDING
        assert view.channel.is_open
        assert view.poller.running

        await backend.update("orders", order_row["id"], {"status": "preparing"})
        await view.channel.settle()

        assert view.order.status == OrderStatus.PREPARING
        assert view.current_step == 1
        assert notifier.messages("success") == ["Order status updated to preparing"]

    assert backend.subscription_count == 0
    assert not view.poller.running


@pytest.mark.anyio
async def test_tracking_view_ignores_other_orders(backend, order_row, notifier):
    other = await backend.insert("orders", {"customer_name": "Ben"})
    async with OrderTrackingView(backend, order_row["id"], notifier=notifier, poll_interval=60) as view:
        await backend.update("orders", other["id"], {"status": "ready"})
        await view.channel.settle()

        assert view.order.id == order_row["id"]
        assert notifier.messages() == []


@pytest.mark.anyio
async def test_tracking_view_reports_load_failure(backend, notifier):
    view = OrderTrackingView(backend, "missing", notifier=notifier, poll_interval=60)
    await view.mount()

    assert view.order is None
    assert view.error
    assert notifier.messages("error") == ["Failed to load order details"]
    await view.unmount()


@pytest.mark.anyio
async def test_tracking_view_loads_existing_invoice(backend, order_row, notifier):
    backend.seed("invoices", [{
        "order_id": order_row["id"],
        "display_order_id": f"#{order_row['id'][-6:]}",
        "invoice_number": order_row["id"][-6:].upper(),
    }])
    view = OrderTrackingView(backend, order_row["id"], notifier=notifier, poll_interval=60)
    await view.refresh()

    assert view.invoice is not None
    assert view.invoice.order_id == order_row["id"]


@pytest.mark.anyio
async def test_tracking_steps(backend, order_row, notifier):
    view = OrderTrackingView(backend, order_row["id"], notifier=notifier, poll_interval=60)
    await view.refresh()

    for status, step in [
        (OrderStatus.PENDING, 0),
        (OrderStatus.CONFIRMED, 0),
        (OrderStatus.READY, 2),
        (OrderStatus.DELIVERED, 3),
        (OrderStatus.CANCELLED, -1),
    ]:
        view.apply_local_status(status)
        assert view.current_step == step


# =============================================================================
# CUSTOMER SUPPORT CHAT
# =============================================================================

@pytest.mark.anyio
async def test_send_message_happy_path(backend, chat_row, notifier):
    async with SupportChatView(backend, chat_row["order_id"], "cust-1", notifier=notifier) as view:
        sent = await view.send_message("  Any update?  ")
        await view.settle()

        contents = [m.content for m in view.messages]
        assert contents == ["Where is my food?", "Any update?"]
        assert view.messages.ids()[-1] == sent.id
        assert not sent.is_placeholder
        assert sent.sender_type == SenderType.CUSTOMER
        assert len(backend.rows("chat_messages")) == 2


@pytest.mark.anyio
async def test_blank_message_is_not_sent(backend, chat_row, notifier):
    async with SupportChatView(backend, chat_row["order_id"], "cust-1", notifier=notifier) as view:
        assert await view.send_message("   ") is None

    assert ("insert", "chat_messages") not in backend.calls


@pytest.mark.anyio
async def test_first_message_starts_chat(backend, order_row, notifier):
    async with SupportChatView(backend, order_row["id"], "cust-9", notifier=notifier) as view:
        assert view.chat is None

        await view.send_message("Cold food")
        await view.settle()

        assert view.chat.issue == "Cold food"
        assert [m.content for m in view.messages] == ["Cold food"]
        assert len(backend.rows("support_chats")) == 1


@pytest.mark.anyio
async def test_admin_reply_reaches_customer_once(backend, chat_row, notifier):
    async with SupportChatView(backend, chat_row["order_id"], "cust-1", notifier=notifier) as view, \
            AdminChatDashboard(backend, "admin-1", notifier=notifier) as dashboard:
        reply = await dashboard.send_message(chat_row["id"], "Coming right up")
        await view.settle()
        await dashboard.settle()

        assert view.messages.ids().count(reply.id) == 1
        assert dashboard.messages(chat_row["id"])[-1].id == reply.id
        assert len(dashboard.messages(chat_row["id"])) == 2
        sent_at = [m.sent_at for m in view.messages]
        assert sent_at == sorted(sent_at)


@pytest.mark.anyio
async def test_failed_send_rolls_back(backend, chat_row, notifier):
    async with SupportChatView(backend, chat_row["order_id"], "cust-1", notifier=notifier) as view:
        backend.fail_next("insert")

        with pytest.raises(WriteFailed) as exc_info:
            await view.send_message("Hello?")

        assert exc_info.value.placeholder.content == "Hello?"
        assert len(view.messages) == 1
        assert not any(m.is_placeholder for m in view.messages)
        assert notifier.messages("error") == ["Failed to send message"]


@pytest.mark.anyio
async def test_resolved_chat_rejects_messages(backend, chat_row, notifier):
    async with SupportChatView(backend, chat_row["order_id"], "cust-1", notifier=notifier) as view, \
            AdminChatDashboard(backend, notifier=notifier) as dashboard:
        await dashboard.resolve_chat(chat_row["id"])
        await view.settle()

        assert view.chat.is_resolved
        with pytest.raises(InvalidTransition):
            await view.send_message("Still there?")


@pytest.mark.anyio
async def test_customer_marks_admin_messages_read(backend, chat_row, notifier):
    backend.seed("chat_messages", [{
        "chat_id": chat_row["id"],
        "sender_id": "admin",
        "sender_type": "admin",
        "content": "Five minutes",
        "sent_at": at(20),
    }])
    async with SupportChatView(backend, chat_row["order_id"], "cust-1", notifier=notifier) as view:
        assert await view.mark_messages_read() == 1
        admin_messages = [m for m in view.messages if m.sender_type == SenderType.ADMIN]
        assert all(m.read for m in admin_messages)


# =============================================================================
# ADMIN CHAT DASHBOARD
# =============================================================================

@pytest.mark.anyio
async def test_new_chat_is_announced_and_listed_first(backend, chat_row, notifier):
    async with AdminChatDashboard(backend, notifier=notifier) as dashboard:
        new = await backend.insert("support_chats", {
            "order_id": chat_row["order_id"],
            "customer_id": "cust-2",
            "issue": "Wrong item",
        })
        await dashboard.settle()

        assert dashboard.chats.ids() == [new["id"], chat_row["id"]]
        assert notifier.messages("info") == ["New support request received!"]


@pytest.mark.anyio
async def test_unknown_chat_update_is_ignored(backend, notifier):
    async with AdminChatDashboard(backend, notifier=notifier) as dashboard:
        [row] = backend.seed("support_chats", [{"order_id": "o1", "customer_id": "c"}])
        await backend.update("support_chats", row["id"], {"status": "resolved"})
        await dashboard.settle()

        assert len(dashboard.chats) == 0


@pytest.mark.anyio
async def test_resolve_chat(backend, chat_row, notifier):
    async with AdminChatDashboard(backend, notifier=notifier) as dashboard:
        chat = await dashboard.resolve_chat(chat_row["id"])

        assert chat.status == ChatStatus.RESOLVED
        assert notifier.messages("success") == ["Chat resolved successfully"]
        with pytest.raises(InvalidTransition):
            await dashboard.send_message(chat_row["id"], "Hello")
        assert dashboard.stats().resolved == 1


@pytest.mark.anyio
async def test_resolve_failure_is_reported(backend, chat_row, notifier):
    async with AdminChatDashboard(backend, notifier=notifier) as dashboard:
        backend.fail_next("update")

        with pytest.raises(WriteFailed):
            await dashboard.resolve_chat(chat_row["id"])

        assert dashboard.chat(chat_row["id"]).status == ChatStatus.ACTIVE
        assert notifier.messages("error") == ["Failed to resolve chat"]


@pytest.mark.anyio
async def test_unknown_chat_raises(backend, notifier):
    async with AdminChatDashboard(backend, notifier=notifier) as dashboard:
        with pytest.raises(RecordNotFound):
            await dashboard.send_message("nope", "hi")


@pytest.mark.anyio
async def test_filter_and_stats(backend, chat_row, notifier):
    backend.seed("support_chats", [{
        "order_id": "other-order",
        "customer_id": "cust-3",
        "issue": "Refund request",
        "status": "resolved",
        "created_at": at(5),
    }])
    async with AdminChatDashboard(backend, notifier=notifier) as dashboard:
        assert [c.issue for c in dashboard.filter_chats("refund")] == ["Refund request"]
        assert [c.id for c in dashboard.filter_chats(status=ChatStatus.ACTIVE)] == [chat_row["id"]]
        assert len(dashboard.filter_chats(chat_row["order_id"][:8])) == 1

        stats = dashboard.stats()
        assert (stats.total, stats.active, stats.resolved, stats.unread) == (2, 1, 1, 1)

        assert await dashboard.mark_messages_read(chat_row["id"]) == 1
        assert dashboard.stats().unread == 0


# =============================================================================
# ADMIN ORDER MANAGEMENT
# =============================================================================

@pytest.mark.anyio
async def test_order_status_update(backend, order_row, notifier):
    async with OrderManagementView(backend, notifier=notifier) as view:
        order = await view.update_order_status(order_row["id"], OrderStatus.PREPARING)
        await view.settle()

        assert order.status == OrderStatus.PREPARING
        assert view.orders.get(order_row["id"]).status == OrderStatus.PREPARING
        assert len(view.orders) == 1
        assert notifier.messages("success") == ["Order status updated to preparing"]


@pytest.mark.anyio
async def test_order_cannot_leave_terminal_state(backend, order_row, notifier):
    async with OrderManagementView(backend, notifier=notifier) as view:
        await view.update_order_status(order_row["id"], OrderStatus.DELIVERED)

        with pytest.raises(InvalidTransition, match="already delivered"):
            await view.update_order_status(order_row["id"], OrderStatus.CANCELLED)
        with pytest.raises(InvalidTransition):
            await view.update_order_status(order_row["id"], OrderStatus.PENDING)


@pytest.mark.anyio
async def test_order_update_failure_keeps_state(backend, order_row, notifier):
    async with OrderManagementView(backend, notifier=notifier) as view:
        backend.fail_next("update")

        with pytest.raises(WriteFailed):
            await view.update_order_status(order_row["id"], OrderStatus.CONFIRMED)

        assert view.orders.get(order_row["id"]).status == OrderStatus.PENDING
        assert notifier.messages("error") == ["Failed to update order status"]


@pytest.mark.anyio
async def test_payment_status_update(backend, order_row, notifier):
    async with OrderManagementView(backend, notifier=notifier) as view:
        order = await view.update_payment_status(order_row["id"], PaymentStatus.COMPLETED)

        assert order.payment_status == PaymentStatus.COMPLETED
        assert backend.rows("orders")[0]["payment_status"] == "completed"


@pytest.mark.anyio
async def test_order_list_follows_inserts_and_deletes(backend, order_row, notifier):
    async with OrderManagementView(backend, notifier=notifier) as view:
        new = await backend.insert("orders", {"customer_name": "Ben"})
        await backend.delete("orders", order_row["id"])
        await view.settle()

        assert view.orders.ids() == [new["id"]]
        assert [o.id for o in view.filter_by_status(OrderStatus.PENDING)] == [new["id"]]
