import anyio
import pytest

from ordersync.schemas import InvoiceStatus, Order, OrderItem
from ordersync.services.backend.base import BackendError, DuplicateRecord, RecordNotFound
from ordersync.services.invoices import InvoiceError, InvoiceService


def test_build_invoice_numbers_and_tax(backend):
    order = Order(
        id="a1b2c3d4e5f6",
        customer_name="Ana",
        payment_status="completed",
        items=[
            OrderItem(name="Dosa", quantity=2, price=10.0),
            OrderItem(name="Lassi", quantity=1, price=5.5),
        ],
    )

    draft = InvoiceService(backend, tax_rate=0.18).build_invoice(order)

    assert draft.values["invoice_number"] == "D4E5F6"
    assert draft.values["display_order_id"] == "#d4e5f6"
    assert draft.values["subtotal"] == 25.5
    assert draft.values["tax_amount"] == 4.59
    assert draft.values["total_amount"] == 30.09
    assert draft.values["status"] == InvoiceStatus.PAID.value
    assert [i["total_amount"] for i in draft.items] == [23.6, 6.49]


@pytest.mark.anyio
async def test_invoice_created_once(backend, order_row):
    service = InvoiceService(backend)
    order = Order.model_validate(await backend.fetch_one("orders", order_row["id"], ("order_items",)))

    first = await service.get_or_create_invoice(order)
    second = await service.get_or_create_invoice(order)

    assert first.id == second.id
    assert len(backend.rows("invoices")) == 1
    assert [i.item_name for i in first.items] == ["Dosa", "Lassi"]
    assert first.customer_name == "Ana"
    assert first.status == InvoiceStatus.ISSUED


@pytest.mark.anyio
async def test_get_invoice_without_one(backend, order_row):
    assert await InvoiceService(backend).get_invoice(order_row["id"]) is None


@pytest.mark.anyio
async def test_update_contact_fields(backend, order_row):
    service = InvoiceService(backend)
    order = Order.model_validate(await backend.fetch_one("orders", order_row["id"], ("order_items",)))
    invoice = await service.get_or_create_invoice(order)

    updated = await service.update_contact(
        invoice.id, customer_email="ana@example.com", billing_address="12 Main St"
    )

    assert updated.customer_email == "ana@example.com"
    assert updated.billing_address == "12 Main St"
    assert updated.total_amount == invoice.total_amount


@pytest.mark.anyio
async def test_only_contact_fields_are_editable(backend):
    service = InvoiceService(backend)

    with pytest.raises(InvoiceError):
        await service.update_contact("inv-1", total_amount=0)
    with pytest.raises(InvoiceError):
        await service.update_contact("inv-1")
    with pytest.raises(RecordNotFound):
        await service.update_contact("inv-1", customer_name="Bo")


@pytest.mark.anyio
async def test_concurrent_first_views_share_one_invoice(backend, order_row):
    service = InvoiceService(backend)
    order = Order.model_validate(await backend.fetch_one("orders", order_row["id"], ("order_items",)))
    backend.latency = 0.01
    invoices = []

    async def view_invoice():
        invoices.append(await service.get_or_create_invoice(order))

    async with anyio.create_task_group() as tg:
        tg.start_soon(view_invoice)
        tg.start_soon(view_invoice)

    assert len(backend.rows("invoices")) == 1
    assert invoices[0].id == invoices[1].id
    assert [len(i.items) for i in invoices] == [2, 2]
    assert len(backend.rows("invoice_items")) == 2


@pytest.mark.anyio
async def test_memory_backend_rejects_second_invoice_for_order(backend, order_row):
    await backend.insert("invoices", {"order_id": order_row["id"], "invoice_number": "A"})

    with pytest.raises(DuplicateRecord):
        await backend.insert("invoices", {"order_id": order_row["id"], "invoice_number": "B"})


@pytest.mark.anyio
async def test_failed_creation_leaves_no_partial_invoice(backend, order_row):
    service = InvoiceService(backend)
    order = Order.model_validate(await backend.fetch_one("orders", order_row["id"], ("order_items",)))
    backend.fail_next("insert_with_children")

    with pytest.raises(BackendError):
        await service.get_or_create_invoice(order)
    assert backend.rows("invoices") == []
    assert backend.rows("invoice_items") == []

    invoice = await service.get_or_create_invoice(order)
    assert [i.item_name for i in invoice.items] == ["Dosa", "Lassi"]
