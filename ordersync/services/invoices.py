"""
Invoice Service

Invoices are derived one-to-one from orders and created lazily the first
time someone views an order's invoice. After creation only the customer
contact fields may be edited.

Numbering:
    - invoice_number: last 6 characters of the order id, upper-cased
    - display_order_id: "#" + last 6 characters of the order id

Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ordersync.core.config import get_settings
from ordersync.schemas import Invoice, InvoiceStatus, Order, PaymentStatus, utcnow
from ordersync.services.backend.base import BackendError, BaseBackendClient, DuplicateRecord

logger = logging.getLogger(__name__)

EDITABLE_CONTACT_FIELDS = frozenset({
    "customer_name",
    "customer_phone",
    "customer_email",
    "billing_address",
})


class InvoiceError(Exception):
    """Invalid invoice operation (e.g. editing a non-contact field)."""


@dataclass
class InvoiceDraft:
    """Invoice row and line rows ready to be inserted."""
    values: dict[str, Any]
    items: list[dict[str, Any]] = field(default_factory=list)


def invoice_number_for(order_id: str) -> str:
    return order_id[-6:].upper()


def display_order_id_for(order_id: str) -> str:
    return f"#{order_id[-6:]}"


class InvoiceService:
    """
    Reads, lazily creates and edits invoices through the backend client.

    Example:
        >>> service = InvoiceService(backend)
        >>> invoice = await service.get_or_create_invoice(order)
        >>> invoice.invoice_number
        'A1B2C3'
    """

    def __init__(self, backend: BaseBackendClient, tax_rate: Optional[float] = None):
        self.backend = backend
        self.tax_rate = get_settings().invoice_tax_rate if tax_rate is None else tax_rate

    def build_invoice(self, order: Order) -> InvoiceDraft:
        """Derive the invoice for ``order`` without touching the backend."""
        items = []
        for item in order.items:
            line = item.line_total
            tax_amount = round(line * self.tax_rate, 2)
            items.append({
                "item_name": item.name,
                "description": item.notes or "",
                "quantity": item.quantity,
                "unit_price": item.price,
                "tax_rate": self.tax_rate,
                "tax_amount": tax_amount,
                "total_amount": round(line + tax_amount, 2),
            })

        subtotal = round(sum(i["unit_price"] * i["quantity"] for i in items), 2)
        tax_amount = round(sum(i["tax_amount"] for i in items), 2)
        status = (
            InvoiceStatus.PAID
            if order.payment_status == PaymentStatus.COMPLETED
            else InvoiceStatus.ISSUED
        )

        values = {
            "order_id": order.id,
            "display_order_id": display_order_id_for(order.id),
            "invoice_number": invoice_number_for(order.id),
            "customer_name": order.customer_name or "Guest",
            "customer_phone": order.customer_phone,
            "customer_email": order.customer_email,
            "invoice_date": utcnow(),
            "subtotal": subtotal,
            "tax_amount": tax_amount,
            "discount_amount": order.discount,
            "total_amount": round(subtotal + tax_amount - order.discount, 2),
            "status": status.value,
            "payment_method": order.payment_method or "cash",
        }
        return InvoiceDraft(values=values, items=items)

    async def get_invoice(self, order_id: str) -> Optional[Invoice]:
        rows = await self.backend.fetch_many(
            "invoices",
            filters={"order_id": order_id},
            relations=("invoice_items",),
            limit=1,
        )
        if not rows:
            return None
        return Invoice.model_validate(rows[0])

    async def get_or_create_invoice(self, order: Order) -> Invoice:
        """
        Return the order's invoice, creating it on first access.

        The invoice and its lines are stored as one unit. When a concurrent
        caller creates the invoice first, that invoice is returned.

        Raises:
            BackendError: If the lookup or creation fails
        """
        existing = await self.get_invoice(order.id)
        if existing is not None:
            return existing

        draft = self.build_invoice(order)
        try:
            row = await self.backend.insert_with_children(
                "invoices", draft.values, {"invoice_items": draft.items}
            )
        except DuplicateRecord:
            logger.info(f"Invoice for order {order.id} created concurrently, re-reading")
            existing = await self.get_invoice(order.id)
            if existing is None:
                raise
            return existing

        logger.info(f"Invoice {draft.values['invoice_number']} created for order {order.id}")
        return Invoice.model_validate(row)

    async def update_contact(self, invoice_id: str, **fields: Any) -> Invoice:
        """
        Edit customer contact fields of an invoice.

        Raises:
            InvoiceError: If a non-contact field is given, or nothing is
            RecordNotFound: If the invoice does not exist
        """
        forbidden = set(fields) - EDITABLE_CONTACT_FIELDS
        if forbidden:
            raise InvoiceError(f"Fields not editable: {', '.join(sorted(forbidden))}")
        updates = {k: v for k, v in fields.items() if v is not None}
        if not updates:
            raise InvoiceError("No contact fields to update")

        await self.backend.update("invoices", invoice_id, updates)
        try:
            row = await self.backend.fetch_one("invoices", invoice_id, relations=("invoice_items",))
        except BackendError:
            logger.exception(f"Invoice {invoice_id} updated but could not be re-read")
            raise
        return Invoice.model_validate(row)
