"""
SQLAlchemy Database Models

Relational tables behind the sync layer:
- orders / order_items
- support_chats / chat_messages
- invoices / invoice_items

Relationships are named after the child table so a relation requested
as ``"order_items"`` maps directly onto ``Order.order_items``.

Version: 1.0.0
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ordersync.database import Base
from ordersync.schemas import (
    ChatStatus,
    InvoiceStatus,
    OrderStatus,
    PaymentStatus,
    SenderType,
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    """Persist enum values (``"pending"``), not member names."""
    return Enum(enum_cls, values_callable=lambda e: [m.value for m in e])


class Order(Base):
    """
    Main Order table.

    Status transitions are driven by admin actions or backend triggers;
    delivered and cancelled are terminal.
    """
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=_new_id)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=False, default="Guest")
    customer_phone = Column(String(20), nullable=True)
    customer_email = Column(String(255), nullable=True)
    table_number = Column(String(10), nullable=True)
    order_type = Column(String(20), nullable=False, default="dine-in")

    # =========================================================================
    # STATUS & PAYMENT
    # =========================================================================
    status = Column(
        _enum(OrderStatus),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True
    )
    payment_status = Column(
        _enum(PaymentStatus),
        default=PaymentStatus.PENDING.value,
        nullable=False
    )
    payment_method = Column(String(20), nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)

    has_feedback = Column(Boolean, default=False)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    order_items = relationship(
        "OrderItem",
        cascade="all, delete-orphan",
        order_by="OrderItem.created_at",
    )

    def __repr__(self):
        return f"<Order #{self.id[-6:]} - {self.customer_name} - {self.status}>"


class OrderItem(Base):
    """Order line, created atomically with its order."""
    __tablename__ = "order_items"

    id = Column(String(32), primary_key=True, default=_new_id)
    order_id = Column(
        String(32),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)


class SupportChat(Base):
    """Support conversation between a customer and the restaurant."""
    __tablename__ = "support_chats"

    id = Column(String(32), primary_key=True, default=_new_id)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    status = Column(
        _enum(ChatStatus),
        default=ChatStatus.ACTIVE.value,
        nullable=False,
        index=True
    )
    issue = Column(Text, nullable=False, default="")
    category = Column(String(50), nullable=False, default="general")
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    chat_messages = relationship(
        "ChatMessage",
        cascade="all, delete-orphan",
        order_by="ChatMessage.sent_at",
    )

    def __repr__(self):
        return f"<SupportChat {self.id} - order {self.order_id} - {self.status}>"


class ChatMessage(Base):
    """Append-only chat message; only ``read`` changes after insert."""
    __tablename__ = "chat_messages"

    id = Column(String(32), primary_key=True, default=_new_id)
    chat_id = Column(
        String(32),
        ForeignKey("support_chats.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sender_id = Column(String(64), nullable=False)
    sender_type = Column(_enum(SenderType), nullable=False)
    content = Column(Text, nullable=False)
    sent_at = Column(DateTime(timezone=True), default=_now, index=True)
    read = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


class Invoice(Base):
    """Invoice, one per order, created lazily on first view."""
    __tablename__ = "invoices"

    id = Column(String(32), primary_key=True, default=_new_id)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, unique=True)
    display_order_id = Column(String(16), nullable=False)
    invoice_number = Column(String(16), nullable=False, index=True)

    # Editable contact fields
    customer_name = Column(String(100), nullable=False, default="Guest")
    customer_phone = Column(String(20), nullable=True)
    customer_email = Column(String(255), nullable=True)
    billing_address = Column(Text, nullable=True)

    invoice_date = Column(DateTime(timezone=True), default=_now)
    subtotal = Column(Float, nullable=False, default=0.0)
    tax_amount = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)
    status = Column(
        _enum(InvoiceStatus),
        default=InvoiceStatus.ISSUED.value,
        nullable=False
    )
    payment_method = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)
    is_printed = Column(Boolean, default=False)
    print_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    invoice_items = relationship(
        "InvoiceItem",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.created_at",
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(String(32), primary_key=True, default=_new_id)
    invoice_id = Column(
        String(32),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    item_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False)
    tax_rate = Column(Float, nullable=False, default=0.0)
    tax_amount = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=_now)


# Table name -> mapped class, used by the SQL backend client
MODELS = {
    model.__tablename__: model
    for model in (Order, OrderItem, SupportChat, ChatMessage, Invoice, InvoiceItem)
}
