"""
Pydantic Schemas for Records, Change Notifications and API Payloads

Every payload that enters the sync layer from the backend (point fetches,
list fetches, change-feed notifications) is decoded here exactly once.
Views and collections only ever hold these typed records.

Sections:
    - Enums (order, payment, chat, invoice, change kinds)
    - Synced records (Order, SupportChat, ChatMessage, Invoice)
    - Change notifications (ChangeEvent)
    - API request/response schemas

Version: 1.0.0
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps coming out of the store are UTC
UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ChatStatus(str, Enum):
    """Support chat lifecycle. ``resolved`` is terminal."""
    ACTIVE = "active"
    RESOLVED = "resolved"


class SenderType(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ChangeType(str, Enum):
    """Row-level change kinds delivered by the change feed."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Progress rank; confirmed and preparing are alternative second steps
_ORDER_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PREPARING: 2,
    OrderStatus.READY: 3,
    OrderStatus.DELIVERED: 4,
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """
    Check whether an order may move from ``current`` to ``new``.

    Orders only move forward through the workflow, may be cancelled at any
    point before delivery, and never leave a terminal state.
    """
    if current == new:
        return True
    if current in TERMINAL_ORDER_STATUSES:
        return False
    if new == OrderStatus.CANCELLED:
        return True
    return _ORDER_STATUS_RANK[new] > _ORDER_STATUS_RANK[current]


# =============================================================================
# SYNCED RECORDS
# =============================================================================

class SyncRecord(BaseModel):
    """Base for every record held in a live collection: keyed by ``id``."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str


class OrderItem(BaseModel):
    """Single line of an order. Created with the order, never edited."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: Optional[str] = None
    order_id: Optional[str] = None
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    notes: Optional[str] = None

    @property
    def line_total(self) -> float:
        return round(self.quantity * self.price, 2)


class Order(SyncRecord):
    """Customer order with its items (one-hop relation)."""

    customer_name: str = "Guest"
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    table_number: Optional[str] = None
    order_type: str = "dine-in"
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[str] = None
    subtotal: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    total_amount: float = 0.0
    has_feedback: bool = False
    items: List[OrderItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "order_items"),
    )
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: Optional[UtcDatetime] = None

    @property
    def order_number(self) -> str:
        """Short display number: last 6 characters of the id."""
        return self.id[-6:]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


class ChatMessage(SyncRecord):
    """
    One message of a support chat transcript.

    ``pending`` and ``failed`` are client-only flags carried by optimistic
    placeholders; they are never written to the backend.
    """

    chat_id: str = ""
    sender_id: str = ""
    sender_type: SenderType
    content: str
    sent_at: UtcDatetime
    read: bool = False
    updated_at: Optional[UtcDatetime] = None
    pending: bool = Field(default=False, exclude=True)
    failed: bool = Field(default=False, exclude=True)

    @property
    def is_placeholder(self) -> bool:
        return self.id.startswith("temp-")


class SupportChat(SyncRecord):
    """Support conversation attached to an order."""

    order_id: str
    customer_id: str
    status: ChatStatus = ChatStatus.ACTIVE
    issue: str = ""
    category: str = "general"
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: Optional[UtcDatetime] = None
    last_message_at: Optional[UtcDatetime] = None
    messages: List[ChatMessage] = Field(
        default_factory=list,
        validation_alias=AliasChoices("messages", "chat_messages"),
    )

    @property
    def is_resolved(self) -> bool:
        return self.status == ChatStatus.RESOLVED

    @property
    def unread_count(self) -> int:
        return sum(
            1 for m in self.messages
            if not m.read and m.sender_type == SenderType.CUSTOMER
        )


class InvoiceItem(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: Optional[str] = None
    invoice_id: Optional[str] = None
    item_name: str
    description: str = ""
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    tax_rate: float = 0.0
    tax_amount: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = 0.0


class Invoice(SyncRecord):
    """Invoice derived one-to-one from an order."""

    order_id: str
    display_order_id: str
    invoice_number: str
    customer_name: str = "Guest"
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    billing_address: Optional[str] = None
    invoice_date: UtcDatetime = Field(default_factory=utcnow)
    subtotal: float = 0.0
    tax_amount: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = 0.0
    status: InvoiceStatus = InvoiceStatus.ISSUED
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    is_printed: bool = False
    print_count: int = 0
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: Optional[UtcDatetime] = None
    items: List[InvoiceItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "invoice_items"),
    )


# =============================================================================
# CHANGE NOTIFICATIONS
# =============================================================================

class ChangeEvent(BaseModel):
    """
    Row-level change notification from the change-data-capture feed.

    Update payloads carry only the changed columns plus the primary key,
    so consumers must re-fetch the full record before using it.
    Delete payloads carry the last known key-bearing fragment.
    """

    event_type: ChangeType
    table: str
    new_record: Optional[dict[str, Any]] = None
    old_record: Optional[dict[str, Any]] = None
    commit_timestamp: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("event_type", mode="before")
    @classmethod
    def normalize_event_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.lower()
        return v

    @model_validator(mode="after")
    def require_key(self) -> "ChangeEvent":
        source = self.old_record if self.event_type == ChangeType.DELETE else self.new_record
        if not source or source.get("id") in (None, ""):
            raise ValueError(f"{self.event_type.value} notification for {self.table} carries no id")
        return self

    @property
    def key(self) -> str:
        """Primary key of the changed row."""
        source = self.old_record if self.event_type == ChangeType.DELETE else self.new_record
        return str(source["id"])


# =============================================================================
# API SCHEMAS
# =============================================================================

class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class MessageCreate(BaseModel):
    """Request schema for sending a chat message."""
    content: str = Field(..., min_length=1, max_length=2000)

    @field_validator("content")
    @classmethod
    def strip_content(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Message cannot be empty")
        return stripped


class InvoiceContactUpdate(BaseModel):
    """Only customer contact fields of an invoice are editable."""
    model_config = ConfigDict(extra="forbid")

    customer_name: Optional[str] = Field(None, min_length=1, max_length=100)
    customer_phone: Optional[str] = Field(None, max_length=20)
    customer_email: Optional[str] = Field(None, max_length=255)
    billing_address: Optional[str] = Field(None, max_length=500)


class TrackingResponse(BaseModel):
    """Snapshot of a mounted order tracking view."""
    order: Order
    invoice: Optional[Invoice] = None
    current_step: int
    polling: bool


class SupportSessionCreate(BaseModel):
    """Request schema for opening the customer support chat of an order."""
    customer_id: str = Field(..., min_length=1, max_length=64)


class SupportSessionResponse(BaseModel):
    """Snapshot of a mounted customer support chat view."""
    order_id: str
    customer_id: str
    chat: Optional[SupportChat] = None


class ChatStatsResponse(BaseModel):
    total: int
    active: int
    resolved: int
    unread: int


class NoticeResponse(BaseModel):
    level: str
    message: str
    created_at: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    backend: str
    provider: str
    mounted_views: int
    timestamp: datetime
