"""Shared fixtures for the sync layer, view and API tests."""
import os
from datetime import datetime, timedelta, timezone

import pytest

# Always run against the in-memory backend
os.environ["ENV_MODE"] = "development"
os.environ.setdefault("POLL_INTERVAL_SECONDS", "5")

from ordersync.core.config import get_settings  # noqa: E402
from ordersync.schemas import ChatMessage, SenderType  # noqa: E402
from ordersync.services.backend import reset_backend_client  # noqa: E402
from ordersync.services.backend.memory import InMemoryBackendClient  # noqa: E402
from ordersync.services.notifier import Notifier  # noqa: E402

get_settings.cache_clear()
reset_backend_client()

EPOCH = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Fixed timestamp ``seconds`` after a reference point."""
    return EPOCH + timedelta(seconds=seconds)


def message(key: str, sent: float, *, chat_id: str = "c1", content: str = "hi",
            sender: SenderType = SenderType.CUSTOMER, **extra) -> ChatMessage:
    return ChatMessage(
        id=key,
        chat_id=chat_id,
        sender_id="cust-1" if sender == SenderType.CUSTOMER else "admin",
        sender_type=sender,
        content=content,
        sent_at=at(sent),
        **extra,
    )


@pytest.fixture
def anyio_backend() -> str:  # pragma: no cover - required by pytest-anyio
    return "asyncio"


@pytest.fixture
def backend() -> InMemoryBackendClient:
    return InMemoryBackendClient()


@pytest.fixture
def notifier() -> Notifier:
    return Notifier(buffer_size=20)


@pytest.fixture
def order_row(backend):
    """An order with two items, stored without notifications."""
    order = backend.seed("orders", [{
        "customer_name": "Ana",
        "customer_phone": "555-0100",
        "table_number": "3",
        "status": "pending",
        "payment_method": "cash",
        "subtotal": 30.0,
        "total_amount": 30.0,
        "created_at": at(0),
    }])[0]
    backend.seed("order_items", [
        {"order_id": order["id"], "name": "Dosa", "quantity": 2, "price": 10.0, "created_at": at(1)},
        {"order_id": order["id"], "name": "Lassi", "quantity": 1, "price": 10.0, "created_at": at(2)},
    ])
    return order


@pytest.fixture
def chat_row(backend, order_row):
    """An active support chat on ``order_row`` with one customer message."""
    chat = backend.seed("support_chats", [{
        "order_id": order_row["id"],
        "customer_id": "cust-1",
        "issue": "Where is my food?",
        "category": "order-issue",
        "status": "active",
        "created_at": at(10),
    }])[0]
    backend.seed("chat_messages", [{
        "chat_id": chat["id"],
        "sender_id": "cust-1",
        "sender_type": "customer",
        "content": "Where is my food?",
        "sent_at": at(10),
    }])
    return chat
