"""
FastAPI Application Entry Point

Restaurant Order Sync - realtime order tracking and support chat
Supports both the in-memory backend (development) and SQL + Redis (production).

Endpoints:
    - GET /api/orders: Live admin order list
    - PATCH /api/orders/{id}/status: Move an order through the workflow
    - POST /api/tracking/{order_id}: Start tracking an order
    - GET /api/orders/{id}/invoice: Invoice for an order (created on first view)
    - POST /api/support/{order_id}: Open the customer support chat of an order
    - POST /api/support/{order_id}/messages: Customer message
    - GET /api/chats: Live admin support chats
    - POST /api/chats/{id}/messages: Admin reply
    - GET /api/notifications: Drain transient notices
    - GET /health: System health check

Version: 1.0.0
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from ordersync.core.config import get_settings, setup_logging
from ordersync.schemas import (
    ChatMessage,
    ChatStatsResponse,
    ChatStatus,
    ErrorResponse,
    HealthResponse,
    Invoice,
    InvoiceContactUpdate,
    MessageCreate,
    NoticeResponse,
    Order,
    OrderStatus,
    OrderStatusUpdate,
    PaymentStatusUpdate,
    SupportChat,
    SupportSessionCreate,
    SupportSessionResponse,
    TrackingResponse,
    utcnow,
)
from ordersync.services.backend import BackendError, RecordNotFound, get_backend_client
from ordersync.services.invoices import InvoiceError, InvoiceService
from ordersync.services.notifier import Notifier
from ordersync.sync.errors import InvalidTransition, WriteFailed
from ordersync.sync.rehydrator import RecordRehydrator
from ordersync.views import (
    AdminChatDashboard,
    OrderManagementView,
    OrderTrackingView,
    SupportChatView,
)

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.

    A backend client placed on ``app.state.backend`` before startup is used
    as-is; otherwise the configured one is created.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    backend = getattr(app.state, "backend", None) or get_backend_client()
    await backend.initialize()
    logger.info(f"✅ Backend: {backend.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    notifier = Notifier()
    app.state.backend = backend
    app.state.notifier = notifier
    app.state.rehydrator = RecordRehydrator(backend)
    app.state.invoices = InvoiceService(backend)
    app.state.tracking = {}
    app.state.support = {}
    app.state.orders_view = OrderManagementView(backend, notifier=notifier)
    app.state.chats_view = AdminChatDashboard(backend, notifier=notifier)

    await app.state.orders_view.mount()
    await app.state.chats_view.mount()

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    for views in (app.state.tracking, app.state.support):
        for view in list(views.values()):
            await view.unmount()
        views.clear()
    await app.state.chats_view.unmount()
    await app.state.orders_view.unmount()
    await backend.close()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Realtime order tracking and support chat. "
        "Runs against an in-memory backend for development and "
        "PostgreSQL with a Redis change feed in production."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def tracking_response(view: OrderTrackingView) -> TrackingResponse:
    return TrackingResponse(
        order=view.order,
        invoice=view.invoice,
        current_step=view.current_step,
        polling=view.poller.running,
    )


def support_response(view: SupportChatView) -> SupportSessionResponse:
    chat = view.chat
    if chat is not None:
        chat = chat.model_copy(update={"messages": view.messages.snapshot()})
    return SupportSessionResponse(order_id=view.order_id, customer_id=view.customer_id, chat=chat)


async def register_view(views: dict[str, Any], key: str, view: Any) -> Any:
    """
    Keep one mounted view per key.

    A request that mounted ``view`` while a concurrent request registered
    its own releases ``view`` and uses the registered one.
    """
    existing = views.get(key)
    if existing is not None:
        await view.unmount()
        return existing
    views[key] = view
    return view


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(request: Request) -> HealthResponse:
    """Verify the backend is reachable and count mounted views."""
    backend = request.app.state.backend
    try:
        healthy = await backend.health_check()
    except BackendError as e:
        logger.error(f"Backend health check failed: {e}")
        healthy = False

    return HealthResponse(
        status="operational" if healthy else "degraded",
        backend="healthy" if healthy else "unhealthy",
        provider=backend.provider_name,
        mounted_views=2 + len(request.app.state.tracking) + len(request.app.state.support),
        timestamp=utcnow(),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders",
    response_model=list[Order],
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    request: Request,
    status: Optional[OrderStatus] = Query(None),
) -> list[Order]:
    """Orders from the live admin list, newest first."""
    return request.app.state.orders_view.filter_by_status(status)


@app.patch(
    "/api/orders/{order_id}/status",
    response_model=Order,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    request: Request,
) -> Order:
    logger.info(f"Status change requested for order {order_id}: {payload.status.value}")
    return await request.app.state.orders_view.update_order_status(order_id, payload.status)


@app.patch(
    "/api/orders/{order_id}/payment-status",
    response_model=Order,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def update_payment_status(
    order_id: str,
    payload: PaymentStatusUpdate,
    request: Request,
) -> Order:
    return await request.app.state.orders_view.update_payment_status(
        order_id, payload.payment_status
    )


# =============================================================================
# ORDER TRACKING ENDPOINTS
# =============================================================================

@app.post(
    "/api/tracking/{order_id}",
    response_model=TrackingResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Tracking"],
    summary="Start Tracking an Order",
)
async def start_tracking(order_id: str, request: Request) -> TrackingResponse:
    """Mount a live tracking view for the order (no-op if already tracked)."""
    state = request.app.state
    view = state.tracking.get(order_id)
    if view is None:
        view = OrderTrackingView(
            state.backend,
            order_id,
            notifier=state.notifier,
            rehydrator=state.rehydrator,
            invoices=state.invoices,
        )
        await view.mount()
        if view.order is None:
            await view.unmount()
            raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
        view = await register_view(state.tracking, order_id, view)
    return tracking_response(view)


@app.get(
    "/api/tracking/{order_id}",
    response_model=TrackingResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Tracking"],
)
async def get_tracking(order_id: str, request: Request) -> TrackingResponse:
    view = request.app.state.tracking.get(order_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} is not being tracked")
    return tracking_response(view)


@app.delete("/api/tracking/{order_id}", tags=["Tracking"])
async def stop_tracking(order_id: str, request: Request) -> dict[str, Any]:
    view = request.app.state.tracking.pop(order_id, None)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} is not being tracked")
    await view.unmount()
    return {"success": True, "order_id": order_id}


# =============================================================================
# INVOICE ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders/{order_id}/invoice",
    response_model=Invoice,
    responses={404: {"model": ErrorResponse}},
    tags=["Invoices"],
)
async def get_order_invoice(order_id: str, request: Request) -> Invoice:
    """Invoice for the order, created on first access."""
    state = request.app.state
    order = await state.rehydrator.fetch("orders", order_id)
    return await state.invoices.get_or_create_invoice(order)


@app.patch(
    "/api/invoices/{invoice_id}/contact",
    response_model=Invoice,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Invoices"],
)
async def update_invoice_contact(
    invoice_id: str,
    payload: InvoiceContactUpdate,
    request: Request,
) -> Invoice:
    return await request.app.state.invoices.update_contact(
        invoice_id, **payload.model_dump(exclude_unset=True)
    )


# =============================================================================
# CUSTOMER SUPPORT ENDPOINTS
# =============================================================================

def _support_view(request: Request, order_id: str) -> SupportChatView:
    view = request.app.state.support.get(order_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} has no open support chat")
    return view


@app.post(
    "/api/support/{order_id}",
    response_model=SupportSessionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Customer Support"],
    summary="Open Customer Support Chat",
)
async def open_support_chat(
    order_id: str,
    payload: SupportSessionCreate,
    request: Request,
) -> SupportSessionResponse:
    """Mount the customer's live support chat for the order (no-op if already open)."""
    state = request.app.state
    view = state.support.get(order_id)
    if view is None:
        # Unknown orders raise RecordNotFound (404)
        await state.rehydrator.fetch("orders", order_id)
        view = SupportChatView(
            state.backend,
            order_id,
            payload.customer_id,
            notifier=state.notifier,
            rehydrator=state.rehydrator,
        )
        await view.mount()
        view = await register_view(state.support, order_id, view)
    if view.customer_id != payload.customer_id:
        raise HTTPException(
            status_code=409,
            detail=f"Support chat for order {order_id} is open for another customer",
        )
    return support_response(view)


@app.get(
    "/api/support/{order_id}",
    response_model=SupportSessionResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Customer Support"],
)
async def get_support_chat(order_id: str, request: Request) -> SupportSessionResponse:
    return support_response(_support_view(request, order_id))


@app.post(
    "/api/support/{order_id}/messages",
    response_model=ChatMessage,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    tags=["Customer Support"],
)
async def send_support_message(
    order_id: str,
    payload: MessageCreate,
    request: Request,
) -> ChatMessage:
    """Send a customer message; the chat is started by the first message."""
    return await _support_view(request, order_id).send_message(payload.content)


@app.post("/api/support/{order_id}/read", tags=["Customer Support"])
async def mark_support_read(order_id: str, request: Request) -> dict[str, Any]:
    updated = await _support_view(request, order_id).mark_messages_read()
    return {"success": True, "updated": updated}


@app.delete("/api/support/{order_id}", tags=["Customer Support"])
async def close_support_chat(order_id: str, request: Request) -> dict[str, Any]:
    view = request.app.state.support.pop(order_id, None)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} has no open support chat")
    await view.unmount()
    return {"success": True, "order_id": order_id}


# =============================================================================
# ADMIN SUPPORT CHAT ENDPOINTS
# =============================================================================

@app.get(
    "/api/chats",
    response_model=list[SupportChat],
    tags=["Support Chat"],
    summary="List Support Chats",
)
async def list_chats(
    request: Request,
    search: str = Query(""),
    status: Optional[ChatStatus] = Query(None),
) -> list[SupportChat]:
    dashboard = request.app.state.chats_view
    return [
        dashboard.with_transcript(chat)
        for chat in dashboard.filter_chats(search, status)
    ]


@app.get(
    "/api/chats/stats",
    response_model=ChatStatsResponse,
    tags=["Support Chat"],
)
async def chat_stats(request: Request) -> ChatStatsResponse:
    return request.app.state.chats_view.stats()


@app.post(
    "/api/chats/{chat_id}/messages",
    response_model=ChatMessage,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Support Chat"],
)
async def send_chat_message(
    chat_id: str,
    payload: MessageCreate,
    request: Request,
) -> ChatMessage:
    return await request.app.state.chats_view.send_message(chat_id, payload.content)


@app.post(
    "/api/chats/{chat_id}/resolve",
    response_model=SupportChat,
    responses={404: {"model": ErrorResponse}},
    tags=["Support Chat"],
)
async def resolve_chat(chat_id: str, request: Request) -> SupportChat:
    dashboard = request.app.state.chats_view
    chat = await dashboard.resolve_chat(chat_id)
    return dashboard.with_transcript(chat)


@app.post("/api/chats/{chat_id}/read", tags=["Support Chat"])
async def mark_chat_read(chat_id: str, request: Request) -> dict[str, Any]:
    updated = await request.app.state.chats_view.mark_messages_read(chat_id)
    return {"success": True, "updated": updated}


# =============================================================================
# NOTIFICATION ENDPOINTS
# =============================================================================

@app.get(
    "/api/notifications",
    response_model=list[NoticeResponse],
    tags=["Notifications"],
)
async def drain_notifications(request: Request) -> list[NoticeResponse]:
    """Return and clear pending transient notices."""
    return [
        NoticeResponse(level=n.level, message=n.message, created_at=n.created_at)
        for n in request.app.state.notifier.drain()
    ]


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound) -> JSONResponse:
    return _error(404, "Not Found", exc)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
    return _error(400, "Invalid Transition", exc)


@app.exception_handler(InvoiceError)
async def invoice_error_handler(request: Request, exc: InvoiceError) -> JSONResponse:
    return _error(400, "Invalid Invoice Update", exc)


@app.exception_handler(WriteFailed)
async def write_failed_handler(request: Request, exc: WriteFailed) -> JSONResponse:
    logger.warning(f"Write failed: {exc}")
    return _error(502, "Write Failed", exc)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError) -> JSONResponse:
    logger.error(f"Backend error: {exc}")
    return _error(502, "Backend Error", exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
