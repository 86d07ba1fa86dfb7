"""
FastAPI Application Entry Point

Mobile Money Checkout - Hybrid Architecture
Supports both the mock gateway (development) and the Shwary API (production).

Endpoints:
    - POST /api/checkout: Start a payment for a basket
    - GET /api/checkout/{session_id}: Payment session progress
    - POST /api/checkout/{session_id}/manual-confirmation: "I confirmed it on my phone"
    - DELETE /api/checkout/{session_id}: Close the payment screen
    - GET /api/orders: List orders
    - GET /health: System health check
"""

import asyncio
import sys
import logging
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from checkout.core.config import get_settings, setup_logging
from checkout.database import async_session_maker, get_db, init_db, engine
from checkout.models import Order, OrderStatus, PaymentStatus
from checkout.schemas import (
    CheckoutCreate,
    ErrorResponse,
    HealthResponse,
    OrderListResponse,
    OrderResponse,
    PaymentSessionResponse,
)
from checkout.services.orchestrator import (
    CheckoutTimings,
    PaymentOrchestrator,
    PaymentSession,
)
from checkout.services.orders import OrderDraft, OrderRecorder
from checkout.services.payment import (
    BaseMobileMoneyGateway,
    CountryCode,
    GatewayError,
    InvalidTransitionError,
    ValidationError,
    get_payment_gateway,
)
from checkout.services.sessions import SessionRegistry

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# DEPENDENCIES
# =============================================================================

@lru_cache()
def get_session_registry() -> SessionRegistry:
    """Process-wide registry of checkout sessions."""
    return SessionRegistry(
        retention_seconds=settings.session_retention_seconds,
        abandon_blocked_after_seconds=settings.blocked_session_abandon_seconds,
    )


@lru_cache()
def get_order_recorder() -> OrderRecorder:
    """Order recorder bound to the application database."""
    return OrderRecorder(async_session_maker)


def get_checkout_timings() -> CheckoutTimings:
    """Checkout timer settings."""
    return CheckoutTimings.from_settings(settings)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Validate production config before building the real gateway
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    await init_db()
    logger.info("✅ Database initialized")

    gateway = get_payment_gateway()
    logger.info(f"✅ Payment Gateway: {gateway.provider_name}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    get_session_registry().shutdown()
    await gateway.aclose()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Checkout backend driving mobile-money payment confirmation. "
        "Supports a mock gateway for development and the Shwary API for production."
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

def session_response(session: PaymentSession) -> PaymentSessionResponse:
    """Render a payment session for the mobile app."""
    result = session.result
    return PaymentSessionResponse(
        session_id=session.session_id,
        state=session.state.value,
        operator=session.operator.value,
        amount=session.amount,
        country_code=session.country_code.value,
        phone_number=session.phone_number,
        transaction_id=session.transaction_id,
        manual_override_eligible=session.manual_override_eligible,
        status_checks_blocked=session.status_checks_blocked,
        cancelled=session.cancelled,
        finalized=session.finalized,
        verification_status=result.verification_status.value if result else None,
        error_message=session.error_message,
        started_at=session.started_at,
        waiting_since=session.waiting_since,
    )


def find_session(registry: SessionRegistry, session_id: str) -> PaymentOrchestrator:
    orchestrator = registry.get(session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"Payment session {session_id} not found")
    return orchestrator


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
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
async def health_check(
    db: AsyncSession = Depends(get_db),
    gateway: BaseMobileMoneyGateway = Depends(get_payment_gateway),
    registry: SessionRegistry = Depends(get_session_registry),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.count(Order.id)))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check payment gateway
    gateway_status = "healthy" if await gateway.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, gateway_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        payment_gateway=gateway_status,
        active_sessions=registry.active_count(),
        blocked_sessions=registry.blocked_count(),
        timestamp=datetime.now(),
    )


# =============================================================================
# CHECKOUT ENDPOINTS
# =============================================================================

@app.post(
    "/api/checkout",
    response_model=PaymentSessionResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Checkout"],
    summary="Start Payment",
)
async def start_checkout(
    checkout: CheckoutCreate,
    gateway: BaseMobileMoneyGateway = Depends(get_payment_gateway),
    registry: SessionRegistry = Depends(get_session_registry),
    recorder: OrderRecorder = Depends(get_order_recorder),
    timings: CheckoutTimings = Depends(get_checkout_timings),
) -> PaymentSessionResponse:
    """
    Start a payment for the basket.

    Mobile-money payments return while the customer confirms on the phone
    (state waiting_confirmation); poll GET /api/checkout/{session_id} for
    progress. The order is recorded once the payment completes.
    """
    payment = checkout.payment
    country = CountryCode(
        payment.country_code.value if payment.country_code else settings.default_country
    )
    session_id = uuid.uuid4().hex

    draft = OrderDraft(
        restaurant_id=checkout.restaurant_id,
        restaurant_name=checkout.restaurant_name,
        customer_id=checkout.customer_id,
        customer_name=checkout.customer_name,
        customer_phone=checkout.customer_phone,
        delivery_address=checkout.delivery_address,
        city=checkout.city,
        delivery_instructions=checkout.delivery_instructions,
        items=[item.model_dump() for item in checkout.items],
        subtotal=checkout.subtotal,
        delivery_fee=checkout.delivery_fee,
        discount_amount=checkout.discount_amount,
        promo_code=checkout.promo_code,
        currency=country.currency,
    )

    orchestrator = PaymentOrchestrator(
        gateway,
        recorder.callback_for(session_id, draft),
        operator=payment.operator.value,
        country_code=country,
        timings=timings,
        session_id=session_id,
    )

    logger.info(
        f"Checkout {session_id}: {payment.operator.value} payment of "
        f"{checkout.total_amount} {country.currency} for {checkout.customer_name}"
    )

    # Cancellable while initiate is in flight
    registry.add(orchestrator)

    try:
        if orchestrator.session.operator.is_card:
            await orchestrator.start_card(
                payment.card_number,
                payment.expiry,
                payment.cvc,
                checkout.total_amount,
            )
        else:
            await orchestrator.start(payment.phone_number, checkout.total_amount, country)
    except ValidationError as e:
        registry.discard(session_id)
        raise HTTPException(status_code=400, detail=e.message)
    except GatewayError as e:
        registry.discard(session_id)
        raise HTTPException(status_code=502, detail=e.message)
    except Exception:
        registry.discard(session_id)
        raise

    return session_response(orchestrator.session)


@app.get(
    "/api/checkout/{session_id}",
    response_model=PaymentSessionResponse,
    tags=["Checkout"],
)
async def get_checkout(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> PaymentSessionResponse:
    """Get the progress of a payment session."""
    return session_response(find_session(registry, session_id).session)


@app.post(
    "/api/checkout/{session_id}/manual-confirmation",
    response_model=PaymentSessionResponse,
    responses={409: {"model": ErrorResponse}},
    tags=["Checkout"],
)
async def confirm_checkout_manually(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> PaymentSessionResponse:
    """
    Customer confirms the payment was approved on the phone.

    Offered after the grace period or when the status check is blocked.
    The order is recorded with payment_status=manual_check.
    """
    orchestrator = find_session(registry, session_id)
    try:
        session = orchestrator.confirm_manually()
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return session_response(session)


@app.delete(
    "/api/checkout/{session_id}",
    response_model=PaymentSessionResponse,
    responses={409: {"model": ErrorResponse}},
    tags=["Checkout"],
)
async def cancel_checkout(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> PaymentSessionResponse:
    """Close the payment screen; no order is recorded."""
    orchestrator = find_session(registry, session_id)
    try:
        orchestrator.cancel()
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return session_response(orchestrator.session)


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None, description="paid or manual_check"),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    """Retrieve paginated list of orders."""

    query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
    count_query = select(func.count(Order.id))

    if status:
        try:
            status_enum = OrderStatus(status.lower())
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid status. Options: {[s.value for s in OrderStatus]}"
            )
        query = query.where(Order.status == status_enum)
        count_query = count_query.where(Order.status == status_enum)

    if payment_status:
        try:
            payment_enum = PaymentStatus(payment_status.lower())
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid payment status. Options: {[s.value for s in PaymentStatus]}"
            )
        query = query.where(Order.payment_status == payment_enum)
        count_query = count_query.where(Order.payment_status == payment_enum)

    total_result = await db.execute(count_query)
    total = total_result.scalar() or 0

    query = query.offset(skip).limit(limit)
    result = await db.execute(query)
    orders = result.scalars().all()

    return OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Get a specific order by ID."""

    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()

    if not order:
        raise HTTPException(status_code=404, detail=f"Order #{order_id} not found")

    return OrderResponse.model_validate(order)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

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
