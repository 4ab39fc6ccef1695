"""
Back-office HTTP API
FastAPI endpoints for cart detection, order status updates, webhook
triggers, referrals and manual job runs. The periodic jobs run in the
same process through the scheduler started in the lifespan handler.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from config import Config
from database import create_tables, managed_session, test_connection
from jobs.cart_recovery import process_cart_recovery
from jobs.scheduler import get_scheduler_instance
from services.abandoned_cart_service import (
    detect_abandoned_purchase, get_recovery_analytics, list_abandoned_purchases
)
from services.order_service import create_order, update_order_status
from services.payment_release_service import process_payment_releases
from services.recovery_email_service import send_recovery_email, send_test_recovery_email
from services.referral_fraud_detection import process_seller_referral
from services.webhook_dispatcher import trigger_webhooks, send_test_event
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and start the job scheduler
    Shutdown: stop the scheduler
    """
    Config.log_environment_config()
    create_tables()

    scheduler = None
    if Config.SCHEDULER_ENABLED:
        try:
            scheduler = get_scheduler_instance()
            scheduler.start()
        except Exception as e:
            logger.error(f"❌ Scheduler failed to start: {e}")
            scheduler = None
    else:
        logger.info("🚫 SCHEDULER: Disabled via SCHEDULER_ENABLED=false")

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info("🔄 Back-office API shutting down...")


app = FastAPI(
    title=f"{Config.PLATFORM_NAME} Back-Office",
    description="Abandoned cart recovery, payment release and merchant webhooks",
    lifespan=lifespan
)


# ============================================================================
# Request models
# ============================================================================

class AbandonedPurchaseRequest(BaseModel):
    product_id: int
    customer_email: str
    customer_name: Optional[str] = None
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(default=Config.DEFAULT_CURRENCY, max_length=10)
    customer_phone: Optional[str] = None


class TestRecoveryEmailRequest(BaseModel):
    email: str
    subject: str
    template: str
    product_id: Optional[int] = None
    email_number: int = Field(default=1, ge=1)
    include_discount: bool = False
    discount_type: str = "percentage"
    discount_value: Decimal = Decimal("10")


class CreateOrderRequest(BaseModel):
    product_id: int
    customer_email: str
    customer_name: Optional[str] = None
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(default=Config.DEFAULT_CURRENCY, max_length=10)
    payment_method: Optional[str] = None
    order_bump_data: Optional[Dict[str, Any]] = None
    order_id: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: str


class TriggerWebhooksRequest(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    product_id: Optional[int] = None
    order_id: Optional[str] = None


class TestWebhookRequest(BaseModel):
    event_type: str
    product_id: int
    user_id: str
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


class ReferralRequest(BaseModel):
    referred_user_id: str
    referral_code: str


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health")
async def health_check():
    """Liveness plus a database round-trip"""
    database_ok = test_connection()
    return {
        "status": "healthy" if database_ok else "degraded",
        "service": "checkout-backoffice",
        "environment": Config.CURRENT_ENVIRONMENT,
        "database": database_ok,
    }


@app.post("/abandoned-purchases")
async def create_abandoned_purchase(body: AbandonedPurchaseRequest, request: Request):
    with managed_session() as session:
        result = detect_abandoned_purchase(
            session,
            product_id=body.product_id,
            customer_email=body.customer_email,
            customer_name=body.customer_name,
            amount=body.amount,
            currency=body.currency,
            customer_phone=body.customer_phone,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    if not result.get("success"):
        status_code = 404 if result.get("error") == "Product not found" else 400
        raise HTTPException(status_code=status_code, detail=result.get("error"))
    return result


@app.get("/abandoned-purchases")
async def get_abandoned_purchases(product_id: Optional[int] = None, status: Optional[str] = None, limit: int = 100):
    with managed_session() as session:
        purchases = list_abandoned_purchases(session, product_id=product_id, status=status, limit=min(limit, 500))
        return [
            {
                "id": p.id,
                "product_id": p.product_id,
                "customer_email": p.customer_email,
                "customer_name": p.customer_name,
                "amount": p.amount,
                "currency": p.currency,
                "status": p.status,
                "abandoned_at": p.abandoned_at.isoformat(),
                "recovery_attempts_count": p.recovery_attempts_count,
                "last_recovery_attempt_at": p.last_recovery_attempt_at.isoformat() if p.last_recovery_attempt_at else None,
            }
            for p in purchases
        ]


@app.get("/abandoned-purchases/analytics")
async def recovery_analytics(product_id: Optional[int] = None, user_id: Optional[str] = None, days: int = 30):
    end = get_naive_utc_now().date()
    start = end - timedelta(days=max(days, 1) - 1)
    with managed_session() as session:
        return get_recovery_analytics(session, start, end, product_id=product_id, user_id=user_id)


@app.post("/abandoned-purchases/{abandoned_purchase_id}/recovery-email")
async def manual_recovery_email(abandoned_purchase_id: int):
    with managed_session() as session:
        result = await send_recovery_email(session, abandoned_purchase_id)

    status = result.get("status")
    if status == "not_found":
        raise HTTPException(status_code=404, detail=result.get("error"))
    if status in ("disabled", "expired", "too_early"):
        raise HTTPException(status_code=409, detail=result)
    if status == "failed":
        raise HTTPException(status_code=502, detail=result.get("error"))
    return result


@app.post("/recovery/test-email")
async def test_recovery_email(body: TestRecoveryEmailRequest):
    with managed_session() as session:
        result = await send_test_recovery_email(
            email=body.email,
            subject=body.subject,
            template=body.template,
            product_id=body.product_id,
            email_number=body.email_number,
            include_discount=body.include_discount,
            discount_type=body.discount_type,
            discount_value=body.discount_value,
            session=session,
        )
    if not result.get("success"):
        status_code = 400 if result.get("error") == "Invalid email" else 502
        raise HTTPException(status_code=status_code, detail=result.get("error"))
    return result


@app.post("/orders")
async def create_order_endpoint(body: CreateOrderRequest):
    with managed_session() as session:
        result = create_order(
            session,
            product_id=body.product_id,
            customer_email=body.customer_email,
            customer_name=body.customer_name,
            amount=body.amount,
            currency=body.currency,
            payment_method=body.payment_method,
            order_bump_data=body.order_bump_data,
            order_id=body.order_id,
        )
    if not result.get("success"):
        status_code = 404 if result.get("error") == "Product not found" else 400
        raise HTTPException(status_code=status_code, detail=result.get("error"))
    return result


@app.post("/orders/{order_id}/status")
async def update_order_status_endpoint(order_id: str, body: OrderStatusRequest):
    with managed_session() as session:
        result = await update_order_status(session, order_id, body.status)
    if not result.get("success"):
        status_code = 404 if result.get("error") == "Order not found" else 400
        raise HTTPException(status_code=status_code, detail=result.get("error"))
    return result


@app.post("/webhooks/trigger")
async def trigger_webhooks_endpoint(body: TriggerWebhooksRequest):
    if not body.user_id and body.product_id is None:
        raise HTTPException(status_code=400, detail="user_id or product_id is required")
    with managed_session() as session:
        return await trigger_webhooks(
            session, body.event, body.data,
            user_id=body.user_id, product_id=body.product_id, order_id=body.order_id,
        )


@app.post("/webhooks/test")
async def test_webhook_endpoint(body: TestWebhookRequest):
    with managed_session() as session:
        result = await send_test_event(
            session, body.event_type, body.product_id, body.user_id,
            webhook_url=body.webhook_url, webhook_secret=body.webhook_secret,
        )
    if "error" in result:
        raise HTTPException(status_code=404, detail=result["error"])
    return result


@app.post("/referrals")
async def create_referral(body: ReferralRequest, request: Request):
    with managed_session() as session:
        result = process_seller_referral(
            body.referred_user_id,
            body.referral_code,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            session=session,
        )
    if not result.get("success"):
        raise HTTPException(status_code=400, detail=result)
    return result


@app.post("/jobs/cart-recovery")
async def run_cart_recovery_now():
    with managed_session() as session:
        return await process_cart_recovery(session=session)


@app.post("/jobs/payment-release")
async def run_payment_release_now():
    with managed_session() as session:
        return process_payment_releases(session)
