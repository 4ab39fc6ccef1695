"""
Abandoned Cart Service
Records checkouts that were started but not paid, and tracks their recovery.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from config import Config
from models import (
    AbandonedPurchase, AbandonedPurchaseStatus, Product, SalesRecoveryAnalytics
)
from utils.datetime_helpers import get_naive_utc_now, ensure_naive_datetime, start_of_day
from utils.helpers import validate_email, normalize_email

logger = logging.getLogger(__name__)


def bump_recovery_analytics(
    session: Session,
    user_id: str,
    product_id: int,
    day: date,
    abandoned: int = 0,
    emails_sent: int = 0,
    recovered: int = 0,
    recovered_amount: Decimal = Decimal("0"),
) -> None:
    """Increment the daily recovery counters, creating the row on first use"""
    row = session.execute(
        select(SalesRecoveryAnalytics).where(
            SalesRecoveryAnalytics.user_id == user_id,
            SalesRecoveryAnalytics.product_id == product_id,
            SalesRecoveryAnalytics.date == day,
        )
    ).scalar_one_or_none()

    if row is None:
        row = SalesRecoveryAnalytics(
            user_id=user_id,
            product_id=product_id,
            date=day,
            total_abandoned=0,
            total_recovery_emails_sent=0,
            total_recovered=0,
            total_recovered_amount=Decimal("0"),
        )
        session.add(row)

    row.total_abandoned += abandoned
    row.total_recovery_emails_sent += emails_sent
    row.total_recovered += recovered
    row.total_recovered_amount = Decimal(row.total_recovered_amount or 0) + Decimal(recovered_amount)


def detect_abandoned_purchase(
    session: Session,
    product_id: int,
    customer_email: str,
    customer_name: Optional[str],
    amount: Any,
    currency: str,
    customer_phone: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Record an abandoned checkout for (product, customer email).

    A second detection for the same pair inside the abandonment window
    updates the existing record instead of creating a new one.

    Returns:
        dict: {"success", "abandoned_purchase_id", "created", "error"}
    """
    now = ensure_naive_datetime(now) or get_naive_utc_now()

    if not validate_email(customer_email or ""):
        return {"success": False, "error": "Invalid customer email"}

    try:
        amount = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return {"success": False, "error": "Invalid amount"}
    if not amount.is_finite():
        return {"success": False, "error": "Invalid amount"}
    if amount < 0:
        return {"success": False, "error": "Amount must not be negative"}

    product = session.get(Product, product_id)
    if product is None:
        return {"success": False, "error": "Product not found"}

    email = normalize_email(customer_email)
    window_start = now - timedelta(minutes=Config.ABANDONMENT_WINDOW_MINUTES)

    try:
        existing = session.execute(
            select(AbandonedPurchase)
            .where(
                AbandonedPurchase.product_id == product_id,
                AbandonedPurchase.customer_email == email,
                AbandonedPurchase.status == AbandonedPurchaseStatus.ABANDONED.value,
                AbandonedPurchase.abandoned_at >= window_start,
            )
            .order_by(AbandonedPurchase.abandoned_at.desc())
            .limit(1)
        ).scalar_one_or_none()

        if existing is not None:
            existing.amount = amount
            existing.currency = currency
            existing.customer_name = customer_name
            existing.customer_phone = customer_phone
            existing.updated_at = now
            session.commit()
            logger.info(
                f"🛒 ABANDONED_CART: Updated purchase {existing.id} for product {product_id} (within window)"
            )
            return {"success": True, "abandoned_purchase_id": existing.id, "created": False}

        purchase = AbandonedPurchase(
            product_id=product_id,
            customer_email=email,
            customer_name=customer_name,
            customer_phone=customer_phone,
            amount=amount,
            currency=currency,
            ip_address=ip_address,
            user_agent=user_agent,
            status=AbandonedPurchaseStatus.ABANDONED.value,
            abandoned_at=now,
            recovery_attempts_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(purchase)
        bump_recovery_analytics(session, product.user_id, product_id, now.date(), abandoned=1)
        session.commit()

        logger.info(f"🛒 ABANDONED_CART: Recorded purchase {purchase.id} for product {product_id}")
        return {"success": True, "abandoned_purchase_id": purchase.id, "created": True}

    except Exception as e:
        session.rollback()
        logger.error(f"❌ ABANDONED_CART: Failed to record abandoned purchase for product {product_id}: {e}")
        return {"success": False, "error": str(e)}


def mark_as_recovered(
    session: Session,
    product_id: int,
    customer_email: str,
    order_id: str,
    now: Optional[datetime] = None,
) -> int:
    """Mark every open abandoned purchase for (product, email) as recovered"""
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    email = normalize_email(customer_email)

    purchases = session.execute(
        select(AbandonedPurchase).where(
            AbandonedPurchase.product_id == product_id,
            AbandonedPurchase.customer_email == email,
            AbandonedPurchase.status == AbandonedPurchaseStatus.ABANDONED.value,
        )
    ).scalars().all()

    if not purchases:
        return 0

    product = session.get(Product, product_id)
    recovered_amount = Decimal("0")
    for purchase in purchases:
        purchase.status = AbandonedPurchaseStatus.RECOVERED.value
        purchase.recovered_at = now
        purchase.recovered_order_id = order_id
        purchase.updated_at = now
        recovered_amount += Decimal(purchase.amount)

    if product is not None:
        bump_recovery_analytics(
            session, product.user_id, product_id, now.date(),
            recovered=len(purchases), recovered_amount=recovered_amount,
        )

    logger.info(
        f"🎉 ABANDONED_CART: {len(purchases)} purchase(s) recovered by order {order_id} for product {product_id}"
    )
    return len(purchases)


def list_abandoned_purchases(
    session: Session,
    product_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[AbandonedPurchase]:
    """Most recent abandoned purchases, optionally filtered"""
    query = select(AbandonedPurchase)
    if product_id is not None:
        query = query.where(AbandonedPurchase.product_id == product_id)
    if status is not None:
        query = query.where(AbandonedPurchase.status == status)
    query = query.order_by(AbandonedPurchase.abandoned_at.desc()).limit(limit)
    return list(session.execute(query).scalars().all())


def get_recovery_analytics(
    session: Session,
    start: date,
    end: date,
    product_id: Optional[int] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Totals over [start, end] computed from the abandoned purchases themselves.

    The recovery rate is recovered / abandoned * 100, or 0 when nothing was
    abandoned in the range.
    """
    range_start = start_of_day(start)
    range_end = start_of_day(end) + timedelta(days=1)

    query = select(
        AbandonedPurchase.status,
        func.count(AbandonedPurchase.id),
        func.coalesce(func.sum(AbandonedPurchase.amount), 0),
    ).where(
        AbandonedPurchase.abandoned_at >= range_start,
        AbandonedPurchase.abandoned_at < range_end,
    )
    if product_id is not None:
        query = query.where(AbandonedPurchase.product_id == product_id)
    if user_id is not None:
        query = query.join(Product, Product.id == AbandonedPurchase.product_id).where(Product.user_id == user_id)
    query = query.group_by(AbandonedPurchase.status)

    counts = {status.value: 0 for status in AbandonedPurchaseStatus}
    recovered_amount = Decimal("0")
    for status, count, total in session.execute(query).all():
        counts[status] = count
        if status == AbandonedPurchaseStatus.RECOVERED.value:
            recovered_amount = Decimal(str(total))

    total_abandoned = sum(counts.values())
    total_recovered = counts[AbandonedPurchaseStatus.RECOVERED.value]
    recovery_rate = (total_recovered / total_abandoned * 100) if total_abandoned else 0.0

    return {
        "total_abandoned": total_abandoned,
        "total_recovered": total_recovered,
        "total_expired": counts[AbandonedPurchaseStatus.EXPIRED.value],
        "still_abandoned": counts[AbandonedPurchaseStatus.ABANDONED.value],
        "total_recovered_amount": recovered_amount,
        "recovery_rate": round(recovery_rate, 2),
    }
