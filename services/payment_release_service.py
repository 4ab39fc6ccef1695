"""
Payment Release Service
Holds completed sales for a number of business days, then records the
release and credits the seller's balance ledger.
"""

import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import and_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    BalanceTransaction, BalanceTransactionType, Order, OrderStatus, PaymentRelease
)
from utils.datetime_helpers import add_business_days, get_naive_utc_now, ensure_naive_datetime

logger = logging.getLogger(__name__)


def calculate_release_date(
    order_created_at: datetime,
    business_days: int = 3,
    holidays: Iterable[date] = (),
) -> datetime:
    """Order timestamp advanced by N business days (Mon-Fri, holidays skipped)"""
    return add_business_days(ensure_naive_datetime(order_created_at), business_days, holidays)


def is_release_due(release_date: datetime, now: datetime) -> bool:
    """Releases are due from the start of the release day"""
    return ensure_naive_datetime(now).date() >= ensure_naive_datetime(release_date).date()


def calculate_net_amount(amount: Any, fee_percent: Optional[Decimal] = None) -> Decimal:
    """Amount credited to the seller after the platform fee"""
    fee_percent = Config.PAYMENT_RELEASE_FEE_PERCENT if fee_percent is None else Decimal(str(fee_percent))
    gross = Decimal(str(amount))
    net = gross * (Decimal("100") - fee_percent) / Decimal("100")
    return net.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def release_description(customer_name: Optional[str], business_days: int) -> str:
    return f"Sale released after {business_days} business days - {customer_name or 'Customer'}"


def _has_credit(order_id_column):
    return exists().where(
        and_(
            BalanceTransaction.order_id == order_id_column,
            BalanceTransaction.type == BalanceTransactionType.CREDIT.value,
        )
    )


def credit_pending_releases(session: Session, now: datetime, business_days: int) -> int:
    """
    Credit releases that were recorded without their ledger entry.

    A run that stopped between the two inserts leaves a PaymentRelease with
    no matching credit; this picks those up first.
    """
    pending = (
        session.query(PaymentRelease, Order.customer_name)
        .outerjoin(Order, Order.order_id == PaymentRelease.order_id)
        .filter(
            PaymentRelease.release_date <= now,
            ~_has_credit(PaymentRelease.order_id),
        )
        .all()
    )

    credited = 0
    for release, customer_name in pending:
        try:
            session.add(BalanceTransaction(
                user_id=release.user_id,
                type=BalanceTransactionType.CREDIT.value,
                amount=release.amount,
                currency=release.currency,
                description=release_description(customer_name, business_days),
                order_id=release.order_id,
                created_at=now,
            ))
            session.commit()
            credited += 1
            logger.info(
                f"✅ PAYMENT_RELEASE: Credited pending release {release.order_id} - {release.amount} {release.currency}"
            )
        except Exception as e:
            session.rollback()
            logger.error(f"❌ PAYMENT_RELEASE: Failed to credit pending release {release.order_id}: {e}")

    return credited


def release_order(
    session: Session,
    order: Order,
    release_date: datetime,
    now: datetime,
    business_days: int,
) -> Optional[Decimal]:
    """Insert the PaymentRelease and its credit for one order; returns the net amount"""
    net_amount = calculate_net_amount(order.amount)
    session.add(PaymentRelease(
        order_id=order.order_id,
        user_id=order.user_id,
        amount=net_amount,
        currency=order.currency,
        release_date=release_date,
        processed_at=now,
        created_at=now,
    ))
    session.add(BalanceTransaction(
        user_id=order.user_id,
        type=BalanceTransactionType.CREDIT.value,
        amount=net_amount,
        currency=order.currency,
        description=release_description(order.customer_name, business_days),
        order_id=order.order_id,
        created_at=now,
    ))
    session.commit()
    return net_amount


def process_payment_releases(
    session: Session,
    now: Optional[datetime] = None,
    business_days: Optional[int] = None,
    holidays: Optional[Iterable[date]] = None,
) -> Dict[str, Any]:
    """
    Run both release steps and return a summary.

    Step 1 credits recorded releases that are missing their ledger entry.
    Step 2 releases completed orders whose hold period has passed. A failing
    order is logged and skipped; the rest of the batch continues.
    """
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    business_days = Config.PAYMENT_RELEASE_BUSINESS_DAYS if business_days is None else business_days
    holidays = Config.PAYMENT_RELEASE_HOLIDAYS if holidays is None else list(holidays)

    logger.info("🔄 PAYMENT_RELEASE: Step 1 - crediting pending releases")
    pending_credited = credit_pending_releases(session, now, business_days)

    logger.info("🔍 PAYMENT_RELEASE: Step 2 - processing new releases")
    orders = (
        session.query(Order)
        .filter(
            Order.status == OrderStatus.COMPLETED.value,
            ~exists().where(PaymentRelease.order_id == Order.order_id),
        )
        .order_by(Order.created_at.asc())
        .all()
    )
    logger.info(f"📋 PAYMENT_RELEASE: {len(orders)} completed order(s) awaiting release")

    released = []
    total_amount = Decimal("0")
    users: Dict[str, Dict[str, Any]] = {}

    for order in orders:
        order_id = order.order_id
        try:
            release_date = calculate_release_date(order.created_at, business_days, holidays)
            if not is_release_due(release_date, now):
                continue

            net_amount = release_order(session, order, release_date, now, business_days)
            total_amount += net_amount
            user_summary = users.setdefault(order.user_id, {"amount": Decimal("0"), "orders": 0})
            user_summary["amount"] += net_amount
            user_summary["orders"] += 1
            released.append({
                "order_id": order_id,
                "user_id": order.user_id,
                "amount": net_amount,
                "currency": order.currency,
                "release_date": release_date.isoformat(),
            })
            logger.info(f"💰 PAYMENT_RELEASE: Released order {order_id} - {net_amount} {order.currency}")

        except IntegrityError:
            # Another run recorded this order between our lookup and insert
            session.rollback()
            logger.warning(f"⚠️ PAYMENT_RELEASE: Order {order_id} already released, skipping")
        except Exception as e:
            session.rollback()
            logger.error(f"❌ PAYMENT_RELEASE: Failed to release order {order_id}: {e}")

    for user_id, data in users.items():
        logger.info(f"👤 PAYMENT_RELEASE: User {user_id}: {data['orders']} order(s) released = {data['amount']}")

    summary = {
        "processed_at": now.isoformat(),
        "pending_credited": pending_credited,
        "orders_found": len(orders),
        "released": len(released),
        "total_amount_released": total_amount,
        "users": len(users),
        "released_orders": released,
    }
    logger.info(
        f"🏁 PAYMENT_RELEASE: Completed - pending credited: {pending_credited}, "
        f"released: {len(released)}/{len(orders)}, total: {total_amount}"
    )
    return summary
