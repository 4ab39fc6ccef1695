"""
Order Service
Checkout order creation and status updates. Completing an order closes any
matching abandoned cart and notifies the seller's webhooks; the seller's
balance is credited later by the payment release job.
"""

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import aiohttp
from sqlalchemy.orm import Session

from models import Order, OrderStatus, Product
from services.abandoned_cart_service import mark_as_recovered
from services.webhook_dispatcher import trigger_webhooks
from utils.datetime_helpers import get_naive_utc_now, ensure_naive_datetime
from utils.helpers import generate_order_id, normalize_email, validate_email

logger = logging.getLogger(__name__)

VALID_STATUSES = {status.value for status in OrderStatus}


def create_order(
    session: Session,
    product_id: int,
    customer_email: str,
    customer_name: Optional[str],
    amount: Any,
    currency: str,
    payment_method: Optional[str] = None,
    order_bump_data: Optional[Dict[str, Any]] = None,
    order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a pending order at checkout initiation"""
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

    order = Order(
        order_id=order_id or generate_order_id(),
        product_id=product_id,
        user_id=product.user_id,
        customer_email=normalize_email(customer_email),
        customer_name=customer_name,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        status=OrderStatus.PENDING.value,
        order_bump_data=order_bump_data,
    )
    try:
        session.add(order)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ ORDER: Failed to create order for product {product_id}: {e}")
        return {"success": False, "error": str(e)}

    logger.info(f"🧾 ORDER: Created order {order.order_id} for product {product_id} ({amount} {currency})")
    return {"success": True, "order_id": order.order_id, "status": order.status}


def parse_price_text(text: str) -> Optional[Decimal]:
    """
    Price from a display string such as "1.500,00 KZ" or "1,500.00".

    The right-most separator is the decimal one when both kinds appear; a
    lone comma is a decimal comma; repeated dots are thousands separators.

    >>> parse_price_text("1.500,00 KZ")
    Decimal('1500.00')
    """
    raw = re.sub(r"[^\d.,]", "", text or "")
    if not raw:
        return None
    if "," in raw and "." in raw:
        decimal_sep = "," if raw.rfind(",") > raw.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        raw = raw.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in raw:
        raw = raw.replace(",", ".") if raw.count(",") == 1 else raw.replace(",", "")
    elif raw.count(".") > 1:
        raw = raw.replace(".", "")
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def _bump_price(bump: Dict[str, Any]) -> Optional[Decimal]:
    """Discounted bump price when set, otherwise the listed price string parsed"""
    try:
        discounted = Decimal(str(bump.get("discounted_price") or 0))
    except InvalidOperation:
        discounted = Decimal("0")
    if discounted.is_finite() and discounted > 0:
        return discounted
    return parse_price_text(str(bump.get("bump_product_price") or ""))


def build_completion_events(order: Order, product: Product) -> List[Dict[str, Any]]:
    """Webhook events fired when an order is paid"""
    now_iso = get_naive_utc_now().isoformat()
    base = {
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
        "currency": order.currency,
        "timestamp": now_iso,
    }
    events = [
        {
            "event": "payment.success",
            "order_id": order.order_id,
            "data": {**base, "order_id": order.order_id, "amount": order.amount,
                     "product_id": order.product_id, "product_name": product.name,
                     "payment_method": order.payment_method},
        },
        {
            "event": "product.purchased",
            "order_id": order.order_id,
            "data": {**base, "order_id": order.order_id, "price": order.amount,
                     "product_id": order.product_id, "product_name": product.name},
        },
    ]

    bump = order.order_bump_data
    if bump:
        bump_order_id = f"{order.order_id}-BUMP"
        bump_data = {
            **base,
            "order_id": bump_order_id,
            "product_id": bump.get("bump_product_id") or "order-bump",
            # the envelope overwrites product_id with the main product
            "bump_product_id": bump.get("bump_product_id"),
            "product_name": bump.get("bump_product_name"),
            "is_order_bump": True,
            "main_order_id": order.order_id,
        }
        price = _bump_price(bump)
        events.append({
            "event": "payment.success",
            "order_id": bump_order_id,
            "data": {**bump_data, "amount": price, "payment_method": order.payment_method},
        })
        events.append({
            "event": "product.purchased",
            "order_id": bump_order_id,
            "data": {**bump_data, "price": price},
        })
    return events


async def update_order_status(
    session: Session,
    order_id: str,
    status: str,
    now: Optional[datetime] = None,
    http_session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, Any]:
    """
    Persist a new order status.

    On the first transition to completed the abandoned cart for the same
    product and customer is marked recovered, and the payment.success and
    product.purchased webhooks fire (again for the order bump, if any).
    """
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    status = (status or "").lower().strip()
    if status not in VALID_STATUSES:
        return {"success": False, "error": f"Invalid status: {status}"}

    order = session.query(Order).filter(Order.order_id == order_id).first()
    if order is None:
        return {"success": False, "error": "Order not found"}

    previous_status = order.status
    newly_completed = status == OrderStatus.COMPLETED.value and previous_status != OrderStatus.COMPLETED.value

    try:
        order.status = status
        order.updated_at = now
        recovered = 0
        if newly_completed:
            order.completed_at = now
            recovered = mark_as_recovered(session, order.product_id, order.customer_email, order.order_id, now)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ ORDER: Failed to update order {order_id} to {status}: {e}")
        return {"success": False, "error": str(e)}

    logger.info(f"🧾 ORDER: Order {order_id} status {previous_status} -> {status}")
    result = {"success": True, "order_id": order_id, "status": status,
              "previous_status": previous_status, "recovered_carts": recovered, "webhooks": []}

    if newly_completed:
        product = session.get(Product, order.product_id)
        for item in build_completion_events(order, product):
            try:
                dispatch = await trigger_webhooks(
                    session, item["event"], item["data"],
                    user_id=product.user_id, product_id=order.product_id,
                    order_id=item["order_id"], http_session=http_session,
                )
                result["webhooks"].append({
                    "event": item["event"], "order_id": item["order_id"],
                    "triggered": dispatch["triggered"], "successful": dispatch["successful"],
                })
            except Exception as e:
                logger.error(f"❌ ORDER: Webhook {item['event']} for order {item['order_id']} failed: {e}")

    return result
