"""
Sales Recovery Email Service
Renders and sends the recovery emails for abandoned checkouts.
"""

import html
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from config import Config
from models import (
    AbandonedPurchase, AbandonedPurchaseStatus, DiscountCoupon, DiscountType,
    Product, RecoveryEmailLog, RecoveryEmailStatus, SalesRecoverySettings,
)
from services.abandoned_cart_service import bump_recovery_analytics
from services.email_service import EmailService
from utils.datetime_helpers import get_naive_utc_now, ensure_naive_datetime
from utils.helpers import format_amount, generate_coupon_code, validate_email, truncate_text

logger = logging.getLogger(__name__)

TEMPLATE_PLACEHOLDERS = (
    "customer_name", "product_name", "amount", "currency",
    "checkout_link", "checkout_url", "coupon_code", "discount_amount",
)
SUBJECT_PLACEHOLDERS = ("customer_name", "product_name")


def select_template(settings: SalesRecoverySettings, email_number: int) -> Tuple[str, str]:
    """Pick (subject, body) for the n-th recovery email, falling back to the first"""
    if email_number == 2 and settings.email_subject_2 and settings.email_template_2:
        return settings.email_subject_2, settings.email_template_2
    if email_number >= 3 and settings.email_subject_3 and settings.email_template_3:
        return settings.email_subject_3, settings.email_template_3
    return settings.email_subject, settings.email_template


def render_placeholders(text: str, context: Dict[str, Any], placeholders=TEMPLATE_PLACEHOLDERS) -> str:
    """Substitute {placeholder} tokens; unknown braces are left untouched"""
    rendered = text or ""
    for key in placeholders:
        rendered = rendered.replace("{" + key + "}", str(context.get(key) or ""))
    return rendered


def build_checkout_link(product_id: int, purchase_id: Any, coupon_code: Optional[str] = None) -> str:
    link = f"{Config.CHECKOUT_BASE_URL}/checkout/{product_id}?recovery={purchase_id}"
    if coupon_code:
        link += f"&coupon={coupon_code}"
    return link


def format_discount(discount_type: str, discount_value: Any, currency: str) -> str:
    """10% for percentage discounts, '500 KZ' for fixed ones"""
    value = Decimal(str(discount_value or 0)).normalize()
    # normalize() turns 10 into 1E+1
    value_text = format(value, "f")
    if discount_type == DiscountType.PERCENTAGE.value:
        return f"{value_text}%"
    return f"{value_text} {currency}"


def build_recovery_email_html(body: str, checkout_link: str, coupon_code: Optional[str] = None,
                              discount_text: Optional[str] = None, test_banner: Optional[str] = None) -> str:
    """Wrap a rendered plain-text body into the recovery email layout"""
    banner = ""
    if test_banner:
        banner = f"""
        <div style="background-color: #fef3c7; border: 1px solid #f59e0b; border-radius: 8px; padding: 12px; margin-bottom: 20px;">
            <p style="margin: 0; color: #92400e; font-weight: bold;">⚠️ {html.escape(test_banner)}</p>
        </div>"""

    coupon_section = ""
    if coupon_code:
        coupon_section = f"""
        <div style="background-color: #d1fae5; border: 2px dashed #10b981; border-radius: 8px; padding: 16px; margin: 20px 0; text-align: center;">
            <p style="margin: 0; color: #065f46; font-size: 14px;">🎁 Your exclusive coupon:</p>
            <p style="margin: 8px 0; color: #065f46; font-weight: bold; font-size: 24px; letter-spacing: 2px;">{coupon_code}</p>
            <p style="margin: 0; color: #065f46; font-size: 16px;">{discount_text or ''} off!</p>
        </div>"""

    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">{banner}
        <div style="white-space: pre-wrap; line-height: 1.6;">{body}</div>{coupon_section}
        <div style="margin-top: 30px; text-align: center;">
            <a href="{checkout_link}"
               style="display: inline-block; background-color: #10b981; color: white; padding: 14px 28px; text-decoration: none; border-radius: 8px; font-weight: bold;">
                Complete purchase
            </a>
        </div>
    </div>
    """


def create_recovery_coupon(
    session: Session,
    settings: SalesRecoverySettings,
    currency: str,
    now: datetime,
) -> Optional[DiscountCoupon]:
    """Stage a single-use coupon for the last recovery email; None on failure"""
    code = generate_coupon_code(Config.RECOVERY_COUPON_PREFIX)
    try:
        coupon = DiscountCoupon(
            code=code,
            user_id=settings.user_id,
            product_id=settings.product_id,
            discount_type=settings.discount_type,
            discount_value=settings.discount_value,
            currency=currency,
            max_uses=1,
            uses_per_customer=1,
            is_active=True,
            valid_from=now,
            valid_until=now + timedelta(days=Config.RECOVERY_COUPON_VALID_DAYS),
        )
        session.add(coupon)
        session.flush()
        logger.info(f"🎁 CART_RECOVERY: Staged recovery coupon {code} for product {settings.product_id}")
        return coupon
    except Exception as e:
        session.rollback()
        logger.error(f"❌ CART_RECOVERY: Failed to create recovery coupon for product {settings.product_id}: {e}")
        return None


def reference_time(purchase: AbandonedPurchase) -> datetime:
    """Delay is measured from the last attempt, or from abandonment before the first one"""
    return purchase.last_recovery_attempt_at or purchase.abandoned_at


def is_delay_elapsed(purchase: AbandonedPurchase, settings: SalesRecoverySettings, now: datetime) -> bool:
    return reference_time(purchase) <= now - timedelta(hours=settings.email_delay_hours)


async def deliver_recovery_email(
    session: Session,
    purchase: AbandonedPurchase,
    settings: SalesRecoverySettings,
    product: Product,
    email_service: EmailService,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Render, send and record one recovery email for an abandoned purchase.

    The send is the only external side effect. On success the attempt
    counter, the attempt timestamp, a 'sent' log row and the daily counter
    are written and committed. On failure a 'failed' log row is committed
    and the purchase is left untouched so the next run can retry it.
    """
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    email_number = purchase.recovery_attempts_count + 1
    subject_template, body_template = select_template(settings, email_number)
    is_last_email = email_number >= settings.max_recovery_attempts

    coupon = None
    coupon_code = None
    discount_text = ""
    if is_last_email and settings.enable_discount_on_last:
        coupon = create_recovery_coupon(session, settings, purchase.currency, now)
        if coupon is not None:
            coupon_code = coupon.code
            discount_text = format_discount(settings.discount_type, settings.discount_value, purchase.currency)

    checkout_link = build_checkout_link(product.id, purchase.id, coupon_code)
    context = {
        "customer_name": html.escape(purchase.customer_name or ""),
        "product_name": html.escape(product.name),
        "amount": format_amount(purchase.amount, purchase.currency),
        "currency": purchase.currency,
        "checkout_link": checkout_link,
        "checkout_url": checkout_link,
        "coupon_code": coupon_code or "",
        "discount_amount": discount_text,
    }
    subject = render_placeholders(
        subject_template,
        {"customer_name": purchase.customer_name or "", "product_name": product.name},
        SUBJECT_PLACEHOLDERS,
    )
    body = render_placeholders(body_template, context)
    html_content = build_recovery_email_html(body, checkout_link, coupon_code, discount_text)

    result = await email_service.send_email(
        to_email=purchase.customer_email,
        to_name=purchase.customer_name,
        subject=subject,
        html_content=html_content,
        tags=["sales-recovery", f"email_{email_number}"],
    )

    if not result.get("success"):
        error = result.get("error") or "Unknown email error"
        logger.warning(
            f"⚠️ CART_RECOVERY: Email {email_number} to {purchase.customer_email} failed for purchase {purchase.id}: {error}"
        )
        if coupon is not None:
            # nobody received the code
            session.delete(coupon)
            coupon_code = None
        session.add(RecoveryEmailLog(
            abandoned_purchase_id=purchase.id,
            email_sent_to=purchase.customer_email,
            email_subject=truncate_text(subject, 255),
            status=RecoveryEmailStatus.FAILED.value,
            email_number=email_number,
            coupon_code=coupon_code,
            error_message=error,
            created_at=now,
        ))
        session.commit()
        return {"success": False, "email_number": email_number, "error": error}

    purchase.recovery_attempts_count = email_number
    purchase.last_recovery_attempt_at = now
    purchase.updated_at = now
    session.add(RecoveryEmailLog(
        abandoned_purchase_id=purchase.id,
        email_sent_to=purchase.customer_email,
        email_subject=truncate_text(subject, 255),
        status=RecoveryEmailStatus.SENT.value,
        email_number=email_number,
        coupon_code=coupon_code,
        created_at=now,
    ))
    bump_recovery_analytics(session, settings.user_id, product.id, now.date(), emails_sent=1)
    session.commit()

    logger.info(
        f"📧 CART_RECOVERY: Email {email_number}/{settings.max_recovery_attempts} sent to {purchase.customer_email} "
        f"for purchase {purchase.id}"
    )
    return {"success": True, "email_number": email_number, "coupon_code": coupon_code}


async def send_recovery_email(
    session: Session,
    abandoned_purchase_id: int,
    email_service: Optional[EmailService] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Manually send the next recovery email for one abandoned purchase.

    Returns a dict whose 'status' is one of: sent, failed, not_found,
    disabled, expired, too_early.
    """
    now = ensure_naive_datetime(now) or get_naive_utc_now()

    purchase = session.get(AbandonedPurchase, abandoned_purchase_id)
    if purchase is None or purchase.status != AbandonedPurchaseStatus.ABANDONED.value:
        return {"success": False, "status": "not_found", "error": "Abandoned purchase not found or already closed"}

    settings = session.query(SalesRecoverySettings).filter(
        SalesRecoverySettings.product_id == purchase.product_id
    ).first()
    if settings is None or not settings.enabled:
        return {"success": False, "status": "disabled", "error": "Sales recovery is not enabled for this product"}

    if purchase.recovery_attempts_count >= settings.max_recovery_attempts:
        purchase.status = AbandonedPurchaseStatus.EXPIRED.value
        purchase.updated_at = now
        session.commit()
        logger.info(f"⏹️ CART_RECOVERY: Purchase {purchase.id} reached max attempts, marked expired")
        return {"success": False, "status": "expired", "error": "Maximum recovery attempts reached"}

    if not is_delay_elapsed(purchase, settings, now):
        next_at = reference_time(purchase) + timedelta(hours=settings.email_delay_hours)
        return {
            "success": False,
            "status": "too_early",
            "error": "Recovery delay has not elapsed yet",
            "next_attempt_at": next_at.isoformat(),
        }

    product = session.get(Product, purchase.product_id)
    result = await deliver_recovery_email(
        session, purchase, settings, product, email_service or EmailService(), now
    )
    result["status"] = "sent" if result["success"] else "failed"
    return result


async def send_test_recovery_email(
    email: str,
    subject: str,
    template: str,
    product_id: Optional[int] = None,
    email_number: int = 1,
    include_discount: bool = False,
    discount_type: str = DiscountType.PERCENTAGE.value,
    discount_value: Any = 10,
    session: Optional[Session] = None,
    email_service: Optional[EmailService] = None,
) -> Dict[str, Any]:
    """Send a preview of a recovery template with sample data; writes nothing"""
    if not validate_email(email or ""):
        return {"success": False, "error": "Invalid email"}

    product = session.get(Product, product_id) if (session is not None and product_id is not None) else None
    product_name = product.name if product else "Sample Product"
    price = product.price if product else Decimal("0")
    currency = product.currency if product else Config.DEFAULT_CURRENCY

    coupon_code = generate_coupon_code("TEST") if include_discount else ""
    discount_text = format_discount(discount_type, discount_value, currency) if include_discount else ""
    checkout_link = f"{Config.CHECKOUT_BASE_URL}/checkout/{product_id or 'sample'}?test=true"
    if coupon_code:
        checkout_link += f"&coupon={coupon_code}"

    context = {
        "customer_name": "Test Customer",
        "product_name": html.escape(product_name),
        "amount": format_amount(price, currency),
        "currency": currency,
        "checkout_link": checkout_link,
        "checkout_url": checkout_link,
        "coupon_code": coupon_code,
        "discount_amount": discount_text,
    }
    body = render_placeholders(template, context)
    rendered_subject = render_placeholders(
        subject, {"customer_name": "Test Customer", "product_name": product_name}, SUBJECT_PLACEHOLDERS
    )
    html_content = build_recovery_email_html(
        body, checkout_link, coupon_code or None, discount_text,
        test_banner=f"This is a TEST email (email {email_number})",
    )

    service = email_service or EmailService()
    result = await service.send_email(
        to_email=email.strip(),
        subject=f"[TEST] {rendered_subject}",
        html_content=html_content,
        tags=["sales-recovery", "test"],
    )
    if result.get("success"):
        logger.info(f"🧪 CART_RECOVERY: Test email {email_number} sent to {email}")
        return {"success": True, "message": "Test email sent"}
    return {"success": False, "error": result.get("error") or "Email send failed"}
