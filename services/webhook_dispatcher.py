"""
Webhook Dispatcher
Delivers business events to merchant-configured URLs and records every
delivery in the webhook log. One attempt per webhook, no retries.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from sqlalchemy.orm import Session

from config import Config
from models import Product, WebhookLog, WebhookSetting
from utils.datetime_helpers import get_naive_utc_now
from utils.helpers import truncate_text

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_PREFIX = "subscription."


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def serialize_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=_json_default, separators=(",", ":"))


def sign_payload(body: str, secret: str) -> str:
    """HMAC-SHA256 of the exact request body"""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_headers(secret: Optional[str], custom_headers: Optional[Dict[str, str]] = None,
                  body: Optional[str] = None) -> Dict[str, str]:
    """Default headers, then merchant headers, then the secret headers on top"""
    headers = {
        "Content-Type": "application/json",
        "User-Agent": Config.WEBHOOK_USER_AGENT,
    }
    if custom_headers:
        headers.update({str(k): str(v) for k, v in custom_headers.items()})
    if secret:
        headers["X-Webhook-Secret"] = secret
        headers["Authorization"] = f"Bearer {secret}"
        if body is not None:
            headers["X-Webhook-Signature"] = sign_payload(body, secret)
    return headers


def build_event_payload(
    event: str,
    data: Dict[str, Any],
    webhook_id: str,
    order_id: Optional[str] = None,
    product_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Envelope sent to merchants for a business event"""
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "email": data.get("email") or data.get("customer_email"),
        "name": data.get("name") or data.get("customer_name"),
        "data": {**data, "order_id": order_id, "product_id": product_id},
        "webhook_id": webhook_id,
        "version": Config.WEBHOOK_PAYLOAD_VERSION,
    }


def collect_targets(
    session: Session,
    event: str,
    user_id: Optional[str] = None,
    product_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Active webhooks for the product, or the seller-wide ones when no product is given"""
    query = session.query(WebhookSetting).filter(WebhookSetting.active.is_(True))
    if product_id is not None:
        query = query.filter(WebhookSetting.product_id == product_id)
    elif user_id is not None:
        query = query.filter(
            WebhookSetting.user_id == user_id,
            WebhookSetting.product_id.is_(None),
        )
    else:
        return []

    targets = [
        {
            "id": str(setting.id),
            "user_id": setting.user_id,
            "url": setting.url,
            "secret": setting.secret,
            "events": list(setting.events or []),
            "headers": setting.headers or {},
            "timeout": setting.timeout or Config.WEBHOOK_DEFAULT_TIMEOUT,
        }
        for setting in query.all()
    ]

    # Subscription products carry their own webhook in the product config
    if event.startswith(SUBSCRIPTION_EVENT_PREFIX) and product_id is not None:
        product = session.get(Product, product_id)
        config = (product.subscription_config or {}) if product else {}
        if config.get("webhook_enabled") and config.get("webhook_url"):
            targets.append({
                "id": f"subscription_{product_id}",
                "user_id": product.user_id,
                "url": config["webhook_url"],
                "secret": config.get("webhook_secret"),
                "events": list(config.get("webhook_events") or []),
                "headers": {},
                "timeout": Config.WEBHOOK_DEFAULT_TIMEOUT,
            })

    return targets


async def post_webhook(
    http_session: aiohttp.ClientSession,
    url: str,
    body: str,
    headers: Dict[str, str],
    timeout: int,
) -> Tuple[int, str]:
    """
    Single POST. Returns (status, body); status is 0 when no HTTP response
    was received and body then holds the error text.
    """
    try:
        async with http_session.post(
            url,
            data=body.encode("utf-8"),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            text = await response.text(errors="replace")
            return response.status, text
    except asyncio.TimeoutError:
        return 0, f"Timeout after {timeout}s"
    except aiohttp.ClientError as e:
        return 0, f"Network error: {e}"
    except Exception as e:
        # e.g. ValueError for a merchant header aiohttp refuses to send
        logger.error(f"❌ WEBHOOK_DISPATCH: Request to {url} could not be sent: {type(e).__name__}: {e}")
        return 0, f"Request error: {e}"


def record_webhook_log(
    session: Session,
    event_type: str,
    payload: Dict[str, Any],
    status: int,
    response_body: str,
    user_id: Optional[str] = None,
    webhook_id: Optional[str] = None,
) -> WebhookLog:
    log = WebhookLog(
        user_id=user_id,
        webhook_id=webhook_id,
        event_type=event_type,
        payload=json.loads(serialize_payload(payload)),
        response_status=status,
        response_body=truncate_text(response_body or "", Config.WEBHOOK_RESPONSE_BODY_LIMIT),
        success=200 <= status < 300,
        created_at=get_naive_utc_now(),
    )
    session.add(log)
    return log


async def trigger_webhooks(
    session: Session,
    event: str,
    data: Dict[str, Any],
    user_id: Optional[str] = None,
    product_id: Optional[int] = None,
    order_id: Optional[str] = None,
    http_session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, Any]:
    """
    Deliver an event to every listening webhook, concurrently.

    Returns:
        dict: {"event", "triggered", "successful", "failed", "skipped", "results"}
    """
    data = data or {}
    targets = collect_targets(session, event, user_id, product_id)
    listening = [t for t in targets if event in t["events"]]
    skipped = len(targets) - len(listening)

    summary = {"event": event, "triggered": 0, "successful": 0, "failed": 0,
               "skipped": skipped, "results": []}

    if not listening:
        logger.info(f"WEBHOOK_DISPATCH: No webhooks listening to {event} (skipped {skipped})")
        return summary

    prepared = []
    for target in listening:
        payload = build_event_payload(event, data, target["id"], order_id, product_id)
        body = serialize_payload(payload)
        headers = build_headers(target["secret"], target["headers"], body)
        prepared.append((target, payload, body, headers))

    owns_http_session = http_session is None
    http_session = http_session or aiohttp.ClientSession()
    try:
        outcomes = await asyncio.gather(*[
            post_webhook(http_session, target["url"], body, headers, target["timeout"])
            for target, _, body, headers in prepared
        ])
    finally:
        if owns_http_session:
            await http_session.close()

    for (target, payload, _, _), (status, response_body) in zip(prepared, outcomes):
        success = 200 <= status < 300
        record_webhook_log(
            session, event, payload, status, response_body,
            user_id=target["user_id"], webhook_id=target["id"],
        )
        summary["triggered"] += 1
        if success:
            summary["successful"] += 1
            logger.info(f"✅ WEBHOOK_DISPATCH: {event} delivered to {target['url']} ({status})")
        else:
            summary["failed"] += 1
            logger.warning(f"⚠️ WEBHOOK_DISPATCH: {event} to {target['url']} failed ({status})")
        summary["results"].append({
            "webhook_id": target["id"],
            "url": target["url"],
            "status": status,
            "success": success,
            "error": None if success else truncate_text(response_body, 200),
        })

    try:
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ WEBHOOK_DISPATCH: Failed to write webhook logs for {event}: {e}")

    logger.info(
        f"WEBHOOK_DISPATCH: {event} - triggered: {summary['triggered']}, "
        f"successful: {summary['successful']}, failed: {summary['failed']}, skipped: {skipped}"
    )
    return summary


def build_test_payload(event_type: str, product: Product, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Sample payload for the webhook test button"""
    now = now or datetime.now(timezone.utc)
    stamp = int(now.timestamp() * 1000)
    config = product.subscription_config or {}
    payload: Dict[str, Any] = {
        "event": event_type,
        "timestamp": now.isoformat(),
        "test_mode": True,
        "customer": {"email": "test@example.com", "name": "Test Customer", "phone": "+244923456789"},
        "product": {"id": product.id, "name": product.name, "price": product.price},
    }

    if event_type == "subscription.paid":
        interval = config.get("interval") or "monthly"
        interval_count = config.get("interval_count") or 1
        days = 365 * interval_count if interval == "yearly" else 30 * interval_count
        next_payment = now + timedelta(days=days)
        payload["subscription"] = {
            "status": "active",
            "current_period_start": now.isoformat(),
            "current_period_end": next_payment.isoformat(),
            "next_payment_date": next_payment.isoformat(),
            "interval": interval,
            "interval_count": interval_count,
        }
        payload["payment"] = {"order_id": f"TEST-{stamp}", "amount": product.price,
                              "currency": product.currency, "paid_at": now.isoformat()}
        payload["access"] = {"should_grant": True, "reason": "Subscription payment confirmed"}
    elif event_type == "subscription.payment_failed":
        payload["subscription"] = {
            "status": "past_due",
            "expired_at": now.isoformat(),
            "grace_period_end": (now + timedelta(days=7)).isoformat(),
            "interval": config.get("interval") or "monthly",
        }
        payload["access"] = {"should_revoke": True, "reason": "Payment not received", "grace_period_days": 7}
    elif event_type == "order.created":
        payload["order"] = {"id": f"TEST-{stamp}", "status": "pending", "amount": product.price,
                            "currency": product.currency, "created_at": now.isoformat()}
    elif event_type == "order.completed":
        payload["order"] = {"id": f"TEST-{stamp}", "status": "completed", "amount": product.price,
                            "currency": product.currency, "completed_at": now.isoformat()}
        payload["access"] = {"should_grant": True}
    elif event_type in ("payment.success", "payment.failed"):
        failed = event_type == "payment.failed"
        payment = {"id": f"PAY-TEST-{stamp}", "order_id": f"TEST-{stamp}", "amount": product.price,
                   "currency": product.currency, "status": "failed" if failed else "completed"}
        if failed:
            payment.update({"failed_at": now.isoformat(), "error": "Insufficient funds"})
        else:
            payment["paid_at"] = now.isoformat()
        payload["payment"] = payment
    else:
        payload["message"] = "Generic test event"

    return payload


async def send_test_event(
    session: Session,
    event_type: str,
    product_id: int,
    user_id: str,
    webhook_url: Optional[str] = None,
    webhook_secret: Optional[str] = None,
    http_session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, Any]:
    """Send a sample event to a URL, or to the product's active webhook"""
    product = session.get(Product, product_id)
    if product is None:
        return {"success": False, "error": "Product not found"}

    url, secret, custom_headers = webhook_url, webhook_secret, {}
    webhook_id = None
    if not url:
        setting = (
            session.query(WebhookSetting)
            .filter(WebhookSetting.product_id == product_id, WebhookSetting.active.is_(True))
            .order_by(WebhookSetting.id.asc())
            .first()
        )
        if setting is None:
            return {"success": False, "error": "No active webhook configured for this product"}
        url, secret, custom_headers = setting.url, setting.secret, setting.headers or {}
        webhook_id = str(setting.id)

    payload = build_test_payload(event_type, product)
    body = serialize_payload(payload)
    headers = build_headers(secret, custom_headers, body)
    headers["X-Webhook-Event"] = event_type
    headers["X-Test-Mode"] = "true"

    owns_http_session = http_session is None
    http_session = http_session or aiohttp.ClientSession()
    try:
        status, response_body = await post_webhook(
            http_session, url, body, headers, Config.WEBHOOK_DEFAULT_TIMEOUT
        )
    finally:
        if owns_http_session:
            await http_session.close()

    record_webhook_log(session, event_type, payload, status, response_body,
                       user_id=user_id, webhook_id=webhook_id)
    session.commit()

    logger.info(f"🧪 WEBHOOK_DISPATCH: Test {event_type} sent to {url} ({status})")
    return {
        "success": 200 <= status < 300,
        "status": status,
        "event_type": event_type,
        "payload_sent": json.loads(body),
        "response_preview": (response_body or "")[:500],
    }
