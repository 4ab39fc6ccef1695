"""Background job for sending sales recovery emails to abandoned checkouts"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from models import AbandonedPurchase, AbandonedPurchaseStatus, Product, SalesRecoverySettings
from services.email_service import EmailService
from services.recovery_email_service import deliver_recovery_email
from utils.datetime_helpers import get_naive_utc_now, ensure_naive_datetime

logger = logging.getLogger(__name__)


def _reference_time():
    return func.coalesce(
        AbandonedPurchase.last_recovery_attempt_at, AbandonedPurchase.abandoned_at
    )


def expire_exhausted_purchases(session: Session, settings: SalesRecoverySettings, now: datetime) -> int:
    """Expire abandoned purchases that used every attempt and waited out the last delay"""
    cutoff = now - timedelta(hours=settings.email_delay_hours)
    exhausted = (
        session.query(AbandonedPurchase)
        .filter(
            and_(
                AbandonedPurchase.product_id == settings.product_id,
                AbandonedPurchase.status == AbandonedPurchaseStatus.ABANDONED.value,
                AbandonedPurchase.recovery_attempts_count >= settings.max_recovery_attempts,
                _reference_time() <= cutoff,
            )
        )
        .all()
    )
    for purchase in exhausted:
        purchase.status = AbandonedPurchaseStatus.EXPIRED.value
        purchase.updated_at = now
    if exhausted:
        session.commit()
        logger.info(
            f"⏹️ CART_RECOVERY: Expired {len(exhausted)} purchase(s) for product {settings.product_id}"
        )
    return len(exhausted)


async def process_cart_recovery(
    session: Optional[Session] = None,
    email_service: Optional[EmailService] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Send due recovery emails for every product with recovery enabled.

    Returns:
        dict: {"processed", "sent", "errors", "expired"}
    """
    owns_session = session is None
    session = session or SessionLocal()
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    summary = {"processed": 0, "sent": 0, "errors": 0, "expired": 0}

    try:
        all_settings = (
            session.query(SalesRecoverySettings)
            .filter(SalesRecoverySettings.enabled.is_(True))
            .all()
        )

        if not all_settings:
            logger.info("CART_RECOVERY: No products with sales recovery enabled")
            return summary

        email_service = email_service or EmailService()

        for settings in all_settings:
            try:
                product = session.get(Product, settings.product_id)
                if product is None:
                    logger.warning(f"⚠️ CART_RECOVERY: Product {settings.product_id} not found, skipping settings {settings.id}")
                    continue

                cutoff = now - timedelta(hours=settings.email_delay_hours)
                due_purchases = (
                    session.query(AbandonedPurchase)
                    .filter(
                        and_(
                            AbandonedPurchase.product_id == settings.product_id,
                            AbandonedPurchase.status == AbandonedPurchaseStatus.ABANDONED.value,
                            AbandonedPurchase.recovery_attempts_count < settings.max_recovery_attempts,
                            _reference_time() <= cutoff,
                        )
                    )
                    .order_by(AbandonedPurchase.abandoned_at.asc())
                    .limit(Config.RECOVERY_BATCH_SIZE)
                    .all()
                )

                for purchase in due_purchases:
                    summary["processed"] += 1
                    try:
                        result = await deliver_recovery_email(
                            session, purchase, settings, product, email_service, now
                        )
                        if result["success"]:
                            summary["sent"] += 1
                        else:
                            summary["errors"] += 1
                    except Exception as e:
                        session.rollback()
                        summary["errors"] += 1
                        logger.error(f"❌ CART_RECOVERY: Error processing purchase {purchase.id}: {e}")

                summary["expired"] += expire_exhausted_purchases(session, settings, now)

            except Exception as e:
                session.rollback()
                logger.error(f"❌ CART_RECOVERY: Error processing settings {settings.id}: {e}")

        logger.info(
            f"CART_RECOVERY: Completed - processed: {summary['processed']}, sent: {summary['sent']}, "
            f"errors: {summary['errors']}, expired: {summary['expired']}"
        )
        return summary

    except Exception as e:
        logger.error(f"Error in process_cart_recovery job: {e}")
        return summary
    finally:
        if owns_session:
            session.close()
