"""Background job that releases held sales into seller balances"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from database import SessionLocal
from services.payment_release_service import process_payment_releases

logger = logging.getLogger(__name__)


async def run_payment_release(now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Scheduler entry point for the payment release run"""
    session = SessionLocal()

    try:
        return process_payment_releases(session, now=now)
    except Exception as e:
        session.rollback()
        logger.error(f"💥 PAYMENT_RELEASE: Error in payment release job: {e}")
        return None
    finally:
        session.close()
