"""Seller referral registration with fraud checks"""

import logging
import re
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta
from sqlalchemy import and_
from database import SessionLocal
from config import Config
from models import SellerProfile, SellerReferral, ReferralStatus
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class ReferralFraudDetector:
    """Detect and block suspicious seller referrals"""

    @staticmethod
    def _email_local_part(email: Optional[str]) -> str:
        if not email or "@" not in email:
            return ""
        return email.split("@", 1)[0].lower()

    @staticmethod
    def _check_same_ip(
        referrer_id: str, ip_address: Optional[str], session, now: datetime
    ) -> Optional[Dict[str, Any]]:
        """Several referrals from one IP for the same referrer within 24h"""
        if not ip_address:
            return None

        same_ip_count = (
            session.query(SellerReferral)
            .filter(
                and_(
                    SellerReferral.referrer_id == referrer_id,
                    SellerReferral.ip_address == ip_address,
                    SellerReferral.created_at >= now - timedelta(hours=24),
                )
            )
            .count()
        )
        if same_ip_count >= Config.REFERRAL_SAME_IP_THRESHOLD:
            return {
                "type": "multiple_referrals_same_ip",
                "description": f"{same_ip_count} referrals from {ip_address} in the last 24h",
                "severity": "high",
            }
        return None

    @staticmethod
    def _check_similar_email(
        referrer: SellerProfile, referred: Optional[SellerProfile]
    ) -> Optional[Dict[str, Any]]:
        """Same email local part once digits are stripped (john1@ vs john2@)"""
        referrer_local = re.sub(r"\d", "", ReferralFraudDetector._email_local_part(referrer.email))
        referred_local = re.sub(r"\d", "", ReferralFraudDetector._email_local_part(referred.email if referred else None))
        if referrer_local and referrer_local == referred_local:
            return {
                "type": "similar_email_pattern",
                "description": "Referrer and referred emails differ only by digits",
                "severity": "medium",
            }
        return None

    @staticmethod
    def process_seller_referral(
        referred_user_id: str,
        referral_code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session=None,
    ) -> Dict[str, Any]:
        """
        Register a referral for a new seller after running the fraud checks.

        Returns:
            dict: {"success": bool, "referral_id"?, "fraud_flags"?, "error"?}
        """
        close_session = False
        if not session:
            session = SessionLocal()
            close_session = True

        try:
            code = (referral_code or "").strip().upper()
            if len(code) < Config.REFERRAL_CODE_MIN_LENGTH:
                return {"success": False, "error": "Invalid referral code"}

            referrer = session.query(SellerProfile).filter(SellerProfile.referral_code == code).first()
            if not referrer:
                return {"success": False, "error": "Referral code not found"}

            if referrer.user_id == referred_user_id:
                logger.warning(f"🚫 REFERRAL: Self-referral attempt by {referred_user_id}")
                return {"success": False, "error": "Self-referral is not allowed"}

            already_referred = (
                session.query(SellerReferral)
                .filter(SellerReferral.referred_id == referred_user_id)
                .first()
            )
            if already_referred:
                return {"success": False, "error": "User has already been referred"}

            now = get_naive_utc_now()
            referred = session.get(SellerProfile, referred_user_id)

            flags: List[Dict[str, Any]] = []
            for flag in (
                ReferralFraudDetector._check_same_ip(referrer.user_id, ip_address, session, now),
                ReferralFraudDetector._check_similar_email(referrer, referred),
            ):
                if flag:
                    flags.append(flag)

            fraud_check = {
                "checked_at": now.isoformat(),
                "ip_address": ip_address,
                "flags": [f["type"] for f in flags],
                "details": flags,
            }

            if len(flags) >= Config.REFERRAL_FRAUD_FLAG_LIMIT:
                logger.warning(
                    f"🚨 REFERRAL: Blocked referral {referrer.user_id} -> {referred_user_id}: "
                    f"{', '.join(fraud_check['flags'])}"
                )
                return {"success": False, "error": "Referral blocked by fraud checks",
                        "fraud_flags": fraud_check["flags"]}

            active_count = (
                session.query(SellerReferral)
                .filter(
                    SellerReferral.referrer_id == referrer.user_id,
                    SellerReferral.status.in_([ReferralStatus.PENDING.value, ReferralStatus.ACTIVE.value]),
                )
                .count()
            )
            if active_count >= Config.REFERRAL_MAX_ACTIVE:
                return {"success": False, "error": "Referrer has reached the referral limit"}

            referral = SellerReferral(
                referrer_id=referrer.user_id,
                referred_id=referred_user_id,
                referral_code=code,
                status=ReferralStatus.PENDING.value,
                ip_address=ip_address,
                user_agent=user_agent,
                fraud_check=fraud_check,
                created_at=now,
            )
            session.add(referral)
            session.commit()

            if flags:
                logger.info(f"⚠️ REFERRAL: Referral {referral.id} created with flags {fraud_check['flags']}")
            else:
                logger.info(f"✅ REFERRAL: Referral {referral.id} created ({referrer.user_id} -> {referred_user_id})")

            return {"success": True, "referral_id": referral.id, "fraud_flags": fraud_check["flags"]}

        except Exception as e:
            session.rollback()
            logger.error(f"Error processing seller referral for {referred_user_id}: {e}")
            return {"success": False, "error": str(e)}
        finally:
            if close_session:
                session.close()


def process_seller_referral(referred_user_id: str, referral_code: str,
                            ip_address: Optional[str] = None, user_agent: Optional[str] = None,
                            session=None) -> Dict[str, Any]:
    """Convenience wrapper around ReferralFraudDetector.process_seller_referral"""
    return ReferralFraudDetector.process_seller_referral(
        referred_user_id, referral_code, ip_address, user_agent, session
    )
