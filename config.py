"""Configuration management for the checkout back-office service"""

import os
import logging
from decimal import Decimal
from datetime import date
from typing import List

logger = logging.getLogger(__name__)


def _parse_holidays(raw: str) -> List[date]:
    """Parse a comma separated list of ISO dates (YYYY-MM-DD)"""
    holidays = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            holidays.append(date.fromisoformat(chunk))
        except ValueError:
            logger.warning(f"⚠️ Ignoring invalid holiday date in PAYMENT_RELEASE_HOLIDAYS: {chunk}")
    return holidays


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()

    if ENVIRONMENT:
        IS_PRODUCTION = (ENVIRONMENT == "production")
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))

    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Branding
    BRAND = os.getenv("BRAND", "Checkout")
    PLATFORM_NAME = BRAND
    CHECKOUT_BASE_URL = os.getenv("CHECKOUT_BASE_URL", f"https://pay.{BRAND.lower()}.com").rstrip("/")

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    if DATABASE_URL:
        DATABASE_SOURCE = "PostgreSQL" if DATABASE_URL.startswith("postgresql") else DATABASE_URL.split(":", 1)[0]
    else:
        DATABASE_SOURCE = "NOT CONFIGURED"

    # HTTP server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "5000"))
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

    # Email configuration (Brevo - formerly SendinBlue)
    BREVO_API_KEY = os.getenv("BREVO_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", f"noreply@{BRAND.lower()}.com")
    FROM_NAME = os.getenv("FROM_NAME", BRAND)
    EMAIL_SEND_TIMEOUT = float(os.getenv("EMAIL_SEND_TIMEOUT", "30"))
    # One attempt by default: a timed-out send may still have been delivered
    EMAIL_SEND_MAX_RETRIES = int(os.getenv("EMAIL_SEND_MAX_RETRIES", "1"))

    # Abandoned cart detection
    ABANDONMENT_WINDOW_MINUTES = int(os.getenv("ABANDONMENT_WINDOW_MINUTES", "30"))

    # Sales recovery
    RECOVERY_PROCESSING_INTERVAL_MINUTES = int(os.getenv("RECOVERY_PROCESSING_INTERVAL_MINUTES", "10"))
    RECOVERY_BATCH_SIZE = int(os.getenv("RECOVERY_BATCH_SIZE", "50"))
    RECOVERY_DEFAULT_DELAY_HOURS = int(os.getenv("RECOVERY_DEFAULT_DELAY_HOURS", "24"))
    RECOVERY_DEFAULT_MAX_ATTEMPTS = int(os.getenv("RECOVERY_DEFAULT_MAX_ATTEMPTS", "3"))
    RECOVERY_COUPON_PREFIX = os.getenv("RECOVERY_COUPON_PREFIX", "VOLTA")
    RECOVERY_COUPON_VALID_DAYS = int(os.getenv("RECOVERY_COUPON_VALID_DAYS", "7"))

    # Payment release
    PAYMENT_RELEASE_INTERVAL_MINUTES = int(os.getenv("PAYMENT_RELEASE_INTERVAL_MINUTES", "60"))
    PAYMENT_RELEASE_BUSINESS_DAYS = int(os.getenv("PAYMENT_RELEASE_BUSINESS_DAYS", "3"))
    PAYMENT_RELEASE_FEE_PERCENT = Decimal(os.getenv("PAYMENT_RELEASE_FEE_PERCENT", "0"))
    PAYMENT_RELEASE_HOLIDAYS = _parse_holidays(os.getenv("PAYMENT_RELEASE_HOLIDAYS", ""))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "KZ")

    # Outbound merchant webhooks
    WEBHOOK_DEFAULT_TIMEOUT = int(os.getenv("WEBHOOK_DEFAULT_TIMEOUT", "30"))
    WEBHOOK_USER_AGENT = os.getenv("WEBHOOK_USER_AGENT", f"{BRAND}-Webhook/1.0")
    WEBHOOK_PAYLOAD_VERSION = "1.0"
    WEBHOOK_RESPONSE_BODY_LIMIT = 1000

    # Seller referrals
    REFERRAL_CODE_MIN_LENGTH = 4
    REFERRAL_MAX_ACTIVE = int(os.getenv("REFERRAL_MAX_ACTIVE", "100"))
    REFERRAL_SAME_IP_THRESHOLD = int(os.getenv("REFERRAL_SAME_IP_THRESHOLD", "3"))
    REFERRAL_FRAUD_FLAG_LIMIT = int(os.getenv("REFERRAL_FRAUD_FLAG_LIMIT", "2"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Service Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        if Config.DATABASE_SOURCE == "NOT CONFIGURED":
            logger.error(f"   ❌ Database: {Config.DATABASE_SOURCE}")
        else:
            logger.info(f"   🗄️ Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Email: {'Brevo' if Config.BREVO_API_KEY else 'disabled (BREVO_API_KEY not set)'}")
        logger.info(f"   Scheduler: {'enabled' if Config.SCHEDULER_ENABLED else 'disabled'}")

    @staticmethod
    def validate_configuration() -> bool:
        """Validate required settings and warn about risky ones"""
        valid = True
        if not Config.DATABASE_URL:
            logger.error("❌ DATABASE_URL not configured! Please set DATABASE_URL environment variable.")
            valid = False
        if not Config.BREVO_API_KEY:
            logger.warning("⚠️ BREVO_API_KEY not configured - recovery emails will be skipped")
        if Config.PAYMENT_RELEASE_FEE_PERCENT < 0 or Config.PAYMENT_RELEASE_FEE_PERCENT >= 100:
            logger.error(f"❌ PAYMENT_RELEASE_FEE_PERCENT out of range: {Config.PAYMENT_RELEASE_FEE_PERCENT}")
            valid = False
        if Config.PAYMENT_RELEASE_BUSINESS_DAYS < 0:
            logger.error("❌ PAYMENT_RELEASE_BUSINESS_DAYS must not be negative")
            valid = False
        return valid
