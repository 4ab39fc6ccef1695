"""
Checkout Back-Office - Database Schema
======================================

Schema for the automation side of the checkout platform:
- Abandoned cart detection and sales recovery emails
- Delayed payment release into the seller balance ledger
- Outbound merchant webhooks and their audit log
- Seller referrals with fraud checks

All timestamps are stored as naive UTC.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Date, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from config import Config
from utils.datetime_helpers import get_naive_utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class AbandonedPurchaseStatus(Enum):
    """Abandoned cart lifecycle states"""
    ABANDONED = "abandoned"
    RECOVERED = "recovered"
    EXPIRED = "expired"


class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class BalanceTransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class RecoveryEmailStatus(Enum):
    SENT = "sent"
    FAILED = "failed"


class DiscountType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ReferralStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"


def _enum_check(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# CATALOG
# ============================================================================

class Product(Base):
    """Product sold through the checkout"""
    __tablename__ = 'products'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # Seller
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="KZ", nullable=False)

    # Subscription products carry their own webhook:
    # {webhook_enabled, webhook_url, webhook_secret, webhook_events}
    subscription_config: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    recovery_settings: Mapped[Optional["SalesRecoverySettings"]] = relationship(
        "SalesRecoverySettings", back_populates="product", uselist=False
    )

    __table_args__ = (
        CheckConstraint('price >= 0', name='ck_product_price_positive'),
    )


# ============================================================================
# ORDERS AND ABANDONED CARTS
# ============================================================================

class Order(Base):
    """Checkout order, created at checkout initiation"""
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), unique=True, nullable=False, index=True)  # Public facing ID

    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)  # Seller receiving the funds

    customer_email = Column(String(255), nullable=False, index=True)
    customer_name = Column(String(255), nullable=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    payment_method = Column(String(50), nullable=True)
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)
    order_bump_data = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    product = relationship("Product")

    __table_args__ = (
        CheckConstraint(_enum_check('status', OrderStatus), name='ck_order_status_valid'),
        CheckConstraint('amount >= 0', name='ck_order_amount_positive'),
        Index('ix_orders_status_created', 'status', 'created_at'),
    )


class AbandonedPurchase(Base):
    """Checkout that was started but never paid"""
    __tablename__ = 'abandoned_purchases'

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)

    customer_email = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    status = Column(String(20), default=AbandonedPurchaseStatus.ABANDONED.value, nullable=False)
    abandoned_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    recovery_attempts_count = Column(Integer, default=0, nullable=False)
    last_recovery_attempt_at = Column(DateTime, nullable=True)
    recovered_at = Column(DateTime, nullable=True)
    recovered_order_id = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    product = relationship("Product")
    email_logs = relationship("RecoveryEmailLog", back_populates="abandoned_purchase")

    __table_args__ = (
        CheckConstraint(_enum_check('status', AbandonedPurchaseStatus), name='ck_abandoned_status_valid'),
        CheckConstraint('recovery_attempts_count >= 0', name='ck_abandoned_attempts_positive'),
        Index('ix_abandoned_product_email_status', 'product_id', 'customer_email', 'status'),
        Index('ix_abandoned_status_abandoned_at', 'status', 'abandoned_at'),
    )


# ============================================================================
# SALES RECOVERY
# ============================================================================

class SalesRecoverySettings(Base):
    """Per-product recovery email configuration"""
    __tablename__ = 'sales_recovery_settings'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey('products.id'), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_delay_hours: Mapped[int] = mapped_column(Integer, default=Config.RECOVERY_DEFAULT_DELAY_HOURS, nullable=False)
    max_recovery_attempts: Mapped[int] = mapped_column(
        Integer, default=Config.RECOVERY_DEFAULT_MAX_ATTEMPTS, nullable=False
    )

    email_subject: Mapped[str] = mapped_column(String(255), nullable=False)
    email_template: Mapped[str] = mapped_column(Text, nullable=False)
    email_subject_2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email_template_2: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email_subject_3: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email_template_3: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    enable_discount_on_last: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(20), default=DiscountType.PERCENTAGE.value, nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="recovery_settings")

    __table_args__ = (
        CheckConstraint('email_delay_hours >= 0', name='ck_recovery_delay_positive'),
        CheckConstraint('max_recovery_attempts >= 1', name='ck_recovery_max_attempts_min'),
        CheckConstraint(_enum_check('discount_type', DiscountType), name='ck_recovery_discount_type_valid'),
    )


class RecoveryEmailLog(Base):
    """One row per recovery email attempt"""
    __tablename__ = 'recovery_email_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    abandoned_purchase_id = Column(Integer, ForeignKey('abandoned_purchases.id'), nullable=False, index=True)
    email_sent_to = Column(String(255), nullable=False)
    email_subject = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    email_number = Column(Integer, default=1, nullable=False)
    coupon_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    abandoned_purchase = relationship("AbandonedPurchase", back_populates="email_logs")

    __table_args__ = (
        CheckConstraint(_enum_check('status', RecoveryEmailStatus), name='ck_recovery_log_status_valid'),
    )


class SalesRecoveryAnalytics(Base):
    """Daily recovery counters per seller and product"""
    __tablename__ = 'sales_recovery_analytics'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False)
    date = Column(Date, nullable=False)
    total_abandoned = Column(Integer, default=0, nullable=False)
    total_recovery_emails_sent = Column(Integer, default=0, nullable=False)
    total_recovered = Column(Integer, default=0, nullable=False)
    total_recovered_amount = Column(Numeric(18, 2), default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'product_id', 'date', name='uq_recovery_analytics_day'),
        Index('ix_recovery_analytics_date', 'date'),
    )


class DiscountCoupon(Base):
    """Discount coupon, issued on the last recovery email"""
    __tablename__ = 'discount_coupons'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('products.id'), nullable=True)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    uses_per_customer: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(_enum_check('discount_type', DiscountType), name='ck_coupon_discount_type_valid'),
        CheckConstraint('discount_value > 0', name='ck_coupon_value_positive'),
    )


# ============================================================================
# SELLER LEDGER
# ============================================================================

class PaymentRelease(Base):
    """Record of an order's funds released to the seller"""
    __tablename__ = 'payment_releases'

    id = Column(Integer, primary_key=True, autoincrement=True)
    # One release per order, enforced by the database
    order_id = Column(String(32), unique=True, nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    release_date = Column(DateTime, nullable=False)
    processed_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_payment_releases_release_date', 'release_date'),
    )


class BalanceTransaction(Base):
    """Append-only seller balance ledger"""
    __tablename__ = 'balance_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(10), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    description = Column(Text, nullable=True)
    order_id = Column(String(32), nullable=True, index=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(_enum_check('type', BalanceTransactionType), name='ck_balance_tx_type_valid'),
        CheckConstraint('amount >= 0', name='ck_balance_tx_amount_positive'),
        Index('ix_balance_tx_order_type', 'order_id', 'type'),
    )


# ============================================================================
# WEBHOOKS
# ============================================================================

class WebhookSetting(Base):
    """Merchant-configured outbound webhook"""
    __tablename__ = 'webhook_settings'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # NULL product_id means the webhook applies to all the seller's products
    product_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('products.id'), nullable=True, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    events: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    headers: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    timeout: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('timeout > 0', name='ck_webhook_timeout_positive'),
    )


class WebhookLog(Base):
    """Append-only audit of every webhook delivery attempt"""
    __tablename__ = 'webhook_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=True, index=True)
    webhook_id = Column(String(64), nullable=True)  # setting id, or "subscription_<product>"
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSONType, nullable=False)
    response_status = Column(Integer, nullable=False, default=0)
    response_body = Column(Text, nullable=True)
    success = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_webhook_logs_created_at', 'created_at'),
    )


# ============================================================================
# SELLER REFERRALS
# ============================================================================

class SellerProfile(Base):
    """Seller account profile"""
    __tablename__ = 'seller_profiles'

    user_id = Column(String(64), primary_key=True)
    full_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    referral_code = Column(String(32), unique=True, nullable=True, index=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)


class SellerReferral(Base):
    """Seller-to-seller referral"""
    __tablename__ = 'seller_referrals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    referrer_id = Column(String(64), ForeignKey('seller_profiles.user_id'), nullable=False, index=True)
    referred_id = Column(String(64), ForeignKey('seller_profiles.user_id'), unique=True, nullable=False)
    referral_code = Column(String(32), nullable=False)
    status = Column(String(20), default=ReferralStatus.PENDING.value, nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    fraud_check = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(_enum_check('status', ReferralStatus), name='ck_referral_status_valid'),
        CheckConstraint('referrer_id <> referred_id', name='ck_referral_not_self'),
        Index('ix_seller_referrals_referrer_created', 'referrer_id', 'created_at'),
    )
