"""
Shared test fixtures for the checkout back-office tests.

1. In-memory SQLite database, created and dropped around every test
2. Factories for products, recovery settings, orders and webhooks
3. A fake email service recording what would have been sent
"""

import os

# Must be set before config.py / database.py are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("BREVO_API_KEY", None)

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

import pytest

from database import SessionLocal, engine
from models import (
    Base, Product, SalesRecoverySettings, AbandonedPurchase, AbandonedPurchaseStatus,
    Order, OrderStatus, WebhookSetting, SellerProfile
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

SELLER_ID = "seller-1"


@pytest.fixture
def db_session():
    """Fresh schema per test on the shared in-memory engine"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_product(db_session):
    def _make(name="Online Course", price=Decimal("5000"), currency="KZ", user_id=SELLER_ID, **kwargs):
        product = Product(name=name, price=price, currency=currency, user_id=user_id, **kwargs)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture
def make_recovery_settings(db_session):
    def _make(product, **kwargs):
        values = {
            "product_id": product.id,
            "user_id": product.user_id,
            "enabled": True,
            "email_delay_hours": 24,
            "max_recovery_attempts": 3,
            "email_subject": "{customer_name}, you forgot {product_name}",
            "email_template": "Hi {customer_name}, finish buying {product_name} for {amount}: {checkout_link}",
        }
        values.update(kwargs)
        settings = SalesRecoverySettings(**values)
        db_session.add(settings)
        db_session.commit()
        return settings
    return _make


@pytest.fixture
def make_abandoned(db_session):
    def _make(product, abandoned_at: datetime, email="buyer@example.com", amount=Decimal("5000"),
              attempts=0, last_attempt=None, status=AbandonedPurchaseStatus.ABANDONED.value, **kwargs):
        purchase = AbandonedPurchase(
            product_id=product.id,
            customer_email=email,
            customer_name=kwargs.pop("customer_name", "Ana"),
            amount=amount,
            currency=kwargs.pop("currency", product.currency),
            status=status,
            abandoned_at=abandoned_at,
            recovery_attempts_count=attempts,
            last_recovery_attempt_at=last_attempt,
            created_at=abandoned_at,
            updated_at=abandoned_at,
            **kwargs,
        )
        db_session.add(purchase)
        db_session.commit()
        return purchase
    return _make


@pytest.fixture
def make_order(db_session):
    def _make(product, order_id="ORD-1", created_at=None, status=OrderStatus.COMPLETED.value,
              amount=Decimal("10000"), email="buyer@example.com", **kwargs):
        created_at = created_at or datetime(2024, 1, 1, 12, 0)
        order = Order(
            order_id=order_id,
            product_id=product.id,
            user_id=product.user_id,
            customer_email=email,
            customer_name=kwargs.pop("customer_name", "Ana"),
            amount=amount,
            currency=kwargs.pop("currency", "KZ"),
            status=status,
            created_at=created_at,
            updated_at=created_at,
            **kwargs,
        )
        db_session.add(order)
        db_session.commit()
        return order
    return _make


@pytest.fixture
def make_webhook(db_session):
    def _make(url="https://merchant.example.com/hook", events=("payment.success",), product=None,
              user_id=SELLER_ID, secret=None, **kwargs):
        setting = WebhookSetting(
            url=url,
            events=list(events),
            product_id=product.id if product is not None else None,
            user_id=user_id,
            secret=secret,
            **kwargs,
        )
        db_session.add(setting)
        db_session.commit()
        return setting
    return _make


@pytest.fixture
def make_seller(db_session):
    def _make(user_id, email=None, referral_code=None, full_name=None):
        profile = SellerProfile(user_id=user_id, email=email, referral_code=referral_code, full_name=full_name)
        db_session.add(profile)
        db_session.commit()
        return profile
    return _make


class FakeEmailService:
    """Stands in for EmailService; records sends and returns a canned result"""

    def __init__(self, succeed: bool = True, error: str = "Brevo API error: 500 Internal"):
        self.succeed = succeed
        self.error = error
        self.sent: List[Dict[str, Any]] = []

    async def send_email(self, to_email, subject, html_content, to_name=None, tags=None):
        self.sent.append({"to_email": to_email, "subject": subject, "html_content": html_content,
                          "to_name": to_name, "tags": tags})
        if self.succeed:
            return {"success": True, "message_id": f"msg-{len(self.sent)}", "error": None}
        return {"success": False, "message_id": None, "error": self.error}


@pytest.fixture
def fake_email_service():
    return FakeEmailService()


@pytest.fixture
def failing_email_service():
    return FakeEmailService(succeed=False)
