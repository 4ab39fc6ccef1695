"""Tests for the back-office HTTP API"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from api_server import app
from models import AbandonedPurchase, Order, PaymentRelease, SellerReferral, WebhookLog
from utils.datetime_helpers import get_naive_utc_now
from conftest import FakeEmailService


@pytest.fixture
def client(db_session):
    # No context manager: the lifespan (scheduler, create_tables) stays off
    return TestClient(app)


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] is True


class TestAbandonedPurchaseEndpoints:

    def test_detect_and_list(self, client, db_session, make_product):
        product = make_product()

        response = client.post("/abandoned-purchases", json={
            "product_id": product.id, "customer_email": "buyer@example.com",
            "customer_name": "Ana", "amount": "5000", "currency": "KZ",
        }, headers={"User-Agent": "checkout-web"})
        assert response.status_code == 200
        assert response.json()["created"] is True

        purchase = db_session.query(AbandonedPurchase).one()
        assert purchase.user_agent == "checkout-web"

        listing = client.get("/abandoned-purchases", params={"product_id": product.id}).json()
        assert len(listing) == 1
        assert listing[0]["customer_email"] == "buyer@example.com"

    def test_unknown_product_is_404(self, client):
        response = client.post("/abandoned-purchases", json={
            "product_id": 999, "customer_email": "buyer@example.com", "amount": "10",
        })
        assert response.status_code == 404

    def test_negative_amount_is_rejected(self, client, make_product):
        product = make_product()
        response = client.post("/abandoned-purchases", json={
            "product_id": product.id, "customer_email": "buyer@example.com", "amount": "-1",
        })
        assert response.status_code == 422

    def test_bad_email_is_400(self, client, make_product):
        product = make_product()
        response = client.post("/abandoned-purchases", json={
            "product_id": product.id, "customer_email": "nope", "amount": "10",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid customer email"

    def test_analytics(self, client, make_product, make_abandoned):
        product = make_product()
        make_abandoned(product, get_naive_utc_now())

        body = client.get("/abandoned-purchases/analytics", params={"product_id": product.id}).json()
        assert body["total_abandoned"] == 1
        assert body["recovery_rate"] == 0.0


class TestRecoveryEmailEndpoints:

    def test_manual_send(self, client, make_product, make_recovery_settings, make_abandoned):
        product = make_product()
        make_recovery_settings(product)
        purchase = make_abandoned(product, get_naive_utc_now() - timedelta(days=2))
        fake = FakeEmailService()

        with patch("services.recovery_email_service.EmailService", return_value=fake):
            response = client.post(f"/abandoned-purchases/{purchase.id}/recovery-email")

        assert response.status_code == 200
        assert response.json()["status"] == "sent"
        assert len(fake.sent) == 1

    def test_unconfigured_email_is_502(self, client, make_product, make_recovery_settings, make_abandoned):
        product = make_product()
        make_recovery_settings(product)
        purchase = make_abandoned(product, get_naive_utc_now() - timedelta(days=2))

        response = client.post(f"/abandoned-purchases/{purchase.id}/recovery-email")
        assert response.status_code == 502
        assert response.json()["detail"] == "Email service not configured"

    def test_too_early_is_409(self, client, make_product, make_recovery_settings, make_abandoned):
        product = make_product()
        make_recovery_settings(product)
        purchase = make_abandoned(product, get_naive_utc_now())

        response = client.post(f"/abandoned-purchases/{purchase.id}/recovery-email")
        assert response.status_code == 409
        assert response.json()["detail"]["status"] == "too_early"

    def test_missing_purchase_is_404(self, client):
        assert client.post("/abandoned-purchases/12345/recovery-email").status_code == 404

    def test_test_email(self, client):
        fake = FakeEmailService()
        with patch("services.recovery_email_service.EmailService", return_value=fake):
            response = client.post("/recovery/test-email", json={
                "email": "seller@example.com", "subject": "Hi {customer_name}", "template": "Body",
            })
        assert response.status_code == 200
        assert fake.sent[0]["subject"] == "[TEST] Hi Test Customer"

        assert client.post("/recovery/test-email", json={
            "email": "nope", "subject": "Hi", "template": "Body",
        }).status_code == 400


class TestOrderEndpoints:

    def test_create_and_complete(self, client, db_session, make_product, make_abandoned):
        product = make_product()
        make_abandoned(product, get_naive_utc_now() - timedelta(hours=1))

        created = client.post("/orders", json={
            "product_id": product.id, "customer_email": "buyer@example.com",
            "customer_name": "Ana", "amount": "5000", "order_id": "ORD-API",
        })
        assert created.status_code == 200
        assert created.json()["status"] == "pending"

        with patch("services.order_service.trigger_webhooks", new_callable=AsyncMock) as mock_trigger:
            mock_trigger.return_value = {"triggered": 0, "successful": 0}
            response = client.post("/orders/ORD-API/status", json={"status": "completed"})

        assert response.status_code == 200
        assert response.json()["recovered_carts"] == 1
        assert db_session.query(Order).filter_by(order_id="ORD-API").one().status == "completed"

    def test_status_errors(self, client, make_product, make_order):
        product = make_product()
        make_order(product, order_id="ORD-E", status="pending")

        assert client.post("/orders/ORD-404/status", json={"status": "completed"}).status_code == 404
        assert client.post("/orders/ORD-E/status", json={"status": "lost"}).status_code == 400


class TestWebhookEndpoints:

    def test_trigger_requires_scope(self, client):
        response = client.post("/webhooks/trigger", json={"event": "payment.success"})
        assert response.status_code == 400

    def test_trigger(self, client, db_session, make_product, make_webhook):
        product = make_product()
        make_webhook(product=product)

        with patch("services.webhook_dispatcher.post_webhook", new_callable=AsyncMock,
                   return_value=(200, "ok")):
            response = client.post("/webhooks/trigger", json={
                "event": "payment.success", "product_id": product.id, "data": {"amount": 10},
            })

        assert response.status_code == 200
        assert response.json()["successful"] == 1
        assert db_session.query(WebhookLog).count() == 1

    def test_test_event_without_webhook_is_404(self, client, make_product):
        product = make_product()
        response = client.post("/webhooks/test", json={
            "event_type": "payment.success", "product_id": product.id, "user_id": "seller-1",
        })
        assert response.status_code == 404


class TestReferralAndJobEndpoints:

    def test_referral(self, client, db_session, make_seller):
        make_seller("ana", referral_code="ANA2024")
        make_seller("rui")

        response = client.post("/referrals", json={"referred_user_id": "rui", "referral_code": "ANA2024"})
        assert response.status_code == 200
        assert db_session.query(SellerReferral).count() == 1

        response = client.post("/referrals", json={"referred_user_id": "rui", "referral_code": "ANA2024"})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "User has already been referred"

    def test_run_jobs(self, client, db_session, make_product, make_order):
        product = make_product()
        make_order(product, order_id="ORD-OLD", created_at=get_naive_utc_now() - timedelta(days=10))

        assert client.post("/jobs/cart-recovery").json() == {"processed": 0, "sent": 0, "errors": 0, "expired": 0}

        body = client.post("/jobs/payment-release").json()
        assert body["released"] == 1
        assert db_session.query(PaymentRelease).count() == 1
