"""Tests for recovery email rendering and manual sends"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from config import Config
from models import (
    AbandonedPurchaseStatus, DiscountCoupon, RecoveryEmailLog, RecoveryEmailStatus,
    SalesRecoveryAnalytics, SalesRecoverySettings
)
from services.recovery_email_service import (
    format_discount, render_placeholders, select_template, send_recovery_email,
    send_test_recovery_email
)

NOW = datetime(2024, 3, 10, 12, 0)


class TestTemplateHelpers:

    def test_select_template_uses_numbered_variants(self):
        settings = SalesRecoverySettings(
            email_subject="S1", email_template="T1",
            email_subject_2="S2", email_template_2="T2",
        )
        assert select_template(settings, 1) == ("S1", "T1")
        assert select_template(settings, 2) == ("S2", "T2")
        # No third template configured
        assert select_template(settings, 3) == ("S1", "T1")

    def test_select_template_needs_subject_and_body(self):
        settings = SalesRecoverySettings(email_subject="S1", email_template="T1", email_subject_2="S2")
        assert select_template(settings, 2) == ("S1", "T1")

    def test_render_placeholders(self):
        text = "Hi {customer_name}, {product_name} costs {amount}. {unknown}"
        rendered = render_placeholders(text, {"customer_name": "Ana", "product_name": "Course", "amount": "5.000 KZ"})
        assert rendered == "Hi Ana, Course costs 5.000 KZ. {unknown}"

    def test_settings_defaults_come_from_config(self, db_session, make_product):
        product = make_product()
        settings = SalesRecoverySettings(product_id=product.id, user_id=product.user_id,
                                         email_subject="S", email_template="T")
        db_session.add(settings)
        db_session.commit()

        assert settings.email_delay_hours == Config.RECOVERY_DEFAULT_DELAY_HOURS
        assert settings.max_recovery_attempts == Config.RECOVERY_DEFAULT_MAX_ATTEMPTS

    def test_missing_values_render_empty(self):
        assert render_placeholders("Code: {coupon_code}", {}) == "Code: "

    def test_format_discount(self):
        assert format_discount("percentage", Decimal("10.00"), "KZ") == "10%"
        assert format_discount("percentage", Decimal("12.5"), "KZ") == "12.5%"
        assert format_discount("fixed", Decimal("500.00"), "KZ") == "500 KZ"


class TestSendRecoveryEmail:

    @pytest.mark.asyncio
    async def test_sends_first_email(self, db_session, make_product, make_recovery_settings,
                                     make_abandoned, fake_email_service):
        product = make_product()
        make_recovery_settings(product)
        purchase = make_abandoned(product, NOW - timedelta(hours=25))

        result = await send_recovery_email(db_session, purchase.id, fake_email_service, now=NOW)

        assert result["success"] is True
        assert result["status"] == "sent"
        assert result["email_number"] == 1

        sent = fake_email_service.sent[0]
        assert sent["to_email"] == "buyer@example.com"
        assert sent["subject"] == "Ana, you forgot Online Course"
        assert "5.000 KZ" in sent["html_content"]
        assert f"/checkout/{product.id}?recovery={purchase.id}" in sent["html_content"]
        assert sent["tags"] == ["sales-recovery", "email_1"]

        db_session.refresh(purchase)
        assert purchase.recovery_attempts_count == 1
        assert purchase.last_recovery_attempt_at == NOW

        log = db_session.query(RecoveryEmailLog).one()
        assert log.status == RecoveryEmailStatus.SENT.value
        assert log.email_number == 1
        assert db_session.query(SalesRecoveryAnalytics).one().total_recovery_emails_sent == 1

    @pytest.mark.asyncio
    async def test_failed_send_leaves_purchase_untouched(self, db_session, make_product, make_recovery_settings,
                                                         make_abandoned, failing_email_service):
        product = make_product()
        make_recovery_settings(product)
        purchase = make_abandoned(product, NOW - timedelta(hours=25))

        result = await send_recovery_email(db_session, purchase.id, failing_email_service, now=NOW)

        assert result["success"] is False
        assert result["status"] == "failed"
        db_session.refresh(purchase)
        assert purchase.recovery_attempts_count == 0
        assert purchase.last_recovery_attempt_at is None

        log = db_session.query(RecoveryEmailLog).one()
        assert log.status == RecoveryEmailStatus.FAILED.value
        assert log.error_message == "Brevo API error: 500 Internal"

    @pytest.mark.asyncio
    async def test_too_early(self, db_session, make_product, make_recovery_settings,
                             make_abandoned, fake_email_service):
        product = make_product()
        make_recovery_settings(product)
        last = NOW - timedelta(hours=5)
        purchase = make_abandoned(product, NOW - timedelta(days=2), attempts=1, last_attempt=last)

        result = await send_recovery_email(db_session, purchase.id, fake_email_service, now=NOW)

        assert result["status"] == "too_early"
        assert result["next_attempt_at"] == (last + timedelta(hours=24)).isoformat()
        assert fake_email_service.sent == []

    @pytest.mark.asyncio
    async def test_exhausted_purchase_is_expired(self, db_session, make_product, make_recovery_settings,
                                                 make_abandoned, fake_email_service):
        product = make_product()
        make_recovery_settings(product, max_recovery_attempts=2)
        purchase = make_abandoned(product, NOW - timedelta(days=5), attempts=2, last_attempt=NOW - timedelta(days=2))

        result = await send_recovery_email(db_session, purchase.id, fake_email_service, now=NOW)

        assert result["status"] == "expired"
        db_session.refresh(purchase)
        assert purchase.status == AbandonedPurchaseStatus.EXPIRED.value
        assert fake_email_service.sent == []

    @pytest.mark.asyncio
    async def test_disabled_and_missing(self, db_session, make_product, make_recovery_settings,
                                        make_abandoned, fake_email_service):
        product = make_product()
        make_recovery_settings(product, enabled=False)
        purchase = make_abandoned(product, NOW - timedelta(days=2))
        recovered = make_abandoned(product, NOW - timedelta(days=2), status=AbandonedPurchaseStatus.RECOVERED.value)

        assert (await send_recovery_email(db_session, purchase.id, fake_email_service, now=NOW))["status"] == "disabled"
        assert (await send_recovery_email(db_session, recovered.id, fake_email_service, now=NOW))["status"] == "not_found"
        assert (await send_recovery_email(db_session, 424242, fake_email_service, now=NOW))["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_second_email_uses_second_template(self, db_session, make_product, make_recovery_settings,
                                                     make_abandoned, fake_email_service):
        product = make_product()
        make_recovery_settings(product, email_subject_2="Still thinking, {customer_name}?",
                               email_template_2="Second reminder for {product_name}")
        purchase = make_abandoned(product, NOW - timedelta(days=3), attempts=1, last_attempt=NOW - timedelta(hours=30))

        result = await send_recovery_email(db_session, purchase.id, fake_email_service, now=NOW)

        assert result["email_number"] == 2
        assert fake_email_service.sent[0]["subject"] == "Still thinking, Ana?"
        assert "Second reminder for Online Course" in fake_email_service.sent[0]["html_content"]

    @pytest.mark.asyncio
    async def test_last_email_carries_coupon(self, db_session, make_product, make_recovery_settings,
                                             make_abandoned, fake_email_service):
        product = make_product()
        make_recovery_settings(
            product, max_recovery_attempts=2, enable_discount_on_last=True,
            discount_type="percentage", discount_value=Decimal("15"),
            email_template="Use {coupon_code} for {discount_amount} off",
        )
        purchase = make_abandoned(product, NOW - timedelta(days=3), attempts=1, last_attempt=NOW - timedelta(days=1, hours=1))

        result = await send_recovery_email(db_session, purchase.id, fake_email_service, now=NOW)

        code = result["coupon_code"]
        assert code.startswith("VOLTA")
        html_content = fake_email_service.sent[0]["html_content"]
        assert f"Use {code} for 15% off" in html_content
        assert f"&coupon={code}" in html_content

        coupon = db_session.query(DiscountCoupon).one()
        assert coupon.code == code
        assert coupon.max_uses == 1
        assert coupon.valid_until == NOW + timedelta(days=7)
        assert db_session.query(RecoveryEmailLog).one().coupon_code == code

    @pytest.mark.asyncio
    async def test_failed_last_email_leaves_no_coupon(self, db_session, make_product, make_recovery_settings,
                                                      make_abandoned, failing_email_service):
        product = make_product()
        make_recovery_settings(product, max_recovery_attempts=1, enable_discount_on_last=True)
        purchase = make_abandoned(product, NOW - timedelta(days=2))

        for _ in range(3):
            result = await send_recovery_email(db_session, purchase.id, failing_email_service, now=NOW)
            assert result["status"] == "failed"

        assert db_session.query(DiscountCoupon).count() == 0
        logs = db_session.query(RecoveryEmailLog).all()
        assert len(logs) == 3
        assert all(log.status == RecoveryEmailStatus.FAILED.value for log in logs)
        assert all(log.coupon_code is None for log in logs)
        db_session.refresh(purchase)
        assert purchase.recovery_attempts_count == 0

    @pytest.mark.asyncio
    async def test_customer_name_is_escaped_in_body(self, db_session, make_product, make_recovery_settings,
                                                    make_abandoned, fake_email_service):
        product = make_product()
        make_recovery_settings(product)
        purchase = make_abandoned(product, NOW - timedelta(days=2), customer_name="<script>x</script>")

        await send_recovery_email(db_session, purchase.id, fake_email_service, now=NOW)

        html_content = fake_email_service.sent[0]["html_content"]
        assert "<script>" not in html_content
        assert "&lt;script&gt;" in html_content


class TestSendTestRecoveryEmail:

    @pytest.mark.asyncio
    async def test_invalid_email(self, fake_email_service):
        result = await send_test_recovery_email("nope", "Subject", "Body", email_service=fake_email_service)
        assert result == {"success": False, "error": "Invalid email"}
        assert fake_email_service.sent == []

    @pytest.mark.asyncio
    async def test_sample_data_without_product(self, fake_email_service):
        result = await send_test_recovery_email(
            "seller@example.com", "{customer_name} left {product_name}", "Price: {amount}",
            email_number=2, include_discount=True, discount_value=20,
            email_service=fake_email_service,
        )

        assert result["success"] is True
        sent = fake_email_service.sent[0]
        assert sent["subject"] == "[TEST] Test Customer left Sample Product"
        assert "Price: 0 KZ" in sent["html_content"]
        assert "TEST email (email 2)" in sent["html_content"]
        assert "/checkout/sample?test=true&coupon=TEST" in sent["html_content"]
        assert "20%" in sent["html_content"]

    @pytest.mark.asyncio
    async def test_uses_product_and_writes_nothing(self, db_session, make_product, fake_email_service):
        product = make_product(name="Masterclass", price=Decimal("12000"))

        result = await send_test_recovery_email(
            "seller@example.com", "Hi", "{product_name} for {amount}", product_id=product.id,
            session=db_session, email_service=fake_email_service,
        )

        assert result["success"] is True
        assert "Masterclass for 12.000 KZ" in fake_email_service.sent[0]["html_content"]
        assert db_session.query(RecoveryEmailLog).count() == 0
        assert db_session.query(DiscountCoupon).count() == 0

    @pytest.mark.asyncio
    async def test_send_failure_is_reported(self, failing_email_service):
        result = await send_test_recovery_email("seller@example.com", "Hi", "Body",
                                                email_service=failing_email_service)
        assert result == {"success": False, "error": "Brevo API error: 500 Internal"}
