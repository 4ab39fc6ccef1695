"""Tests for abandoned cart detection, recovery marking and analytics"""

from datetime import date, datetime, timedelta
from decimal import Decimal

from models import AbandonedPurchase, AbandonedPurchaseStatus, SalesRecoveryAnalytics
from services.abandoned_cart_service import (
    detect_abandoned_purchase, get_recovery_analytics, list_abandoned_purchases, mark_as_recovered
)

NOW = datetime(2024, 3, 4, 10, 0)


def _detect(session, product, now=NOW, email="Buyer@Example.com", amount="5000", **kwargs):
    return detect_abandoned_purchase(
        session, product.id, email, kwargs.pop("customer_name", "Ana"), amount,
        kwargs.pop("currency", "KZ"), now=now, **kwargs
    )


class TestDetectAbandonedPurchase:

    def test_first_detection_creates_record(self, db_session, make_product):
        product = make_product()
        result = _detect(db_session, product, ip_address="10.0.0.1", user_agent="pytest")

        assert result["success"] is True
        assert result["created"] is True
        purchase = db_session.get(AbandonedPurchase, result["abandoned_purchase_id"])
        assert purchase.customer_email == "buyer@example.com"
        assert purchase.status == AbandonedPurchaseStatus.ABANDONED.value
        assert purchase.recovery_attempts_count == 0
        assert purchase.abandoned_at == NOW
        assert purchase.ip_address == "10.0.0.1"

    def test_first_detection_bumps_daily_counter(self, db_session, make_product):
        product = make_product()
        _detect(db_session, product)

        row = db_session.query(SalesRecoveryAnalytics).one()
        assert row.total_abandoned == 1
        assert row.date == NOW.date()
        assert row.user_id == product.user_id

    def test_detection_inside_window_updates_existing(self, db_session, make_product):
        product = make_product()
        first = _detect(db_session, product)
        second = _detect(db_session, product, now=NOW + timedelta(minutes=20), amount="7500",
                         customer_name="Ana Silva", customer_phone="+244900000000")

        assert second["created"] is False
        assert second["abandoned_purchase_id"] == first["abandoned_purchase_id"]
        assert db_session.query(AbandonedPurchase).count() == 1

        purchase = db_session.get(AbandonedPurchase, first["abandoned_purchase_id"])
        assert purchase.amount == Decimal("7500")
        assert purchase.customer_name == "Ana Silva"
        assert purchase.customer_phone == "+244900000000"
        assert purchase.abandoned_at == NOW
        assert db_session.query(SalesRecoveryAnalytics).one().total_abandoned == 1

    def test_detection_after_window_creates_new_record(self, db_session, make_product):
        product = make_product()
        _detect(db_session, product)
        result = _detect(db_session, product, now=NOW + timedelta(minutes=31))

        assert result["created"] is True
        assert db_session.query(AbandonedPurchase).count() == 2

    def test_closed_purchase_is_not_reused(self, db_session, make_product, make_abandoned):
        product = make_product()
        make_abandoned(product, NOW - timedelta(minutes=5), status=AbandonedPurchaseStatus.RECOVERED.value)

        result = _detect(db_session, product)
        assert result["created"] is True

    def test_same_email_other_product_is_separate(self, db_session, make_product):
        course = make_product(name="Course")
        ebook = make_product(name="Ebook")
        _detect(db_session, course)
        result = _detect(db_session, ebook)
        assert result["created"] is True

    def test_invalid_input_rejected(self, db_session, make_product):
        product = make_product()
        assert _detect(db_session, product, email="not-an-email")["success"] is False
        assert _detect(db_session, product, amount="-1")["success"] is False
        assert _detect(db_session, product, amount="abc")["success"] is False
        assert _detect(db_session, product, amount="NaN") == {"success": False, "error": "Invalid amount"}

        missing = detect_abandoned_purchase(db_session, 9999, "a@example.com", "A", "10", "KZ", now=NOW)
        assert missing == {"success": False, "error": "Product not found"}
        assert db_session.query(AbandonedPurchase).count() == 0


class TestMarkAsRecovered:

    def test_marks_open_purchases_recovered(self, db_session, make_product, make_abandoned):
        product = make_product()
        first = make_abandoned(product, NOW - timedelta(days=2), amount=Decimal("100"))
        second = make_abandoned(product, NOW - timedelta(days=1), amount=Decimal("50"))
        expired = make_abandoned(product, NOW - timedelta(days=9), status=AbandonedPurchaseStatus.EXPIRED.value)

        count = mark_as_recovered(db_session, product.id, "BUYER@example.com", "ORD-9", now=NOW)
        db_session.commit()

        assert count == 2
        for purchase in (first, second):
            db_session.refresh(purchase)
            assert purchase.status == AbandonedPurchaseStatus.RECOVERED.value
            assert purchase.recovered_order_id == "ORD-9"
            assert purchase.recovered_at == NOW
        db_session.refresh(expired)
        assert expired.status == AbandonedPurchaseStatus.EXPIRED.value

        row = db_session.query(SalesRecoveryAnalytics).one()
        assert row.total_recovered == 2
        assert row.total_recovered_amount == Decimal("150")

    def test_nothing_to_recover(self, db_session, make_product):
        product = make_product()
        assert mark_as_recovered(db_session, product.id, "nobody@example.com", "ORD-1", now=NOW) == 0


class TestListingAndAnalytics:

    def test_list_filters_by_product(self, db_session, make_product, make_abandoned):
        course = make_product(name="Course")
        ebook = make_product(name="Ebook")
        make_abandoned(course, NOW - timedelta(hours=2))
        make_abandoned(course, NOW - timedelta(hours=1))
        make_abandoned(ebook, NOW)

        purchases = list_abandoned_purchases(db_session, product_id=course.id)
        assert len(purchases) == 2
        assert purchases[0].abandoned_at > purchases[1].abandoned_at

    def test_recovery_rate(self, db_session, make_product, make_abandoned):
        product = make_product()
        make_abandoned(product, NOW, status=AbandonedPurchaseStatus.RECOVERED.value, amount=Decimal("200"))
        make_abandoned(product, NOW, status=AbandonedPurchaseStatus.EXPIRED.value)
        make_abandoned(product, NOW)
        make_abandoned(product, NOW)

        stats = get_recovery_analytics(db_session, date(2024, 3, 1), date(2024, 3, 31))
        assert stats["total_abandoned"] == 4
        assert stats["total_recovered"] == 1
        assert stats["total_expired"] == 1
        assert stats["recovery_rate"] == 25.0
        assert stats["total_recovered_amount"] == Decimal("200")

    def test_recovery_rate_is_zero_without_data(self, db_session):
        stats = get_recovery_analytics(db_session, date(2024, 3, 1), date(2024, 3, 31))
        assert stats["total_abandoned"] == 0
        assert stats["recovery_rate"] == 0.0
