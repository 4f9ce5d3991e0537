from datetime import datetime, timedelta, timezone

import pytest

import pricing
from errors import CouponNotApplicable

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_offer(**overrides):
    offer = {
        "title": "Summer",
        "discount_percentage": 15,
        "start_date": NOW - timedelta(days=1),
        "end_date": NOW + timedelta(days=1),
        "is_active": True,
    }
    offer.update(overrides)
    return offer


def make_coupon(**overrides):
    coupon = {
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_amount": 10,
        "min_purchase": 0,
        "max_discount": 80,
        "expiry_date": NOW + timedelta(days=30),
    }
    coupon.update(overrides)
    return coupon


def test_active_offer_discounts_base_price():
    assert pricing.effective_price(200, make_offer(), NOW) == 170.00


def test_offer_outside_window_keeps_base_price():
    offer = make_offer(start_date=NOW + timedelta(days=1), end_date=NOW + timedelta(days=5))
    assert pricing.effective_price(200, offer, NOW) == 200


def test_offer_window_is_inclusive():
    offer = make_offer(start_date=NOW, end_date=NOW)
    assert pricing.effective_price(200, offer, NOW) == 170.00


def test_inactive_or_missing_offer_keeps_base_price():
    assert pricing.effective_price(200, make_offer(is_active=False), NOW) == 200
    assert pricing.effective_price(200, None, NOW) == 200


def test_naive_offer_dates_are_treated_as_utc():
    offer = make_offer(
        start_date=(NOW - timedelta(hours=1)).replace(tzinfo=None),
        end_date=(NOW + timedelta(hours=1)).replace(tzinfo=None),
    )
    assert pricing.effective_price(200, offer, NOW) == 170.00


def test_offer_price_rounded_to_cents():
    assert pricing.effective_price(19.99, make_offer(discount_percentage=33), NOW) == 13.39


def test_cart_total_prefers_offer_price():
    items = [
        {"quantity": 2, "price": 100, "offer_price": 80},
        {"quantity": 1, "price": 50, "offer_price": None},
    ]
    assert pricing.cart_total(items) == 210.0


def test_percentage_coupon_is_capped_by_max_discount():
    applied = pricing.apply_coupon(1000, make_coupon(), NOW)
    assert applied["discount_amount"] == 80
    assert applied["final_amount"] == 920
    assert applied["original_amount"] == 1000


def test_percentage_coupon_without_cap():
    applied = pricing.apply_coupon(1000, make_coupon(max_discount=None), NOW)
    assert applied["discount_amount"] == 100
    assert applied["final_amount"] == 900


@pytest.mark.parametrize("amount,expected", [(50, 50), (150, 80)])
def test_fixed_coupon(amount, expected):
    applied = pricing.apply_coupon(1000, make_coupon(discount_type="fixed", discount_amount=amount), NOW)
    assert applied["discount_amount"] == expected
    assert applied["final_amount"] == 1000 - expected


def test_discount_never_exceeds_amount():
    coupon = make_coupon(discount_type="fixed", discount_amount=500, max_discount=None)
    applied = pricing.apply_coupon(200, coupon, NOW)
    assert applied["discount_amount"] == 200
    assert applied["final_amount"] == 0


def test_coupon_below_minimum_purchase():
    with pytest.raises(CouponNotApplicable):
        pricing.apply_coupon(400, make_coupon(min_purchase=500), NOW)


def test_expired_coupon():
    with pytest.raises(CouponNotApplicable, match="expired"):
        pricing.apply_coupon(1000, make_coupon(expiry_date=NOW - timedelta(days=1)), NOW)
