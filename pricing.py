"""
Pricing and discount rules

Pure functions over plain documents. Two independent layers:
category offers set a line's offer_price when the catalog is written, and a
coupon discounts the cart total on top of that.
"""
from datetime import datetime, timezone
from typing import Iterable, Optional

from errors import CouponNotApplicable


def _as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes that are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def offer_is_active(offer: Optional[dict], now: datetime) -> bool:
    if not offer or not offer.get("is_active"):
        return False
    start, end = offer.get("start_date"), offer.get("end_date")
    if start is None or end is None:
        return False
    now = _as_utc(now)
    return _as_utc(start) <= now <= _as_utc(end)


def offer_expired(offer: Optional[dict], now: datetime) -> bool:
    end = (offer or {}).get("end_date")
    return end is not None and _as_utc(end) < _as_utc(now)


def effective_price(base_price: float, category_offer: Optional[dict], now: datetime) -> float:
    """Offer price for base_price under the category's offer at `now`."""
    if not offer_is_active(category_offer, now):
        return base_price
    pct = category_offer["discount_percentage"]
    return round(base_price - base_price * pct / 100, 2)


def unit_price(line: dict) -> float:
    offer = line.get("offer_price")
    return offer if offer is not None else line["price"]


def cart_total(items: Iterable[dict]) -> float:
    return round(sum(i["quantity"] * unit_price(i) for i in items), 2)


def apply_coupon(original_amount: float, coupon: dict, now: datetime) -> dict:
    """
    Discount original_amount with coupon and return the snapshot stored as
    cart.coupon_applied / order.coupon.
    """
    if original_amount < coupon.get("min_purchase", 0):
        raise CouponNotApplicable(
            f"Minimum purchase of {coupon['min_purchase']:.2f} required for coupon {coupon['code']}"
        )
    if _as_utc(now) > _as_utc(coupon["expiry_date"]):
        raise CouponNotApplicable(f"Coupon {coupon['code']} has expired")

    if coupon["discount_type"] == "percentage":
        discount = original_amount * coupon["discount_amount"] / 100
    else:
        discount = coupon["discount_amount"]
    if coupon.get("max_discount") is not None:
        discount = min(coupon["max_discount"], discount)
    discount = round(min(discount, original_amount), 2)

    return {
        "code": coupon["code"],
        "discount_type": coupon["discount_type"],
        "original_amount": round(original_amount, 2),
        "discount_amount": discount,
        "final_amount": round(original_amount - discount, 2),
    }
