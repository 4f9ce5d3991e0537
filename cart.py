"""
Cart engine

One cart document per user. Line items are identified by the composite key
(product_id, variant_id) and changed with positional/array updates on the
single matching line, never by rewriting the whole items array.

Every line mutation bumps `revision` and drops `coupon_applied`. The stored
total_price is written only while the revision it was computed from is
still current.
"""
from datetime import datetime
from typing import Optional

import structlog
from pymongo.errors import DuplicateKeyError

import catalog
import config
import coupons
import pricing
from database import oid_or_none, utcnow
from errors import CouponNotApplicable, InvalidAction, InvalidState, ItemNotFound, NotFound, ValidationError
from schemas import AppliedCoupon, CartItem

logger = structlog.get_logger(__name__)

ATTEMPTS = 3


def _line_key(product_id: str, variant_id: Optional[str]) -> dict:
    return {"product_id": product_id, "variant_id": variant_id or None}


def _mutated() -> dict:
    return {"updated_at": utcnow(), "coupon_applied": None}


def _find_cart(db, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    return cart


def _ensure_cart(db, user_id: str) -> None:
    now = utcnow()
    try:
        db["cart"].update_one(
            {"user_id": user_id},
            {"$setOnInsert": {
                "items": [],
                "total_price": 0,
                "coupon_applied": None,
                "revision": 0,
                "created_at": now,
                "updated_at": now,
            }},
            upsert=True,
        )
    except DuplicateKeyError:
        # another request created it first
        pass


def _recalculate(db, user_id: str) -> dict:
    cart = _find_cart(db, user_id)
    cart["total_price"] = pricing.cart_total(cart["items"])
    db["cart"].update_one(
        {"_id": cart["_id"], "revision": cart["revision"]},
        {"$set": {"total_price": cart["total_price"]}},
    )
    return cart


def add_item(db, user_id: str, quantity: int = 1, product_id: Optional[str] = None,
             variant_id: Optional[str] = None) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    target = catalog.resolve_target(db, product_id, variant_id)
    key = _line_key(target["product_id"], target["variant_id"])
    line = CartItem(
        product_id=target["product_id"],
        variant_id=target["variant_id"],
        quantity=quantity,
        price=target["price"],
        offer_price=target["offer_price"],
    ).model_dump()

    _ensure_cart(db, user_id)
    carts = db["cart"]
    for _ in range(ATTEMPTS):
        result = carts.update_one(
            {"user_id": user_id, "items": {"$elemMatch": key}},
            {"$inc": {"items.$.quantity": quantity, "revision": 1}, "$set": _mutated()},
        )
        if result.matched_count:
            break
        result = carts.update_one(
            {"user_id": user_id, "$nor": [{"items": {"$elemMatch": key}}]},
            {"$push": {"items": line}, "$inc": {"revision": 1}, "$set": _mutated()},
        )
        if result.matched_count:
            break
    else:
        raise InvalidState("Cart was modified concurrently, try again")

    return _recalculate(db, user_id)


def remove_item(db, user_id: str, product_id: str, variant_id: Optional[str] = None) -> dict:
    cart = _find_cart(db, user_id)
    key = _line_key(product_id, variant_id)
    result = db["cart"].update_one(
        {"_id": cart["_id"], "items": {"$elemMatch": key}},
        {"$pull": {"items": key}, "$inc": {"revision": 1}, "$set": _mutated()},
    )
    if not result.matched_count:
        raise ItemNotFound("Product not found in cart")
    return _recalculate(db, user_id)


def update_item_quantity(db, user_id: str, product_id: str, action: str,
                         variant_id: Optional[str] = None) -> dict:
    if action not in ("increment", "decrement"):
        raise InvalidAction("Action must be 'increment' or 'decrement'")
    cart = _find_cart(db, user_id)
    key = _line_key(product_id, variant_id)
    carts = db["cart"]

    if action == "increment":
        result = carts.update_one(
            {"_id": cart["_id"], "items": {"$elemMatch": key}},
            {"$inc": {"items.$.quantity": 1, "revision": 1}, "$set": _mutated()},
        )
        if not result.matched_count:
            raise ItemNotFound("Product not found in cart")
        return _recalculate(db, user_id)

    for _ in range(ATTEMPTS):
        result = carts.update_one(
            {"_id": cart["_id"], "items": {"$elemMatch": {**key, "quantity": {"$gt": 1}}}},
            {"$inc": {"items.$.quantity": -1, "revision": 1}, "$set": _mutated()},
        )
        if result.matched_count:
            break
        # last unit: drop the line rather than store a zero quantity
        result = carts.update_one(
            {"_id": cart["_id"], "items": {"$elemMatch": {**key, "quantity": {"$lte": 1}}}},
            {"$pull": {"items": key}, "$inc": {"revision": 1}, "$set": _mutated()},
        )
        if result.matched_count:
            break
        if not carts.find_one({"_id": cart["_id"], "items": {"$elemMatch": key}}):
            raise ItemNotFound("Product not found in cart")
    else:
        raise InvalidState("Cart was modified concurrently, try again")

    return _recalculate(db, user_id)


def clear_cart(db, user_id: str) -> dict:
    result = db["cart"].update_one(
        {"user_id": user_id},
        {
            "$set": {"items": [], "total_price": 0, **_mutated()},
            "$inc": {"revision": 1},
        },
    )
    if not result.matched_count:
        raise NotFound("Cart not found")
    logger.debug("cart_cleared", user_id=user_id)
    return _find_cart(db, user_id)


def _product_summary(product: Optional[dict]) -> Optional[dict]:
    if not product:
        return None
    return {
        "id": str(product["_id"]),
        "name": product.get("name"),
        "description": product.get("description"),
        "category": product.get("category"),
        "brand": product.get("brand"),
        "images": product.get("images", []),
    }


def _variant_summary(variant: Optional[dict]) -> Optional[dict]:
    if not variant:
        return None
    return {
        "id": str(variant["_id"]),
        "sku": variant.get("sku"),
        "price": variant.get("price"),
        "offer_price": variant.get("offer_price"),
        "stock": variant.get("stock"),
        "attributes": variant.get("attributes", {}),
        "images": variant.get("images", []),
    }


def _reapply_coupon(db, code: str, total_price: float) -> Optional[dict]:
    """Re-run a stored coupon against a refreshed total; None when it no longer applies."""
    coupon = coupons.find_by_code(db, code)
    if not coupon:
        return None
    try:
        return pricing.apply_coupon(total_price, coupon, utcnow())
    except CouponNotApplicable:
        return None


def get_cart(db, user_id: str, refresh_prices: Optional[bool] = None) -> dict:
    if refresh_prices is None:
        refresh_prices = config.REFRESH_PRICE_ON_READ
    cart = _find_cart(db, user_id)

    product_ids = [i for i in (oid_or_none(it["product_id"]) for it in cart["items"]) if i]
    variant_ids = [i for i in (oid_or_none(it.get("variant_id")) for it in cart["items"]) if i]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": product_ids}})} if product_ids else {}
    variants = {str(v["_id"]): v for v in db["variant"].find({"_id": {"$in": variant_ids}})} if variant_ids else {}

    items = []
    for item in cart["items"]:
        product = products.get(item["product_id"])
        variant = variants.get(item.get("variant_id")) if item.get("variant_id") else None
        price, offer_price = item["price"], item.get("offer_price")
        if refresh_prices:
            source = variant if item.get("variant_id") else product
            if source is not None and source.get("price") is not None:
                price, offer_price = source["price"], source.get("offer_price")
        line = {
            "product_id": item["product_id"],
            "variant_id": item.get("variant_id"),
            "quantity": item["quantity"],
            "price": price,
            "offer_price": offer_price,
        }
        line["item_total"] = round(line["quantity"] * pricing.unit_price(line), 2)
        line["product"] = _product_summary(product)
        line["variant"] = _variant_summary(variant)
        items.append(line)

    total_price = pricing.cart_total(items)
    coupon = cart.get("coupon_applied")
    if coupon and refresh_prices:
        coupon = _reapply_coupon(db, coupon["code"], total_price)
    return {
        "id": str(cart["_id"]),
        "user_id": cart["user_id"],
        "items": items,
        "total_price": total_price,
        "total_quantity": sum(i["quantity"] for i in items),
        "coupon_applied": coupon,
        "final_amount": coupon["final_amount"] if coupon else total_price,
        "created_at": cart.get("created_at"),
        "updated_at": cart.get("updated_at"),
    }


def apply_coupon(db, user_id: str, code: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    coupon = coupons.find_by_code(db, code)
    if not coupon:
        raise NotFound("Coupon not found")
    for _ in range(ATTEMPTS):
        cart = _find_cart(db, user_id)
        if not cart["items"]:
            raise ValidationError("Cart is empty")
        snapshot = AppliedCoupon(**pricing.apply_coupon(pricing.cart_total(cart["items"]), coupon, now)).model_dump()
        result = db["cart"].update_one(
            {"_id": cart["_id"], "revision": cart["revision"]},
            {"$set": {"coupon_applied": snapshot, "updated_at": now}},
        )
        if result.matched_count:
            cart["coupon_applied"] = snapshot
            return cart
    raise InvalidState("Cart was modified concurrently, try again")


def remove_coupon(db, user_id: str) -> dict:
    result = db["cart"].update_one(
        {"user_id": user_id}, {"$set": {"coupon_applied": None, "updated_at": utcnow()}}
    )
    if not result.matched_count:
        raise NotFound("Cart not found")
    return _find_cart(db, user_id)
