"""
Order engine

An order is a snapshot: lines keep the unit price read when their stock was
taken, and nothing re-prices them afterwards. Stock is taken per line with a
conditional decrement (see catalog.reserve_stock), so placing an order either
takes every line or leaves stock untouched.

Status changes are compare-and-set on the current value, so two concurrent
transitions from the same state cannot both win.
"""
from datetime import datetime
from typing import Iterable, List, Optional

import structlog
from pymongo import DESCENDING, ReturnDocument

import catalog
import coupons
import pricing
from database import create_document, oid, oid_or_none, to_str_id, utcnow
from errors import (
    CouponNotApplicable,
    Forbidden,
    InvalidState,
    InvalidStatus,
    InvalidStatusTransition,
    OrderNotFound,
    ValidationError,
)
from schemas import ORDER_STATUSES, PAYMENT_STATUSES, Order

logger = structlog.get_logger(__name__)

ORDER_TRANSITIONS = {
    "pending": {"processed", "shipped", "delivered", "cancelled"},
    "processed": {"shipped", "delivered"},
    "shipped": {"delivered"},
    "delivered": {"refunded", "onrefund"},
    "onrefund": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}

PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed"},
    "paid": {"refunded", "onrefund"},
    "onrefund": {"refunded"},
    "failed": set(),
    "refunded": set(),
}

# type discriminator -> (order field, allowed values, transitions)
STATUS_KINDS = {
    "order": ("status", ORDER_STATUSES, ORDER_TRANSITIONS),
    "payment": ("payment_status", PAYMENT_STATUSES, PAYMENT_TRANSITIONS),
}

NOT_DELETED = {"is_deleted": {"$ne": True}}


def can_transition(kind: str, current: str, new: str) -> bool:
    _, _, transitions = STATUS_KINDS[kind]
    return new in transitions.get(current, set())


def _find_order(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": oid(order_id), **NOT_DELETED})
    if not order:
        raise OrderNotFound("Order not found")
    return order


def _populate(db, orders: List[dict]) -> List[dict]:
    """Join product and user summaries onto orders."""
    product_ids = {oid_or_none(i["product_id"]) for o in orders for i in o["items"]} - {None}
    user_ids = {oid_or_none(o["user_id"]) for o in orders} - {None}
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": list(product_ids)}})} if product_ids else {}
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": list(user_ids)}})} if user_ids else {}

    result = []
    for order in orders:
        doc = to_str_id(order)
        doc["items"] = []
        for item in order["items"]:
            product = products.get(item["product_id"])
            doc["items"].append({
                **item,
                "product": {
                    "id": item["product_id"],
                    "name": product.get("name"),
                    "category": product.get("category"),
                } if product else None,
            })
        user = users.get(order["user_id"])
        doc["user"] = {"id": order["user_id"], "name": user.get("name"), "email": user.get("email")} if user else None
        result.append(doc)
    return result


def _merge_lines(lines: Iterable[dict]) -> List[dict]:
    merged = {}
    for line in lines:
        key = (line["product_id"], line["variant_id"])
        if key in merged:
            merged[key]["quantity"] += line["quantity"]
        else:
            merged[key] = dict(line)
    return list(merged.values())


def place_order(db, user_id: str, items: Optional[List[dict]] = None, now: Optional[datetime] = None) -> dict:
    """
    Place an order for `items` ({product_id, variant_id?, quantity}), or for
    the user's cart when no items are given. A cart checkout carries the cart's
    coupon and empties the cart afterwards.
    """
    now = now or utcnow()
    cart = None
    coupon_code = None
    if not items:
        cart = db["cart"].find_one({"user_id": user_id})
        if not cart or not cart.get("items"):
            raise ValidationError("Cart is empty")
        items = cart["items"]
        if cart.get("coupon_applied"):
            coupon_code = cart["coupon_applied"]["code"]

    resolved = []
    for item in items:
        if item.get("quantity", 0) < 1:
            raise ValidationError("Quantity must be at least 1")
        target = catalog.resolve_target(db, item.get("product_id"), item.get("variant_id"))
        resolved.append({**target, "quantity": item["quantity"]})

    reserved = catalog.reserve_stock(db, _merge_lines(resolved))
    try:
        subtotal = round(sum(line["quantity"] * line["price"] for line in reserved), 2)
        applied = None
        if coupon_code:
            coupon = coupons.find_by_code(db, coupon_code)
            if not coupon:
                raise CouponNotApplicable(f"Coupon {coupon_code} is no longer available")
            applied = pricing.apply_coupon(subtotal, coupon, now)
        order = Order(
            user_id=user_id,
            items=reserved,
            subtotal=subtotal,
            discount=applied["discount_amount"] if applied else 0,
            total_amount=applied["final_amount"] if applied else subtotal,
            coupon=applied,
        )
        order_id = create_document(db, "order", order)
    except Exception:
        catalog.release_stock(db, reserved)
        raise

    if cart is not None:
        result = db["cart"].update_one(
            {"_id": cart["_id"], "revision": cart["revision"]},
            {
                "$set": {"items": [], "total_price": 0, "coupon_applied": None, "updated_at": now},
                "$inc": {"revision": 1},
            },
        )
        if not result.matched_count:
            logger.warning("cart_not_cleared", user_id=user_id, order_id=order_id)

    logger.info("order_placed", order_id=order_id, user_id=user_id,
                lines=len(reserved), total_amount=order.total_amount)
    return get_order(db, order_id)


def _restore_stock(db, order: dict) -> None:
    try:
        catalog.release_stock(db, order["items"])
    except Exception:
        # the order is already cancelled; its stock has to be returned by hand
        logger.error("stock_release_failed", order_id=str(order["_id"]), items=order["items"])
        raise


def update_status(db, order_id: str, status: str, type_: str = "order", now: Optional[datetime] = None) -> dict:
    if type_ not in STATUS_KINDS:
        raise ValidationError("type must be 'order' or 'payment'")
    field, allowed, _ = STATUS_KINDS[type_]
    if status not in allowed:
        raise InvalidStatus(f"Invalid {type_} status: {status}")

    order = _find_order(db, order_id)
    current = order.get(field, "pending")
    if not can_transition(type_, current, status):
        raise InvalidStatusTransition(f"Cannot change {type_} status from {current} to {status}")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], field: current, **NOT_DELETED},
        {"$set": {field: status, "updated_at": now or utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStatusTransition(f"{type_.capitalize()} status changed while updating, reload and retry")

    if type_ == "order" and status == "cancelled":
        _restore_stock(db, updated)

    logger.info("order_status_changed", order_id=order_id, kind=type_, old=current, new=status)
    return _populate(db, [updated])[0]


def cancel_order(db, order_id: str, user_id: str, now: Optional[datetime] = None) -> dict:
    order = _find_order(db, order_id)
    if order["user_id"] != user_id:
        raise Forbidden("You are not authorized to cancel this order")
    if order.get("status") != "pending":
        raise InvalidState("Only pending orders can be cancelled")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "pending", **NOT_DELETED},
        {"$set": {"status": "cancelled", "updated_at": now or utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidState("Only pending orders can be cancelled")

    _restore_stock(db, updated)
    logger.info("order_cancelled", order_id=order_id, user_id=user_id)
    return to_str_id(updated)


def filter_orders(db, status: Optional[str] = None, start_date: Optional[datetime] = None,
                  end_date: Optional[datetime] = None, category: Optional[str] = None,
                  user_id: Optional[str] = None) -> List[dict]:
    query = dict(NOT_DELETED)
    if status:
        if status not in ORDER_STATUSES:
            raise InvalidStatus(f"Invalid order status: {status}")
        query["status"] = status
    if user_id:
        query["user_id"] = user_id
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = start_date
        if end_date:
            query["created_at"]["$lte"] = end_date
    if category:
        # orders only hold product ids, so go through the products in the category
        product_ids = [str(p["_id"]) for p in db["product"].find({"category": category}, {"_id": 1})]
        query["items.product_id"] = {"$in": product_ids}

    orders = list(db["order"].find(query).sort("created_at", DESCENDING))
    return _populate(db, orders)


def get_order(db, order_id: str) -> dict:
    return _populate(db, [_find_order(db, order_id)])[0]


def get_user_orders(db, user_id: str) -> List[dict]:
    return filter_orders(db, user_id=user_id)


def delete_order(db, order_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    order = db["order"].find_one_and_update(
        {"_id": oid(order_id), **NOT_DELETED},
        {"$set": {"is_deleted": True, "deleted_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise OrderNotFound("Order not found")
    logger.info("order_deleted", order_id=order_id)
    return to_str_id(order)
