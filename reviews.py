"""
Product ratings and reviews

A user has at most one rating per product (unique index on
(product_id, user_id)); posting again replaces it. After every write the
product's average_rating and total_ratings are recomputed from the stored
ratings rather than adjusted incrementally.
"""
from typing import List

import structlog
from pymongo import ReturnDocument

from database import oid, oid_or_none, to_str_id, utcnow
from errors import NotFound
from schemas import Rating

logger = structlog.get_logger(__name__)


def refresh_product_rating(db, product_id: str) -> dict:
    ratings = [r["rating"] for r in db["rating"].find({"product_id": product_id}, {"rating": 1})]
    total = len(ratings)
    average = round(sum(ratings) / total, 2) if total else 0
    product = db["product"].find_one_and_update(
        {"_id": oid(product_id)},
        {"$set": {"average_rating": average, "total_ratings": total}},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFound("Product not found")
    return product


def add_or_update_rating(db, payload: Rating) -> dict:
    if not db["product"].find_one({"_id": oid(payload.product_id)}, {"_id": 1}):
        raise NotFound("Product not found")
    now = utcnow()
    rating = db["rating"].find_one_and_update(
        {"product_id": payload.product_id, "user_id": payload.user_id},
        {
            "$set": {"rating": payload.rating, "review": payload.review, "updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    product = refresh_product_rating(db, payload.product_id)
    logger.info("rating_saved", product_id=payload.product_id, user_id=payload.user_id,
                average_rating=product["average_rating"])
    return to_str_id(rating)


def _with_users(db, ratings: List[dict]) -> List[dict]:
    user_ids = {oid_or_none(r["user_id"]) for r in ratings} - {None}
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": list(user_ids)}})} if user_ids else {}
    result = []
    for rating in ratings:
        doc = to_str_id(rating)
        user = users.get(rating["user_id"])
        doc["user"] = {"id": rating["user_id"], "name": user.get("name"), "email": user.get("email")} if user else None
        result.append(doc)
    return result


def get_product_reviews(db, product_id: str) -> List[dict]:
    return _with_users(db, list(db["rating"].find({"product_id": product_id})))


def list_reviews(db) -> List[dict]:
    return _with_users(db, list(db["rating"].find()))


def delete_review(db, review_id: str) -> None:
    rating = db["rating"].find_one_and_delete({"_id": oid(review_id)})
    if not rating:
        raise NotFound("Review not found")
    # the product may already be gone
    if db["product"].find_one({"_id": oid(rating["product_id"])}, {"_id": 1}):
        refresh_product_rating(db, rating["product_id"])
    logger.info("review_deleted", review_id=review_id, product_id=rating["product_id"])
