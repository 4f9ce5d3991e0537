"""Coupon store. Codes are stored upper-case so lookups are case-insensitive."""
import re
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, oid, to_str_id, utcnow
from errors import NotFound, ValidationError
from schemas import Coupon


def create_coupon(db, payload: Coupon) -> dict:
    data = payload.model_dump()
    data["code"] = data["code"].strip().upper()
    try:
        coupon_id = create_document(db, "coupon", data)
    except DuplicateKeyError:
        raise ValidationError(f"Coupon code {data['code']} already exists")
    return to_str_id(db["coupon"].find_one({"_id": oid(coupon_id)}))


def list_coupons(db) -> List[dict]:
    return [to_str_id(c) for c in get_documents(db, "coupon")]


def search_coupons(db, q: str) -> List[dict]:
    docs = db["coupon"].find({"code": {"$regex": re.escape(q.strip()), "$options": "i"}})
    return [to_str_id(c) for c in docs]


def find_by_code(db, code: str) -> Optional[dict]:
    return db["coupon"].find_one({"code": code.strip().upper()})


# fields an edit may set back to null
CLEARABLE = ("max_discount", "description")


def edit_coupon(db, coupon_id: str, changes: dict) -> dict:
    """Apply only the fields present in `changes`; a null max_discount removes the cap."""
    changes = dict(changes)
    for field, value in changes.items():
        if value is None and field not in CLEARABLE:
            raise ValidationError(f"{field} cannot be empty")
    if "code" in changes:
        changes["code"] = changes["code"].strip().upper()
    changes["updated_at"] = utcnow()
    try:
        coupon = db["coupon"].find_one_and_update(
            {"_id": oid(coupon_id)}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise ValidationError(f"Coupon code {changes['code']} already exists")
    if not coupon:
        raise NotFound("Coupon not found")
    return to_str_id(coupon)


def remove_coupon(db, coupon_id: str) -> None:
    result = db["coupon"].delete_one({"_id": oid(coupon_id)})
    if result.deleted_count == 0:
        raise NotFound("Coupon not found")
