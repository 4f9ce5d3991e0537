"""
Catalog store

Products, variants and categories, plus the stock primitives the order
engine relies on. Stock is only ever changed through decrement_if_available,
release_stock and restocking, all relative `$inc` updates; application code
never writes a stock value it has read.
"""
from datetime import datetime
from typing import List, Optional

import structlog
from pymongo import ReturnDocument, UpdateOne
from pymongo.errors import DuplicateKeyError

import pricing
from database import create_document, get_documents, oid, to_str_id, utcnow
from errors import InsufficientStock, NotFound, ValidationError
from schemas import CategoryOffer, Category, Product, Variant

logger = structlog.get_logger(__name__)

# ---------- Categories ----------

def create_category(db, payload: Category) -> dict:
    category_id = create_document(db, "category", payload)
    return to_str_id(db["category"].find_one({"_id": oid(category_id)}))


def list_categories(db) -> List[dict]:
    return [to_str_id(c) for c in get_documents(db, "category")]


def get_category(db, category_id: str) -> dict:
    category = db["category"].find_one({"_id": oid(category_id)})
    if not category:
        raise NotFound("Category not found")
    return category


def reprice_category(db, category: dict, now: datetime) -> int:
    """Recompute offer_price for every product/variant in the category."""
    offer = category.get("offer")
    repriced = 0
    for product in db["product"].find({"category": str(category["_id"])}):
        if product.get("variants"):
            variant_ids = [oid(v) for v in product["variants"]]
            for variant in db["variant"].find({"_id": {"$in": variant_ids}}):
                db["variant"].update_one(
                    {"_id": variant["_id"]},
                    {"$set": {"offer_price": pricing.effective_price(variant["price"], offer, now), "updated_at": now}},
                )
                repriced += 1
        elif product.get("price") is not None:
            db["product"].update_one(
                {"_id": product["_id"]},
                {"$set": {"offer_price": pricing.effective_price(product["price"], offer, now), "updated_at": now}},
            )
            repriced += 1
    return repriced


def set_category_offer(db, category_id: str, offer: CategoryOffer, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    category = get_category(db, category_id)
    category["offer"] = offer.model_dump()
    db["category"].update_one({"_id": category["_id"]}, {"$set": {"offer": category["offer"], "updated_at": now}})
    reprice_category(db, category, now)
    return to_str_id(category)


def remove_category_offer(db, category_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    category = get_category(db, category_id)
    category["offer"] = None
    db["category"].update_one({"_id": category["_id"]}, {"$set": {"offer": None, "updated_at": now}})
    reprice_category(db, category, now)
    return to_str_id(category)


def clear_expired_offers(db, now: Optional[datetime] = None) -> int:
    """Drop offers whose end_date has passed and restore base pricing."""
    now = now or utcnow()
    cleared = 0
    for category in db["category"].find({"offer": {"$ne": None}}):
        if not pricing.offer_expired(category["offer"], now):
            continue
        db["category"].update_one({"_id": category["_id"]}, {"$set": {"offer": None, "updated_at": now}})
        category["offer"] = None
        reprice_category(db, category, now)
        cleared += 1
    logger.info("offer_sweep", cleared=cleared)
    return cleared

# ---------- Products ----------

def create_product(db, product: Product, variants: List[Variant], now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    category = get_category(db, product.category)
    offer = category.get("offer")

    doc = product.model_dump()
    doc["variants"] = []
    if variants:
        doc.update(price=None, offer_price=None, stock=None)
    else:
        if product.price is None or product.stock is None:
            raise ValidationError("price and stock are required for a product without variants")
        doc["offer_price"] = pricing.effective_price(product.price, offer, now)

    product_id = create_document(db, "product", doc)

    variant_ids = []
    for variant in variants:
        vdoc = variant.model_dump()
        vdoc["product_id"] = product_id
        vdoc["offer_price"] = pricing.effective_price(variant.price, offer, now)
        try:
            variant_ids.append(create_document(db, "variant", vdoc))
        except DuplicateKeyError:
            db["variant"].delete_many({"_id": {"$in": [oid(v) for v in variant_ids]}})
            db["product"].delete_one({"_id": oid(product_id)})
            raise ValidationError(f"SKU {variant.sku} already exists")

    if variant_ids:
        db["product"].update_one({"_id": oid(product_id)}, {"$set": {"variants": variant_ids}})
    return get_product(db, product_id)


def list_products(db, category: Optional[str] = None, limit: int = 50) -> List[dict]:
    filt = {}
    if category:
        filt["category"] = category
    return [to_str_id(p) for p in get_documents(db, "product", filt, limit)]


def get_product(db, product_id: str) -> dict:
    product = db["product"].find_one({"_id": oid(product_id)})
    if not product:
        raise NotFound("Product not found")
    result = to_str_id(product)
    if product.get("variants"):
        variants = db["variant"].find({"_id": {"$in": [oid(v) for v in product["variants"]]}})
        result["variants"] = [to_str_id(v) for v in variants]
    return result


def _restock(restock: Optional[int]) -> dict:
    # stock is only ever moved relative to its current value
    return {"$inc": {"stock": restock}} if restock else {}


def update_product(db, product_id: str, changes: dict, now: Optional[datetime] = None) -> dict:
    """
    Apply a partial update. offer_price is re-derived from the (possibly new)
    category's offer; `restock` adds units instead of overwriting stock.
    """
    now = now or utcnow()
    product = db["product"].find_one({"_id": oid(product_id)})
    if not product:
        raise NotFound("Product not found")
    changes = dict(changes)
    restock = changes.pop("restock", None)
    for field in ("name", "category", "price"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be empty")
    if product.get("variants") and ("price" in changes or restock):
        raise ValidationError("Price and stock of a product with variants are set on its variants")

    category = get_category(db, changes.get("category", product["category"]))
    offer = category.get("offer")
    if not product.get("variants"):
        changes["offer_price"] = pricing.effective_price(changes.get("price", product["price"]), offer, now)
    elif changes.get("category", product["category"]) != product["category"]:
        for variant in db["variant"].find({"_id": {"$in": [oid(v) for v in product["variants"]]}}):
            db["variant"].update_one(
                {"_id": variant["_id"]},
                {"$set": {"offer_price": pricing.effective_price(variant["price"], offer, now), "updated_at": now}},
            )

    changes["updated_at"] = now
    db["product"].update_one({"_id": product["_id"]}, {"$set": changes, **_restock(restock)})
    logger.info("product_updated", product_id=product_id, fields=sorted(changes))
    return get_product(db, product_id)


def update_variant(db, variant_id: str, changes: dict, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    variant = db["variant"].find_one({"_id": oid(variant_id)})
    if not variant:
        raise NotFound("Variant not found")
    changes = dict(changes)
    restock = changes.pop("restock", None)
    if "price" in changes:
        if changes["price"] is None:
            raise ValidationError("price cannot be empty")
        product = db["product"].find_one({"_id": oid(variant["product_id"])})
        offer = get_category(db, product["category"]).get("offer") if product else None
        changes["offer_price"] = pricing.effective_price(changes["price"], offer, now)
    changes["updated_at"] = now
    try:
        updated = db["variant"].find_one_and_update(
            {"_id": variant["_id"]},
            {"$set": changes, **_restock(restock)},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ValidationError(f"SKU {changes.get('sku')} already exists")
    return to_str_id(updated)


def delete_product(db, product_id: str) -> None:
    """Delete a product with its variants and ratings. Orders keep their own snapshot lines."""
    product = db["product"].find_one_and_delete({"_id": oid(product_id)})
    if not product:
        raise NotFound("Product not found")
    db["variant"].delete_many({"product_id": product_id})
    db["rating"].delete_many({"product_id": product_id})
    logger.info("product_deleted", product_id=product_id, variants=len(product.get("variants", [])))


def delete_variant(db, product_id: str, variant_id: str) -> None:
    variant = db["variant"].find_one_and_delete({"_id": oid(variant_id), "product_id": product_id})
    if not variant:
        raise NotFound("Variant not found or does not belong to the specified product")
    db["product"].update_one({"_id": oid(product_id)}, {"$pull": {"variants": variant_id}})
    logger.info("variant_deleted", product_id=product_id, variant_id=variant_id)


def resolve_target(db, product_id: Optional[str] = None, variant_id: Optional[str] = None) -> dict:
    """
    Find the purchasable thing a request points at. A variant id wins over a
    product id; a product that has variants cannot be bought without one.
    """
    if variant_id:
        variant = db["variant"].find_one({"_id": oid(variant_id)})
        if not variant:
            raise NotFound("Variant not found")
        product = db["product"].find_one({"_id": oid(variant["product_id"])})
        if not product:
            raise NotFound("Product not found")
        if product_id and product_id != str(product["_id"]):
            raise ValidationError("Variant does not belong to product")
        return {
            "product_id": str(product["_id"]),
            "variant_id": str(variant["_id"]),
            "name": f"{product['name']} ({variant['sku']})",
            "price": variant["price"],
            "offer_price": variant.get("offer_price"),
        }

    if not product_id:
        raise ValidationError("product_id or variant_id is required")
    product = db["product"].find_one({"_id": oid(product_id)})
    if not product:
        raise NotFound("Product not found")
    if product.get("variants"):
        raise ValidationError(f"Select a variant of {product['name']}")
    return {
        "product_id": str(product["_id"]),
        "variant_id": None,
        "name": product["name"],
        "price": product["price"],
        "offer_price": product.get("offer_price"),
    }

# ---------- Stock ----------

def _stock_ref(line: dict):
    if line.get("variant_id"):
        return "variant", oid(line["variant_id"])
    return "product", oid(line["product_id"])


def decrement_if_available(db, collection_name: str, doc_id, quantity: int) -> Optional[dict]:
    """
    Take `quantity` units in one conditional update. Returns the document as it
    was before the decrement, or None when stock was short (or the doc is gone).
    """
    return db[collection_name].find_one_and_update(
        {"_id": doc_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )


def reserve_stock(db, lines: List[dict]) -> List[dict]:
    """
    Decrement stock for every line or for none of them. Returns order lines
    priced from the documents the decrements were applied to.
    """
    reserved = []
    try:
        for line in lines:
            collection_name, doc_id = _stock_ref(line)
            before = decrement_if_available(db, collection_name, doc_id, line["quantity"])
            if before is None:
                logger.info("stock_insufficient", product_id=line["product_id"],
                            variant_id=line.get("variant_id"), requested=line["quantity"])
                raise InsufficientStock(f"Insufficient stock for {line.get('name', line['product_id'])}")
            reserved.append({
                "product_id": line["product_id"],
                "variant_id": line.get("variant_id"),
                "quantity": line["quantity"],
                "price": pricing.unit_price(before),
            })
    except Exception:
        if reserved:
            release_stock(db, reserved)
        raise
    return reserved


def release_stock(db, lines: List[dict]) -> None:
    """Give back exactly the quantities recorded on the lines."""
    requests = {}
    for line in lines:
        collection_name, doc_id = _stock_ref(line)
        requests.setdefault(collection_name, []).append(
            UpdateOne({"_id": doc_id}, {"$inc": {"stock": line["quantity"]}})
        )
    for collection_name, ops in requests.items():
        db[collection_name].bulk_write(ops, ordered=False)
