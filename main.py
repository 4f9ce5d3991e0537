from datetime import datetime
from typing import Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

import cart
import catalog
import config
import coupons
import database
import orders
import reviews
from auth import Identity, require_roles
from database import get_db, to_str_id
from errors import ShopError
from schemas import Category, CategoryOffer, Coupon, DiscountType, Product, Rating, Variant

config.configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Storefront API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

user_only = require_roles("user")
staff_only = require_roles("admin", "seller")
admin_only = require_roles("admin")

# ---------- Error handling ----------

def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, message=exc.message)
    return _fail(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    msg = first.get("msg", "Invalid request")
    return _fail(400, f"{loc}: {msg}" if loc else msg)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("database_error", path=request.url.path, error=str(exc))
    return _fail(500, "Database error")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    return _fail(500, "Internal server error")


@app.on_event("startup")
def create_indexes():
    if database.db is not None:
        database.ensure_indexes(database.db)

# ---------- Root ----------

@app.get("/")
def root():
    return {"message": "Storefront API running"}

# ---------- Categories ----------

@app.post("/api/categories", status_code=201)
def create_category(payload: Category, db=Depends(get_db), _: Identity = Depends(admin_only)):
    category = catalog.create_category(db, payload)
    return {"success": True, "message": "Category created successfully", "category": category}


@app.get("/api/categories")
def list_categories(db=Depends(get_db)):
    return {"success": True, "message": "Categories retrieved", "categories": catalog.list_categories(db)}


@app.put("/api/categories/{category_id}/offer")
def update_category_offer(category_id: str, offer: CategoryOffer, db=Depends(get_db),
                          _: Identity = Depends(admin_only)):
    category = catalog.set_category_offer(db, category_id, offer)
    return {"success": True, "message": "Offer updated successfully", "category": category}


@app.delete("/api/categories/{category_id}/offer")
def remove_category_offer(category_id: str, db=Depends(get_db), _: Identity = Depends(admin_only)):
    category = catalog.remove_category_offer(db, category_id)
    return {"success": True, "message": "Offer removed from category", "category": category}


@app.post("/api/offers/sweep")
def sweep_offers(db=Depends(get_db), _: Identity = Depends(admin_only)):
    cleared = catalog.clear_expired_offers(db)
    return {"success": True, "message": "Expired offers cleared", "cleared": cleared}

# ---------- Products ----------

class CreateProduct(BaseModel):
    name: str
    description: Optional[str] = None
    category: str
    brand: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    variants: List[Variant] = Field(default_factory=list)


@app.post("/api/products", status_code=201)
def create_product(payload: CreateProduct, db=Depends(get_db), _: Identity = Depends(staff_only)):
    product = Product(**payload.model_dump(exclude={"variants"}))
    created = catalog.create_product(db, product, payload.variants)
    return {"success": True, "message": "Product added successfully", "product": created}


@app.get("/api/products")
def list_products(category: Optional[str] = None, limit: int = 50, db=Depends(get_db)):
    return {"success": True, "message": "Products retrieved", "products": catalog.list_products(db, category, limit)}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return {"success": True, "message": "Product retrieved", "product": catalog.get_product(db, product_id)}


class UpdateProduct(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[str]] = None
    price: Optional[float] = Field(None, ge=0)
    restock: Optional[int] = Field(None, ge=1)


class UpdateVariant(BaseModel):
    sku: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    attributes: Optional[Dict[str, str]] = None
    images: Optional[List[str]] = None
    restock: Optional[int] = Field(None, ge=1)


@app.patch("/api/products/{product_id}")
def update_product(product_id: str, payload: UpdateProduct, db=Depends(get_db), _: Identity = Depends(staff_only)):
    product = catalog.update_product(db, product_id, payload.model_dump(exclude_unset=True))
    return {"success": True, "message": "Product updated successfully", "product": product}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, variant_id: Optional[str] = None, db=Depends(get_db),
                   _: Identity = Depends(staff_only)):
    if variant_id:
        catalog.delete_variant(db, product_id, variant_id)
        return {"success": True, "message": "Variant deleted successfully"}
    catalog.delete_product(db, product_id)
    return {"success": True, "message": "Product and its variants deleted successfully"}


@app.patch("/api/variants/{variant_id}")
def update_variant(variant_id: str, payload: UpdateVariant, db=Depends(get_db), _: Identity = Depends(staff_only)):
    variant = catalog.update_variant(db, variant_id, payload.model_dump(exclude_unset=True))
    return {"success": True, "message": "Variant updated successfully", "variant": variant}

# ---------- Reviews ----------

class ReviewRequest(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    review: str = Field(..., min_length=1)


@app.post("/api/reviews", status_code=201)
def add_review(payload: ReviewRequest, db=Depends(get_db), user: Identity = Depends(user_only)):
    rating = reviews.add_or_update_rating(db, Rating(user_id=user.user_id, **payload.model_dump()))
    return {"success": True, "message": "Rating added", "rating": rating}


@app.get("/api/reviews")
def list_reviews(db=Depends(get_db), _: Identity = Depends(admin_only)):
    return {"success": True, "message": "Reviews retrieved", "reviews": reviews.list_reviews(db)}


@app.get("/api/reviews/{product_id}")
def get_product_reviews(product_id: str, db=Depends(get_db)):
    return {"success": True, "message": "Reviews retrieved", "reviews": reviews.get_product_reviews(db, product_id)}


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, db=Depends(get_db), _: Identity = Depends(admin_only)):
    reviews.delete_review(db, review_id)
    return {"success": True, "message": "Review deleted"}

# ---------- Coupons ----------

class UpdateCoupon(BaseModel):
    code: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_amount: Optional[float] = Field(None, gt=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, gt=0)
    expiry_date: Optional[datetime] = None
    description: Optional[str] = None


@app.post("/api/coupons", status_code=201)
def create_coupon(payload: Coupon, db=Depends(get_db), _: Identity = Depends(admin_only)):
    return {"success": True, "message": "Coupon created", "coupon": coupons.create_coupon(db, payload)}


@app.get("/api/coupons")
def list_coupons(db=Depends(get_db)):
    return {"success": True, "message": "Coupons retrieved", "coupons": coupons.list_coupons(db)}


@app.get("/api/coupons/search")
def search_coupons(q: str, db=Depends(get_db)):
    found = coupons.search_coupons(db, q)
    return {"success": True, "message": "Coupons retrieved", "count": len(found), "coupons": found}


@app.patch("/api/coupons/{coupon_id}")
def edit_coupon(coupon_id: str, payload: UpdateCoupon, db=Depends(get_db), _: Identity = Depends(admin_only)):
    coupon = coupons.edit_coupon(db, coupon_id, payload.model_dump(exclude_unset=True))
    return {"success": True, "message": "Coupon updated", "coupon": coupon}


@app.delete("/api/coupons/{coupon_id}")
def remove_coupon(coupon_id: str, db=Depends(get_db), _: Identity = Depends(admin_only)):
    coupons.remove_coupon(db, coupon_id)
    return {"success": True, "message": "Coupon removed successfully"}

# ---------- Cart ----------

class AddToCartRequest(BaseModel):
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: int = 1


class UpdateCartItemRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    action: str


class ApplyCouponRequest(BaseModel):
    code: str


@app.post("/api/cart/add-to-cart")
def add_to_cart(payload: AddToCartRequest, db=Depends(get_db), user: Identity = Depends(user_only)):
    updated = cart.add_item(db, user.user_id, payload.quantity, payload.product_id, payload.variant_id)
    return {"success": True, "message": "Product added to cart successfully", "cart": to_str_id(updated)}


@app.api_route("/api/cart/remove-from-cart/{product_id}", methods=["POST", "DELETE"])
def remove_from_cart(product_id: str, variant_id: Optional[str] = None, db=Depends(get_db),
                     user: Identity = Depends(user_only)):
    updated = cart.remove_item(db, user.user_id, product_id, variant_id)
    return {"success": True, "message": "Product removed from cart successfully", "cart": to_str_id(updated)}


@app.post("/api/cart/clear-cart")
def clear_cart(db=Depends(get_db), user: Identity = Depends(user_only)):
    cleared = cart.clear_cart(db, user.user_id)
    return {"success": True, "message": "Cart cleared successfully", "cart": to_str_id(cleared)}


@app.get("/api/cart/get-cart")
def get_cart(db=Depends(get_db), user: Identity = Depends(user_only)):
    return {"success": True, "message": "Cart retrieved successfully", "cart": cart.get_cart(db, user.user_id)}


@app.patch("/api/cart/update-cart-item")
def update_cart_item(payload: UpdateCartItemRequest, db=Depends(get_db), user: Identity = Depends(user_only)):
    updated = cart.update_item_quantity(db, user.user_id, payload.product_id, payload.action, payload.variant_id)
    return {"success": True, "message": "Cart updated successfully", "cart": to_str_id(updated)}


@app.post("/api/cart/apply-coupon")
def apply_coupon(payload: ApplyCouponRequest, db=Depends(get_db), user: Identity = Depends(user_only)):
    updated = cart.apply_coupon(db, user.user_id, payload.code)
    return {"success": True, "message": "Coupon applied", "cart": to_str_id(updated)}


@app.delete("/api/cart/coupon")
def remove_cart_coupon(db=Depends(get_db), user: Identity = Depends(user_only)):
    updated = cart.remove_coupon(db, user.user_id)
    return {"success": True, "message": "Coupon removed", "cart": to_str_id(updated)}

# ---------- Orders ----------

class OrderLine(BaseModel):
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class PlaceOrderRequest(BaseModel):
    items: List[OrderLine] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: str
    type: str = "order"


@app.post("/api/order/placeorder", status_code=201)
def place_order(payload: Optional[PlaceOrderRequest] = None, db=Depends(get_db),
                user: Identity = Depends(user_only)):
    items = [line.model_dump() for line in payload.items] if payload else None
    order = orders.place_order(db, user.user_id, items)
    return {"success": True, "message": "Order placed", "order": order}


@app.patch("/api/order/change-status/{order_id}")
def change_order_status(order_id: str, payload: StatusUpdateRequest, db=Depends(get_db),
                        _: Identity = Depends(staff_only)):
    order = orders.update_status(db, order_id, payload.status, payload.type)
    return {"success": True, "message": "Order status updated successfully", "order": order}


@app.post("/api/order/cancel-order/{order_id}")
def cancel_order(order_id: str, db=Depends(get_db), user: Identity = Depends(user_only)):
    order = orders.cancel_order(db, order_id, user.user_id)
    return {"success": True, "message": "Order cancelled successfully", "order": order}


@app.get("/api/order/get-orders")
def get_orders(
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    category: Optional[str] = None,
    user_id: Optional[str] = None,
    db=Depends(get_db),
    _: Identity = Depends(staff_only),
):
    found = orders.filter_orders(db, status, start_date, end_date, category, user_id)
    return {"success": True, "message": "Filtered orders retrieved successfully", "orders": found}


@app.get("/api/order/get-order/{order_id}")
def get_order(order_id: str, db=Depends(get_db), _: Identity = Depends(staff_only)):
    return {"success": True, "message": "Order details retrieved successfully", "order": orders.get_order(db, order_id)}


@app.get("/api/order/get-user-orders")
def get_user_orders(db=Depends(get_db), user: Identity = Depends(user_only)):
    found = orders.get_user_orders(db, user.user_id)
    return {"success": True, "message": "User orders retrieved successfully", "orders": found}


@app.delete("/api/order/{order_id}")
def delete_order(order_id: str, db=Depends(get_db), _: Identity = Depends(admin_only)):
    orders.delete_order(db, order_id)
    return {"success": True, "message": "Order deleted"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
