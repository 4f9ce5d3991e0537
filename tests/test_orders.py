from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import cart
import catalog
import coupons
import orders
from database import create_document, utcnow
from errors import (
    CouponNotApplicable,
    Forbidden,
    InsufficientStock,
    InvalidState,
    InvalidStatus,
    InvalidStatusTransition,
    NotFound,
    OrderNotFound,
    ValidationError,
)
from schemas import Category, Coupon, User


def line(product, quantity=1, variant_id=None):
    return {"product_id": product["id"], "variant_id": variant_id, "quantity": quantity}


def test_place_order_takes_stock_and_snapshots_price(db, make_product, stock_of):
    product = make_product(price=100.0, stock=10)
    order = orders.place_order(db, "u1", [line(product, 3)])

    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["total_amount"] == 300.0
    assert order["items"][0]["price"] == 100.0
    assert stock_of("product", product["id"]) == 7


def test_order_price_uses_offer_price(db, make_product, offer_category):
    product = make_product(price=200.0, category_id=offer_category["id"])
    order = orders.place_order(db, "u1", [line(product, 2)])
    assert order["total_amount"] == 340.0


def test_variant_stock_is_taken_from_variant(db, make_product, stock_of):
    shirt = make_product(name="Shirt", variants=[{"sku": "SH-1", "price": 25.0, "stock": 4}])
    variant_id = shirt["variants"][0]["id"]
    order = orders.place_order(db, "u1", [{"variant_id": variant_id, "quantity": 3}])
    assert order["items"][0]["product_id"] == shirt["id"]
    assert order["items"][0]["variant_id"] == variant_id
    assert stock_of("variant", variant_id) == 1


def test_insufficient_stock_changes_nothing(db, make_product, stock_of):
    product = make_product(stock=2)
    with pytest.raises(InsufficientStock):
        orders.place_order(db, "u1", [line(product, 3)])
    assert stock_of("product", product["id"]) == 2
    assert db["order"].count_documents({}) == 0


def test_failed_line_rolls_back_earlier_lines(db, make_product, stock_of):
    plenty = make_product(name="Plenty", stock=10)
    scarce = make_product(name="Scarce", stock=1)
    with pytest.raises(InsufficientStock, match="Scarce"):
        orders.place_order(db, "u1", [line(plenty, 2), line(scarce, 5)])
    assert stock_of("product", plenty["id"]) == 10
    assert stock_of("product", scarce["id"]) == 1


@pytest.mark.parametrize("attempts,stock", [(20, 3), (2, 4), (8, 8)])
def test_concurrent_orders_never_oversell(db, make_product, stock_of, attempts, stock):
    product = make_product(stock=stock)

    def buy(i):
        try:
            orders.place_order(db, f"u{i}", [line(product, 1)])
            return True
        except InsufficientStock:
            return False

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        successes = sum(pool.map(buy, range(attempts)))

    assert successes == min(attempts, stock)
    assert stock_of("product", product["id"]) == stock - successes
    assert db["order"].count_documents({}) == successes


def test_duplicate_lines_are_merged(db, make_product, stock_of):
    product = make_product(stock=5)
    order = orders.place_order(db, "u1", [line(product, 1), line(product, 2)])
    assert len(order["items"]) == 1
    assert order["items"][0]["quantity"] == 3
    assert stock_of("product", product["id"]) == 2


def test_unknown_product(db):
    with pytest.raises(NotFound):
        orders.place_order(db, "u1", [{"product_id": str(ObjectId()), "quantity": 1}])


def test_checkout_from_cart_applies_coupon_and_clears_cart(db, make_product, stock_of):
    product = make_product(price=500.0, stock=5)
    coupons.create_coupon(db, Coupon(code="TAKE50", discount_type="fixed", discount_amount=50,
                                     expiry_date=utcnow() + timedelta(days=1)))
    cart.add_item(db, "u1", 2, product_id=product["id"])
    cart.apply_coupon(db, "u1", "TAKE50")

    order = orders.place_order(db, "u1")
    assert order["subtotal"] == 1000.0
    assert order["discount"] == 50
    assert order["total_amount"] == 950.0
    assert order["coupon"]["code"] == "TAKE50"
    assert stock_of("product", product["id"]) == 3

    emptied = db["cart"].find_one({"user_id": "u1"})
    assert emptied["items"] == []
    assert emptied["total_price"] == 0
    assert emptied["coupon_applied"] is None


def test_checkout_with_empty_cart(db):
    with pytest.raises(ValidationError, match="empty"):
        orders.place_order(db, "u1")


def test_cancel_restores_exact_stock(db, make_product, stock_of):
    a = make_product(name="A", stock=10)
    b = make_product(name="B", stock=4)
    order = orders.place_order(db, "u1", [line(a, 4), line(b, 4)])
    assert stock_of("product", b["id"]) == 0

    cancelled = orders.cancel_order(db, order["id"], "u1")
    assert cancelled["status"] == "cancelled"
    assert stock_of("product", a["id"]) == 10
    assert stock_of("product", b["id"]) == 4


def test_cancel_by_someone_else_is_forbidden(db, make_product, stock_of):
    product = make_product(stock=5)
    order = orders.place_order(db, "u1", [line(product, 2)])
    with pytest.raises(Forbidden):
        orders.cancel_order(db, order["id"], "intruder")
    assert stock_of("product", product["id"]) == 3


def test_cancel_only_pending(db, make_product, stock_of):
    product = make_product(stock=5)
    order = orders.place_order(db, "u1", [line(product, 2)])
    orders.update_status(db, order["id"], "processed", "order")
    with pytest.raises(InvalidState):
        orders.cancel_order(db, order["id"], "u1")
    assert stock_of("product", product["id"]) == 3


def test_cancel_twice_restores_once(db, make_product, stock_of):
    product = make_product(stock=5)
    order = orders.place_order(db, "u1", [line(product, 2)])
    orders.cancel_order(db, order["id"], "u1")
    with pytest.raises(InvalidState):
        orders.cancel_order(db, order["id"], "u1")
    assert stock_of("product", product["id"]) == 5


def test_order_status_lifecycle(db, make_product):
    order = orders.place_order(db, "u1", [line(make_product())])
    for status in ("processed", "shipped", "delivered", "onrefund", "refunded"):
        order = orders.update_status(db, order["id"], status, "order")
        assert order["status"] == status


@pytest.mark.parametrize("path,bad", [
    ((), "refunded"),
    (("processed",), "cancelled"),
    (("processed", "shipped"), "processed"),
    (("delivered",), "pending"),
])
def test_illegal_order_transitions(db, make_product, path, bad):
    order = orders.place_order(db, "u1", [line(make_product())])
    for status in path:
        orders.update_status(db, order["id"], status, "order")
    with pytest.raises(InvalidStatusTransition):
        orders.update_status(db, order["id"], bad, "order")


def test_payment_status_machine(db, make_product):
    order = orders.place_order(db, "u1", [line(make_product())])
    with pytest.raises(InvalidStatusTransition):
        orders.update_status(db, order["id"], "refunded", "payment")
    order = orders.update_status(db, order["id"], "paid", "payment")
    assert order["payment_status"] == "paid"
    assert order["status"] == "pending"
    order = orders.update_status(db, order["id"], "onrefund", "payment")
    order = orders.update_status(db, order["id"], "refunded", "payment")
    assert order["payment_status"] == "refunded"


def test_status_validation(db, make_product):
    order = orders.place_order(db, "u1", [line(make_product())])
    with pytest.raises(InvalidStatus):
        orders.update_status(db, order["id"], "lost", "order")
    with pytest.raises(InvalidStatus):
        orders.update_status(db, order["id"], "shipped", "payment")
    with pytest.raises(ValidationError):
        orders.update_status(db, order["id"], "paid", "invoice")
    with pytest.raises(OrderNotFound):
        orders.update_status(db, str(ObjectId()), "processed", "order")


def test_admin_cancellation_restores_stock(db, make_product, stock_of):
    product = make_product(stock=5)
    order = orders.place_order(db, "u1", [line(product, 5)])
    orders.update_status(db, order["id"], "cancelled", "order")
    assert stock_of("product", product["id"]) == 5


def test_order_joins_product_and_user(db, make_product):
    user_id = create_document(db, "user", User(name="Asha", email="asha@example.com"))
    product = make_product(name="Speaker")
    order = orders.place_order(db, user_id, [line(product)])
    fetched = orders.get_order(db, order["id"])
    assert fetched["user"]["email"] == "asha@example.com"
    assert fetched["items"][0]["product"]["name"] == "Speaker"


def test_filter_orders(db, make_product):
    audio = make_product(name="Speaker")
    books = catalog.create_category(db, Category(name="Books"))
    novel = make_product(name="Novel", category_id=books["id"])
    first = orders.place_order(db, "u1", [line(audio)])
    second = orders.place_order(db, "u2", [line(novel)])
    orders.update_status(db, second["id"], "processed", "order")

    by_category = orders.filter_orders(db, category=books["id"])
    assert [o["id"] for o in by_category] == [second["id"]]
    by_status = orders.filter_orders(db, status="pending")
    assert [o["id"] for o in by_status] == [first["id"]]
    assert [o["id"] for o in orders.get_user_orders(db, "u1")] == [first["id"]]
    with pytest.raises(InvalidStatus):
        orders.filter_orders(db, status="misplaced")


def test_soft_deleted_orders_are_hidden(db, make_product):
    order = orders.place_order(db, "u1", [line(make_product())])
    orders.delete_order(db, order["id"])
    assert db["order"].find_one({})["is_deleted"] is True
    with pytest.raises(OrderNotFound):
        orders.get_order(db, order["id"])
    assert orders.get_user_orders(db, "u1") == []
    with pytest.raises(OrderNotFound):
        orders.delete_order(db, order["id"])


def test_coupon_failing_at_checkout_gives_stock_back(db, make_product, stock_of):
    product = make_product(price=500.0, stock=5)
    coupon = coupons.create_coupon(db, Coupon(code="TAKE50", discount_type="fixed", discount_amount=50,
                                              expiry_date=utcnow() + timedelta(days=1)))
    cart.add_item(db, "u1", 2, product_id=product["id"])
    cart.apply_coupon(db, "u1", "TAKE50")
    coupons.edit_coupon(db, coupon["id"], {"expiry_date": utcnow() - timedelta(days=1)})

    with pytest.raises(CouponNotApplicable, match="expired"):
        orders.place_order(db, "u1")
    assert stock_of("product", product["id"]) == 5
    assert db["order"].count_documents({}) == 0
    assert len(db["cart"].find_one({"user_id": "u1"})["items"]) == 1


class RecordingLogger:
    def __init__(self):
        self.events = []

    def error(self, event, **kw):
        self.events.append((event, kw))

    info = warning = error


def test_failed_stock_release_on_cancel_is_logged(db, make_product, monkeypatch):
    order = orders.place_order(db, "u1", [line(make_product(stock=5), 2)])

    def fail(*args, **kwargs):
        raise PyMongoError("connection reset")

    recorder = RecordingLogger()
    monkeypatch.setattr(catalog, "release_stock", fail)
    monkeypatch.setattr(orders, "logger", recorder)
    with pytest.raises(PyMongoError):
        orders.cancel_order(db, order["id"], "u1")
    assert [event for event, _ in recorder.events] == ["stock_release_failed"]
    assert recorder.events[0][1]["order_id"] == order["id"]
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "cancelled"
