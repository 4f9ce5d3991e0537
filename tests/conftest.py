from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import catalog
import database
from main import app
from schemas import Category, CategoryOffer, Product, Variant


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    test_db = client["storefront_test"]
    database.ensure_indexes(test_db)
    return test_db


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def category(db):
    return catalog.create_category(db, Category(name="Audio", description="Headphones and speakers"))


@pytest.fixture
def offer_category(db):
    now = database.utcnow()
    offer = CategoryOffer(
        title="Festive sale",
        discount_percentage=15,
        start_date=now - timedelta(days=1),
        end_date=now + timedelta(days=1),
    )
    return catalog.create_category(db, Category(name="Festive", offer=offer))


@pytest.fixture
def make_product(db, category):
    def _make(name="Headphones", price=100.0, stock=10, variants=None, category_id=None):
        product = Product(
            name=name,
            category=category_id or category["id"],
            price=None if variants else price,
            stock=None if variants else stock,
        )
        return catalog.create_product(db, product, [Variant(**v) for v in variants or []])
    return _make


@pytest.fixture
def stock_of(db):
    def _stock(collection_name, doc_id):
        return db[collection_name].find_one({"_id": database.oid(doc_id)})["stock"]
    return _stock
