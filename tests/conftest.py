from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from fakes import FakePaymentProvider, RecordingSink
from stockkeeper.config import settings
from stockkeeper.database import create_db_engine, init_db
from stockkeeper.models.cart import Address, Cart, CartItem
from stockkeeper.schemas.product import ProductCreate
from stockkeeper.services import audit_service, product_service


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'stockkeeper_test.db'}"


@pytest.fixture
def test_engine(db_url):
    engine = create_db_engine(db_url, lock_timeout=5)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def test_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def audit_sink(monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)
    sink = RecordingSink()
    previous = audit_service.dispatcher.sinks
    audit_service.dispatcher.set_sinks([sink])
    yield sink
    audit_service.dispatcher.drain()
    audit_service.dispatcher.set_sinks(previous)


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def make_product(test_db):
    counter = {"n": 0}

    def _make(stock=10, price="20.00", **kwargs):
        counter["n"] += 1
        data = ProductCreate(
            sku=kwargs.pop("sku", f"SKU-{counter['n']:03d}"),
            name=kwargs.pop("name", f"Product {counter['n']}"),
            price=Decimal(price),
            initial_stock=stock,
            **kwargs,
        )
        return product_service.create_product(test_db, data)

    return _make


@pytest.fixture
def address(test_db):
    addr = Address(
        user_id="user-1", full_name="Ada Buyer", line1="1 High St", city="Columbus", state="OH", zip_code="43004",
    )
    test_db.add(addr)
    test_db.commit()
    return addr


@pytest.fixture
def fill_cart(test_db):
    def _fill(user_id, lines):
        cart = test_db.query(Cart).filter(Cart.user_id == user_id).first()
        if not cart:
            cart = Cart(user_id=user_id)
            test_db.add(cart)
            test_db.flush()
        for product, quantity in lines:
            cart.items.append(CartItem(product_id=product.id, quantity=quantity, price_at_add=product.price))
        test_db.commit()
        return cart

    return _fill
