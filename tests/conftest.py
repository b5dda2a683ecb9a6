"""Shared pytest fixtures for the checkout service tests."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RUN_MIGRATIONS", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pharmacy_checkout.api.auth import create_access_token
from pharmacy_checkout.api.deps import get_gateway
from pharmacy_checkout.application.finalizer import OrderFinalizer
from pharmacy_checkout.application.service import PaymentService
from pharmacy_checkout.domain.enums import OrderStatus, PaymentMethod, PaymentStatus, TransactionStatus
from pharmacy_checkout.domain.models import Base, CartItem, Order, Transaction
from pharmacy_checkout.infrastructure.daraja import DarajaClient
from pharmacy_checkout.infrastructure.db import get_db
from pharmacy_checkout.infrastructure.token_cache import AccessTokenCache
from pharmacy_checkout.main import app
from fakes import FIXED_NOW, PASSKEY, SHORT_CODE, FakeDaraja


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'checkout.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def fake_daraja():
    return FakeDaraja()

@pytest.fixture
def gateway(fake_daraja):
    client = DarajaClient(
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        short_code=SHORT_CODE,
        passkey=PASSKEY,
        callback_url="https://shop.example.com/mpesa/callback",
        base_url="https://sandbox.test",
        timeout=5.0,
        transport=fake_daraja.transport,
        now=lambda: FIXED_NOW,
    )
    client.token_cache = AccessTokenCache(client.fetch_access_token)
    return client

@pytest.fixture
def payments(db, gateway):
    return PaymentService(db, gateway)

@pytest.fixture
def finalizer(db, payments):
    return OrderFinalizer(db, payments)

@pytest.fixture
def make_order(db):
    def _make(user_id=1, items=None, total=Decimal("500"), status=OrderStatus.PENDING, method=PaymentMethod.MOBILE_MONEY):
        items = items if items is not None else [
            {"product_id": 11, "quantity": 2, "price": "150.00"},
            {"product_id": 12, "quantity": 1, "price": "200.00"},
        ]
        order = Order(
            user_id=user_id,
            status=status,
            payment_status=PaymentStatus.PENDING,
            payment_method=method,
            subtotal=total,
            shipping_cost=Decimal("0"),
            total_amount=total,
            items_payload=json.dumps(items),
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order
    return _make

@pytest.fixture
def pending_transaction(db, make_order):
    """An order with a PENDING transaction, as left by an accepted push"""
    def _make(checkout_request_id="ws_CO_PENDING_1", user_id=1):
        order = make_order(user_id=user_id)
        transaction = Transaction(
            checkout_request_id=checkout_request_id,
            merchant_request_id="29115-34620561-1",
            order_id=order.id,
            user_id=user_id,
            status=TransactionStatus.PENDING,
            amount=Decimal("500"),
            phone_number="254712345678",
        )
        db.add(transaction)
        order.checkout_request_id = checkout_request_id
        db.commit()
        db.refresh(transaction)
        return order, transaction
    return _make

@pytest.fixture
def add_cart_items(db):
    def _add(user_id, *product_ids):
        for product_id in product_ids:
            db.add(CartItem(user_id=user_id, product_id=product_id, quantity=1))
        db.commit()
    return _add

@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()

@pytest.fixture
def auth_headers():
    def _headers(user_id=1, role="CUSTOMER"):
        return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}
    return _headers
