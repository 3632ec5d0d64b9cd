"""Shared test fixtures for the marketpay test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, payouts inline)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: vendor, product with stock, commission policies and a
  claimed, verified order (O1: 100.00 USD, one unit of P1)
- api_headers: Authorization header for the internal /api/* routes
- gateway_response: builds a fake requests.Response
- sign: HMAC-SHA256 hex signature helper for webhook bodies
- order_factory: insert additional orders
"""

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from marketpay import create_app
from marketpay.extensions import db as _db
from marketpay.models.commission import CommissionConfig
from marketpay.models.inventory import InventoryItem
from marketpay.models.order import Order, OrderItem
from marketpay.models.vendor import Product, Vendor
from marketpay.services.gateway_auth import clear_token_cache


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        clear_token_cache()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def api_headers(app):
    return {"Authorization": f"Bearer {app.config['INTERNAL_API_KEY']}"}


@pytest.fixture
def gateway_response():
    """Factory for fake requests.Response objects."""

    def _make(status_code=200, json_data=None, text=None):
        response = MagicMock()
        response.status_code = status_code
        response.ok = 200 <= status_code < 300
        if json_data is None:
            response.json.side_effect = ValueError("No JSON")
            response.text = text or ""
        else:
            response.json.return_value = json_data
            response.text = text if text is not None else json.dumps(json_data)
        return response

    return _make


@pytest.fixture
def sign():
    """Return a function computing the hex HMAC-SHA256 of a body."""

    def _sign(body, secret):
        if isinstance(body, str):
            body = body.encode("utf-8")
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    return _sign


def make_order(vendor_id, product_id, quantity=1, total="100.00", reference="O1",
               user_id="user-1", email_verified=True, status="pending"):
    """Insert an order with one line item. Returns the Order (committed)."""
    order = Order(
        order_reference=reference,
        total=Decimal(total),
        currency="USD",
        vendor_id=vendor_id,
        user_id=user_id,
        customer_email="buyer@example.com",
        email_verified=email_verified,
        status=status,
    )
    order.items.append(OrderItem(
        product_id=product_id, quantity=quantity, unit_price=Decimal(total), position=0,
    ))
    _db.session.add(order)
    _db.session.commit()
    return order


@pytest.fixture
def order_factory(db_session):
    """Factory inserting extra orders (see make_order)."""
    return make_order


@pytest.fixture
def seed_data(app, db_session):
    """Seed a vendor (V1), a product (P1, stock 5), policies and order O1.

    Policies: V1 vendor config 10%, platform default 5%.
    Returns a dict of plain ids so tests can re-fetch after requests.
    """
    vendor = Vendor(
        name="Vendor One",
        owner_id="vendor-owner-1",
        metadata_={"payout_recipient_id": "rcp_v1"},
    )
    product = Product(name="Product One", category_id="cat-1")
    _db.session.add_all([vendor, product])
    _db.session.flush()

    inventory = InventoryItem(product_id=product.id, vendor_id=vendor.id, quantity=5, reserved=0)
    vendor_config = CommissionConfig(
        entity_type="vendor", entity_id=vendor.id, is_percentage=True, rate=Decimal("10.000"),
    )
    platform_config = CommissionConfig(
        entity_type="platform", is_percentage=True, rate=Decimal("5.000"),
    )
    _db.session.add_all([inventory, vendor_config, platform_config])
    _db.session.commit()

    order = make_order(vendor.id, product.id)

    return {
        "vendor_id": vendor.id,
        "product_id": product.id,
        "category_id": "cat-1",
        "inventory_id": inventory.id,
        "vendor_config_id": vendor_config.id,
        "platform_config_id": platform_config.id,
        "order_id": order.id,
        "order_reference": order.order_reference,
        "user_id": order.user_id,
        "owner_id": vendor.owner_id,
    }
