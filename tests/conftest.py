"""Shared test fixtures for the marketplace order pipeline.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off,
  tasks run inline)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: admin, two customers, a designer seller, and a small catalog
- file_app: a second app on file-backed SQLite for multi-threaded tests
- login / address / payment_proof helpers
"""

import pytest
from werkzeug.security import generate_password_hash

from marketplace import create_app
from marketplace.config import TestConfig, config_by_name
from marketplace.extensions import db as _db
from marketplace.extensions import tasks
from marketplace.models.product import Product, ProductVariant
from marketplace.models.user import User
from marketplace.services.payment_service import compute_signature

PASSWORD = "password123"
SIGNATURE_SECRET = "sig_test_secret"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        app.extensions.pop("order_transactions", None)
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def _user(email, role, full_name):
    user = User(
        email=email,
        password_hash=generate_password_hash(PASSWORD),
        full_name=full_name,
        role=role,
    )
    _db.session.add(user)
    _db.session.flush()
    return user


def seed_catalog():
    """Seed users and a catalog into the current app's database.

    Catalog:
    - tee: 500.00, stock 10, 30% commission
    - poster: 200.00, stock 5, fixed 50 per unit
    - hoodie: variants M (1200.00, stock 3) and L (stock 0)
    - draft: not approved, not published

    Returns a dict of plain IDs so tests can use them after commits.
    """
    admin = _user("admin@marketplace.test", "admin", "Admin User")
    customer = _user("customer@marketplace.test", "customer", "Casey Customer")
    other = _user("other@marketplace.test", "customer", "Other Customer")
    designer = _user("designer@marketplace.test", "designer", "Dana Designer")

    tee = Product(
        seller_id=designer.id,
        title="Graphic Tee",
        price=500,
        stock=10,
        is_approved=True,
        status="published",
        commission_type="percentage",
        commission_rate=30,
    )
    poster = Product(
        seller_id=designer.id,
        title="Poster",
        price=200,
        stock=5,
        is_approved=True,
        status="published",
        commission_type="fixed",
        commission_rate=50,
    )
    hoodie = Product(
        seller_id=designer.id,
        title="Hoodie",
        price=1000,
        stock=0,
        is_approved=True,
        status="published",
    )
    draft = Product(
        seller_id=designer.id,
        title="Unreleased Cap",
        price=300,
        stock=20,
        is_approved=False,
        status="draft",
    )
    _db.session.add_all([tee, poster, hoodie, draft])
    _db.session.flush()

    hoodie_m = ProductVariant(
        product_id=hoodie.id, sku="HOOD-M", size="M", color="grey", price=1200, stock=3
    )
    hoodie_l = ProductVariant(
        product_id=hoodie.id, sku="HOOD-L", size="L", color="grey", stock=0
    )
    _db.session.add_all([hoodie_m, hoodie_l])
    _db.session.commit()

    return {
        "admin_id": admin.id,
        "admin_email": admin.email,
        "customer_id": customer.id,
        "customer_email": customer.email,
        "other_id": other.id,
        "other_email": other.email,
        "designer_id": designer.id,
        "designer_email": designer.email,
        "tee_id": tee.id,
        "poster_id": poster.id,
        "hoodie_id": hoodie.id,
        "hoodie_m_id": hoodie_m.id,
        "hoodie_l_id": hoodie_l.id,
        "draft_id": draft.id,
    }


@pytest.fixture
def seed_data(app, db_session):
    return seed_catalog()


@pytest.fixture
def file_app(app, tmp_path, monkeypatch):
    """A second app on a file-backed SQLite database.

    The default test database is a single shared in-memory connection, so
    only a file gives each thread its own connection and transaction.
    Yields (app, seed ids).
    """
    class FileBackedConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'orders.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }

    monkeypatch.setitem(config_by_name, "testing", FileBackedConfig)
    threaded = create_app("testing")
    with threaded.app_context():
        _db.create_all()
        ids = seed_catalog()
        _db.session.remove()

    yield threaded, ids

    with threaded.app_context():
        _db.drop_all()
        _db.engine.dispose()
    # The task queue is a module-level singleton bound to the last app.
    tasks.init_app(app)


def login(client, email, password=PASSWORD):
    """Log in via the JSON auth endpoint."""
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp


def address(**overrides):
    addr = {
        "full_name": "Casey Customer",
        "street": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "postal_code": "560001",
        "country": "India",
        "phone": "+919876543210",
    }
    addr.update(overrides)
    return addr


def payment_proof(gateway_order_id="pi_test_123", gateway_payment_id="ch_test_123",
                  signature=None):
    if signature is None:
        signature = compute_signature(
            gateway_order_id, gateway_payment_id, SIGNATURE_SECRET
        )
    return {
        "gateway_order_id": gateway_order_id,
        "gateway_payment_id": gateway_payment_id,
        "signature": signature,
    }


def stripe_charge(amount_minor, charge_id="ch_test_123", intent_id="pi_test_123",
                  status="succeeded", captured=True, currency="inr"):
    """A Charge object as stripe.Charge.retrieve returns it."""
    return {
        "id": charge_id,
        "object": "charge",
        "payment_intent": intent_id,
        "status": status,
        "captured": captured,
        "amount": amount_minor,
        "currency": currency,
    }
