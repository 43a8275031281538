import os

# Must be set before the storefront package reads its configuration.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REALTIME_ENABLED"] = "0"

import pytest
from fastapi.testclient import TestClient

from storefront.auth import Identity, get_auth_client
from storefront.context import AppContext, QueryCache, get_change_feed
from storefront.database import Base, SessionLocal, engine
from storefront.main import app
from storefront.models import Category, Product, Profile, UserRole

ALICE = "user-alice-0001"
BOB = "user-bob-0002"
ADMIN = "user-admin-0003"


class FakeAuthClient:
    """Maps bearer tokens straight to identities."""

    def __init__(self):
        self.users = {}
        self.signed_out = []

    def add(self, token, user_id, email=None):
        self.users[token] = Identity(user_id=user_id, email=email, access_token=token)

    def get_user(self, access_token):
        return self.users.get(access_token)

    def sign_out(self, access_token):
        self.signed_out.append(access_token)


class RecordingFeed:
    def __init__(self):
        self.events = []

    def publish(self, table, event, row):
        self.events.append((table, event, row))

    def close(self):
        pass


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def auth():
    fake = FakeAuthClient()
    fake.add("alice-token", ALICE, "alice@example.com")
    fake.add("bob-token", BOB, "bob@example.com")
    fake.add("admin-token", ADMIN, "admin@example.com")
    return fake


@pytest.fixture
def feed():
    return RecordingFeed()


@pytest.fixture
def client(db, auth, feed):
    app.state.cache = QueryCache()
    app.dependency_overrides[get_auth_client] = lambda: auth
    app.dependency_overrides[get_change_feed] = lambda: feed
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def ctx(feed):
    """Context for calling operations directly as Alice."""
    return AppContext(identity=Identity(user_id=ALICE, access_token="alice-token"), cache=QueryCache(), feed=feed)


@pytest.fixture
def catalog_data(db):
    """Three products; the watch is out of stock."""
    shoes = Category(name="Shoes", slug="shoes")
    watches = Category(name="Watches", slug="watches")
    db.add_all([shoes, watches])
    db.flush()

    runner = Product(
        slug="trail-runner", name="Trail Runner", price=500.0, original_price=800.0,
        images=["https://img.example/runner.jpg"], brand="Stride", stock=5,
        is_featured=True, category_id=shoes.id, specifications={"sole_material": "rubber"},
    )
    jacket = Product(
        slug="rain-jacket", name="Rain Jacket", price=1200.0, images=[], brand="Nimbus", stock=3,
    )
    watch = Product(
        slug="field-watch", name="Field Watch", price=2500.0, original_price=2500.0,
        images=[], brand="Tempo", stock=0, category_id=watches.id,
    )
    db.add_all([runner, jacket, watch])
    db.add_all([
        Profile(id=ALICE, full_name="Alice Rao", phone="9876543210"),
        Profile(id=BOB, full_name="Bob Iyer"),
        Profile(id=ADMIN, full_name="Store Admin"),
        UserRole(user_id=ALICE, role="user"),
        UserRole(user_id=ADMIN, role="user"),
        UserRole(user_id=ADMIN, role="admin"),
    ])
    db.commit()
    return {"runner": runner.id, "jacket": jacket.id, "watch": watch.id}


VALID_ADDRESS = {
    "fullName": "Alice Rao",
    "phone": "9876543210",
    "address": "12 Lake View Road, Indiranagar",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560038",
}


@pytest.fixture
def address():
    return dict(VALID_ADDRESS)
