"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Dict, Generator, List, Optional
from unittest.mock import patch

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ENABLE_BACKGROUND_TASKS", "false")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_live_unit_tests")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_unit_tests")
os.environ.setdefault("INTERNAL_API_KEY", "internal-test-key")
os.environ.setdefault("STRIPE_PRODUCT_TIERS", json.dumps({"prod_pro": "pro", "prod_ultra": "ultra_pro"}))

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.core.config import settings
from app.core.exceptions import BillingAPIError
from app.db import redis as redis_module
from app.db.session import get_db
from app.models import Base
from app.models.user import User
from app.services import stripe_service


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

INTERNAL_AUTH = {"Authorization": f"Bearer {settings.INTERNAL_API_KEY}"}

DAY = 24 * 60 * 60


def future_ts(days: int = 30) -> int:
    return int(time.time()) + days * DAY


def make_subscription(
    sub_id: str,
    product: str,
    status: str = "active",
    period_end: Optional[int] = None,
    trial_end: Optional[int] = None,
    created: Optional[int] = None,
    interval: str = "month",
    interval_count: int = 1,
    include_period_end: bool = True,
) -> Dict:
    """Build a Stripe subscription payload as the API returns it"""
    subscription = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "created": created or int(time.time()) - DAY,
        "trial_end": trial_end,
        "items": {
            "data": [{
                "price": {
                    "product": product,
                    "recurring": {"interval": interval, "interval_count": interval_count},
                },
            }]
        },
    }
    if include_period_end:
        subscription["current_period_end"] = period_end or future_ts()
    return subscription


def make_event(event_id: str, event_type: str, obj: Dict, created: Optional[int] = None) -> Dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "livemode": True,
        "data": {"object": obj},
    }


def sign_payload(payload: bytes, secret: str = None, timestamp: Optional[int] = None) -> str:
    """Compute a Stripe-Signature header for a payload"""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeStripe:
    """In-memory stand-in for the Stripe access functions in stripe_service"""

    def __init__(self):
        self.customers: Dict[str, Dict] = {}  # email -> customer
        self.subscriptions: Dict[str, List[Dict]] = {}  # customer id -> subscriptions
        self.full_subscriptions: Dict[str, Dict] = {}  # subscription id -> retrieve() result
        self.canceled: List[str] = []
        self.failing_emails = set()

    def add_customer(self, email: str, customer_id: str, subscriptions: List[Dict] = ()) -> Dict:
        customer = {"id": customer_id, "email": email}
        self.customers[email] = customer
        self.subscriptions[customer_id] = list(subscriptions)
        return customer

    def find_customer_by_email(self, email, user_id=None):
        if email in self.failing_emails:
            raise BillingAPIError(f"Stripe customer lookup failed for {email}")
        return self.customers.get(email)

    def retrieve_customer(self, customer_id):
        for customer in self.customers.values():
            if customer["id"] == customer_id:
                return customer
        raise BillingAPIError("No such customer", code="resource_missing")

    def list_subscriptions(self, customer_id, statuses=("active",)):
        return [s for s in self.subscriptions.get(customer_id, []) if s["status"] in statuses]

    def retrieve_subscription(self, subscription_id):
        if subscription_id in self.full_subscriptions:
            return self.full_subscriptions[subscription_id]
        for subscriptions in self.subscriptions.values():
            for subscription in subscriptions:
                if subscription["id"] == subscription_id:
                    return subscription
        raise BillingAPIError("No such subscription", code="resource_missing")

    def cancel_subscription(self, subscription_id):
        self.canceled.append(subscription_id)
        for subscriptions in self.subscriptions.values():
            for subscription in subscriptions:
                if subscription["id"] == subscription_id:
                    subscription["status"] = "canceled"
        return {"id": subscription_id, "status": "canceled"}


@pytest.fixture(scope="function", autouse=True)
def fake_stripe() -> Generator[FakeStripe, None, None]:
    """Replace all Stripe calls so no test reaches the real API"""
    fake = FakeStripe()
    with patch.object(stripe_service, "find_customer_by_email", fake.find_customer_by_email), \
            patch.object(stripe_service, "retrieve_customer", fake.retrieve_customer), \
            patch.object(stripe_service, "list_subscriptions", fake.list_subscriptions), \
            patch.object(stripe_service, "retrieve_subscription", fake.retrieve_subscription), \
            patch.object(stripe_service, "cancel_subscription", fake.cancel_subscription):
        yield fake


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    user = User(email="subscriber@example.com")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def admin_user(db_session: Session) -> User:
    user = User(email="admin@example.com", is_admin=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def auth_headers(test_user: User, mock_redis) -> Dict[str, str]:
    """Bearer headers for a live session of test_user"""
    redis_module.set_session("user-session-token", test_user.id)
    return {"Authorization": "Bearer user-session-token"}


@pytest.fixture(scope="function")
def admin_headers(admin_user: User, mock_redis) -> Dict[str, str]:
    redis_module.set_session("admin-session-token", admin_user.id)
    return {"Authorization": "Bearer admin-session-token"}
