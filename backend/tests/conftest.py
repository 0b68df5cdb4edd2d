"""Shared pytest fixtures for test suite"""
import json
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import fakeredis
import pytest
import stripe as real_stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import wait_none

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("STRIPE_OPERATIONS_ACCOUNT_ID", "acct_operations")
os.environ.setdefault("STRIPE_REVENUE_ACCOUNT_ID", "acct_revenue")
os.environ.setdefault("OPERATOR_API_KEY", "test-operator-key")

from casefund.main import app
from casefund.db.session import get_db
from casefund.db import redis as redis_module
from casefund.models import Base, Case, Wallet
from casefund.services import stripe_service


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

# Stripe exception classes the services catch; the mocked module keeps the real ones
STRIPE_ERROR_CLASSES = (
    "StripeError", "APIConnectionError", "APIError", "RateLimitError",
    "InvalidRequestError", "CardError", "AuthenticationError", "SignatureVerificationError",
)

USER_ID = 42
OTHER_USER_ID = 43
SESSION_ID = "test-session-id"
OPERATOR_KEY = "test-operator-key"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis (lua support needed for the rate limit and lock scripts)"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry and schema creation on the real engine
        with patch("casefund.main.initialize_otel", return_value=False):
            with patch("casefund.main.instrument_sqlalchemy"):
                with patch("casefund.main.init_db"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, mock_redis) -> TestClient:
    """Client carrying a session cookie for USER_ID"""
    mock_redis.setex(f"session:{SESSION_ID}", 2592000, str(USER_ID))
    client.cookies.set("session_id", SESSION_ID)
    return client


@pytest.fixture(scope="function")
def operator_headers() -> dict:
    return {"Authorization": f"Bearer {OPERATOR_KEY}"}


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the real API"""
    with patch("casefund.services.stripe_service.stripe") as mock_stripe_module:
        for name in STRIPE_ERROR_CLASSES:
            setattr(mock_stripe_module, name, getattr(real_stripe, name))

        # Mock Checkout operations
        mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
            id="cs_test123",
            url="https://checkout.stripe.com/test"
        ))

        # Mock payout operations
        mock_stripe_module.Account.create_external_account = Mock(return_value=Mock(id="ba_test123"))
        mock_stripe_module.Payout.create = Mock(return_value=Mock(id="po_test123"))

        # Mock transfer and balance operations
        mock_stripe_module.Transfer.create = Mock(return_value=Mock(id="tr_test123"))
        mock_stripe_module.Transfer.list = Mock(return_value={"data": []})
        mock_stripe_module.Balance.retrieve = Mock(return_value={
            "available": [{"amount": 0, "currency": "eur"}],
            "pending": [{"amount": 0, "currency": "eur"}],
        })

        # Signature check passes unless a test says otherwise
        mock_stripe_module.Webhook.construct_event = Mock(return_value={})

        # No backoff sleeps between checkout retries
        with patch.object(stripe_service.create_checkout_session.retry, "wait", wait_none()):
            yield mock_stripe_module


@pytest.fixture(scope="function")
def wallet_factory(db_session: Session):
    """Create a wallet with a given balance"""
    def _create(user_id: int = USER_ID, balance: str = "0.00", reserved: str = "0.00") -> Wallet:
        wallet = Wallet(user_id=user_id, balance=Decimal(balance), reserved=Decimal(reserved))
        db_session.add(wallet)
        db_session.commit()
        db_session.refresh(wallet)
        return wallet
    return _create


@pytest.fixture(scope="function")
def open_case(db_session: Session) -> Case:
    case = Case(title="Lights over the lake", status="open", current_escrow=Decimal("0.00"))
    db_session.add(case)
    db_session.commit()
    db_session.refresh(case)
    return case


def build_payment_event(
    event_id: str,
    metadata: dict,
    payment_intent: str = "pi_test123",
    amount_cents: int = None,
    event_type: str = "checkout.session.completed",
) -> dict:
    """Stripe event envelope for a completed payment"""
    if event_type == "checkout.session.completed":
        obj = {
            "id": f"cs_{event_id}",
            "object": "checkout.session",
            "payment_intent": payment_intent,
            "payment_status": "paid",
            "metadata": metadata,
        }
        if amount_cents is not None:
            obj["amount_total"] = amount_cents
    else:
        obj = {"id": payment_intent, "object": "payment_intent", "metadata": metadata}
        if amount_cents is not None:
            obj["amount_received"] = amount_cents
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def as_payload(event: dict) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture(scope="function")
def payment_event():
    """Factory for payment events; see build_payment_event"""
    return build_payment_event


def deposit_metadata(amount: str = "100.00", user_id: int = USER_ID) -> dict:
    return {"type": "wallet_deposit", "user_id": str(user_id), "amount": amount, "platform_fee": "0.00", "net_amount": amount}


def donation_metadata(case_id, amount: str = "50.00", fee: str = "5.00", net: str = "45.00", user_id: int = USER_ID) -> dict:
    return {
        "type": "case_donation", "user_id": str(user_id), "case_id": str(case_id),
        "amount": amount, "platform_fee": fee, "net_amount": net,
    }
