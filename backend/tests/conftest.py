"""Shared pytest fixtures for test suite"""
import json
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fitmate.main import app
from fitmate.api.payments import get_gateway
from fitmate.db.session import get_db
from fitmate.models import Base, Role, User
from fitmate.services.errors import GatewayError, InvalidWebhookError, SessionNotFoundError
from fitmate.services.plan_registry import MembershipPlanRegistry
from fitmate.services.stripe_service import CheckoutSession, observed_event_from_session


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

VALID_SIGNATURE = "t=1700000000,v1=valid"


class FakeGateway:
    """In-memory stand-in for StripeGateway"""

    def __init__(self):
        self.sessions = {}
        self.create_calls = []
        self.fail_create = None
        self.fail_retrieve = None
        self._next_id = 0

    def create_checkout_session(self, price_id, success_url, cancel_url, metadata, customer_email=None):
        self.create_calls.append({
            "price_id": price_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
            "customer_email": customer_email,
        })
        if self.fail_create:
            raise self.fail_create
        self._next_id += 1
        session_id = f"cs_test_{self._next_id}"
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.com/c/pay/{session_id}",
            "status": "open",
            "payment_status": "unpaid",
            "amount_total": None,
            "currency": None,
            "metadata": dict(metadata),
        }
        return CheckoutSession(id=session_id, url=self.sessions[session_id]["url"])

    def complete_payment(self, session_id, amount, currency="thb"):
        """Simulate the customer paying on the hosted page"""
        session = self.sessions[session_id]
        session.update(status="complete", payment_status="paid", amount_total=amount, currency=currency)
        return session

    def retrieve_session(self, session_id):
        if self.fail_retrieve:
            raise self.fail_retrieve
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"Checkout session {session_id} not found")
        return observed_event_from_session(self.sessions[session_id], source="verify")

    def construct_event(self, payload, sig_header):
        if not sig_header:
            raise InvalidWebhookError("Missing stripe-signature header")
        if sig_header != VALID_SIGNATURE:
            raise InvalidWebhookError("Invalid signature")
        try:
            return json.loads(payload)
        except ValueError:
            raise InvalidWebhookError("Invalid payload")


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


@pytest.fixture(scope="function", autouse=True)
def default_plans():
    """Every test starts from the built-in plan table"""
    MembershipPlanRegistry.reset()
    MembershipPlanRegistry.load()
    yield
    MembershipPlanRegistry.reset()


@pytest.fixture(scope="function")
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def client(db_session: Session, fake_gateway: FakeGateway) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and fake gateway"""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture
    
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    
    try:
        with patch('fitmate.main.init_db'):
            with patch('fitmate.core.otel.initialize_otel', return_value=False):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def make_user(db_session: Session):
    """Factory: make_user(role) -> User"""
    counter = {"n": 0}

    def _make_user(role: Role = Role.USER):
        counter["n"] += 1
        user = User(
            email=f"member{counter['n']}@fitmate.test",
            name=f"Member {counter['n']}",
            role=Role(role).value,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make_user


@pytest.fixture(scope="function")
def test_user(make_user):
    return make_user(Role.USER)


@pytest.fixture(scope="function")
def webhook_event():
    """Factory for a Stripe-shaped webhook event wrapping a checkout session"""
    counter = {"n": 0}

    def _webhook_event(event_type, session, event_id=None):
        counter["n"] += 1
        return {
            "id": event_id or f"evt_test_{counter['n']}",
            "object": "event",
            "type": event_type,
            "data": {"object": dict(session)},
        }
    return _webhook_event


@pytest.fixture(scope="function")
def sql_writes():
    """Records every INSERT/UPDATE/DELETE issued against the test database"""
    statements = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            statements.append(statement)

    event.listen(test_engine, "before_cursor_execute", _record)
    try:
        yield statements
    finally:
        event.remove(test_engine, "before_cursor_execute", _record)


@pytest.fixture(scope="function")
def gateway_unavailable():
    return GatewayError("Failed to create checkout session: connection reset")


@pytest.fixture(scope="function")
def stripe_signature() -> str:
    """Signature header the fake gateway accepts"""
    return VALID_SIGNATURE
