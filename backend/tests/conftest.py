"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Callable, Dict, Generator
from unittest.mock import Mock, patch

# Test configuration must be in place before app.core.config is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-bytes-for-hs256"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test123"
os.environ["STRIPE_PRICE_BASIC"] = "price_basic"
os.environ["STRIPE_PRICE_PRO"] = "price_pro"
os.environ["STRIPE_PRICE_ENTERPRISE"] = "price_enterprise"
os.environ["REVENUECAT_WEBHOOK_SECRET"] = "rc_test_secret"
os.environ["REVENUECAT_PRODUCT_PLANS"] = '{"collab_pro_monthly": "pro", "collab_enterprise_yearly": "enterprise"}'

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
from app.core.security import create_access_token
from app.db.session import get_db
from app.models import Base
from app.models.project import Project
from app.models.project_member import ProjectMember
from app.models.user import User
from app.services.project_service import create_project
from app.services.user_service import create_user


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

# Fixed base for event timestamps so ordering tests are deterministic
BASE_TS = 1_760_000_000


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client bound to the test database"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Session is closed by the db_session fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry in tests
        with patch('app.core.otel.initialize_otel', return_value=False):
            with patch('app.core.otel.setup_otel_logging', return_value=False):
                with patch('app.core.otel.instrument_sqlalchemy'):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        app.dependency_overrides.clear()


# ============================================================================
# USERS, PROJECTS, MEMBERSHIPS
# ============================================================================

@pytest.fixture(scope="function")
def owner(db_session: Session) -> User:
    return create_user("owner@acme.io", db_session, user_id="user-owner", display_name="Olivia Owner")


@pytest.fixture(scope="function")
def alice(db_session: Session) -> User:
    return create_user("alice@acme.io", db_session, user_id="user-alice", display_name="Alice")


@pytest.fixture(scope="function")
def bob(db_session: Session) -> User:
    return create_user("bob@acme.io", db_session, user_id="user-bob")


@pytest.fixture(scope="function")
def carol(db_session: Session) -> User:
    return create_user("carol@acme.io", db_session, user_id="user-carol", display_name="Carol")


@pytest.fixture(scope="function")
def project(db_session: Session, owner: User) -> Project:
    return create_project(owner.id, "Launch Plan", db_session, description="Q3 launch flows")


@pytest.fixture(scope="function")
def add_member(db_session: Session) -> Callable[..., ProjectMember]:
    """Insert a membership row directly, bypassing the state machine"""

    def _add(project: Project, user: User, role: str = "viewer", status: str = "accepted",
             invited_by: User = None) -> ProjectMember:
        membership = ProjectMember(
            project_id=project.id,
            user_id=user.id,
            role=role,
            status=status,
            invited_by_user_id=invited_by.id if invited_by else project.owner_id,
        )
        db_session.add(membership)
        db_session.commit()
        db_session.refresh(membership)
        return membership

    return _add


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture(scope="function")
def headers() -> Callable[[User], Dict[str, str]]:
    """Bearer headers for a user"""
    return auth_headers


# ============================================================================
# STRIPE
# ============================================================================

def stripe_subscription(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    price_id: str = "price_pro",
    status: str = "active",
    period_end: int = BASE_TS + 30 * 86400,
    cancel_at_period_end: bool = False
) -> Dict:
    """Stripe subscription object as delivered in webhook payloads"""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


def stripe_event(event_id: str, event_type: str, obj: Dict, created: int = BASE_TS) -> Dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def checkout_session(user_id: str, sub_id: str = "sub_1", customer: str = "cus_1",
                     use_client_reference: bool = False) -> Dict:
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": customer,
        "subscription": sub_id,
        "metadata": {},
        "client_reference_id": None,
    }
    if use_client_reference:
        session["client_reference_id"] = user_id
    else:
        session["metadata"] = {"user_id": user_id}
    return session


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the API"""
    with patch('app.services.stripe_service.stripe') as mock_stripe_module:
        mock_stripe_module.Subscription.retrieve = Mock(return_value=stripe_subscription())
        mock_stripe_module.Subscription.modify = Mock(return_value=stripe_subscription(cancel_at_period_end=True))
        mock_stripe_module.billing_portal.Session.create = Mock(return_value=Mock(
            url="https://billing.stripe.com/session/test"
        ))
        mock_stripe_module.Webhook.construct_event = Mock(return_value=stripe_event(
            "evt_default", "ping", {}
        ))
        yield mock_stripe_module


# ============================================================================
# REVENUECAT
# ============================================================================

def revenuecat_body(
    event_id: str,
    event_type: str,
    app_user_id: str,
    product_id: str = "collab_pro_monthly",
    environment: str = "PRODUCTION",
    event_ms: int = BASE_TS * 1000,
    expiration_ms: int = (BASE_TS + 30 * 86400) * 1000
) -> Dict:
    return {
        "api_version": "1.0",
        "event": {
            "id": event_id,
            "type": event_type,
            "app_user_id": app_user_id,
            "original_app_user_id": app_user_id,
            "product_id": product_id,
            "environment": environment,
            "event_timestamp_ms": event_ms,
            "expiration_at_ms": expiration_ms,
            "original_transaction_id": "1000000123456789",
        },
    }
