"""Shared test fixtures for all test modules."""

import contextlib
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core import database as db_module
from app.core.database import Base, get_db
from app.models.customer import Customer
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.payment_gateway import PaymentGatewayBase, PaymentResult, RemoteSubscription

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    """Create a database session for direct service testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def gateway():
    """A gateway double that succeeds on every call."""
    mock = MagicMock(spec=PaymentGatewayBase)
    mock.name = "mock"
    mock.create_customer.return_value = "cus_test"
    mock.create_product.return_value = "prod_test"
    mock.create_price.side_effect = lambda product_id, amount, currency, unit, count: (
        f"price_{unit}_{count}_{amount}"
    )
    mock.create_subscription.return_value = "sub_remote"
    mock.update_product.return_value = True
    mock.update_subscription.return_value = True
    mock.pause_subscription.return_value = True
    mock.resume_subscription.return_value = True
    mock.cancel_subscription.return_value = True
    mock.deactivate_price.return_value = True
    mock.delete_product.return_value = True
    mock.validate_payment_method.return_value = True
    mock.get_subscription.return_value = RemoteSubscription(
        remote_id="sub_remote", status="active", current_period_end=None
    )
    mock.process_payment.return_value = PaymentResult(
        status="succeeded", remote_payment_id="pi_test"
    )
    return mock


@pytest.fixture
def customer(db_session):
    customer = Customer(external_id="cust-001", name="Ada Lovelace", email="ada@example.com")
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture
def plan(db_session):
    plan = SubscriptionPlan(
        name="Pro",
        description="Pro plan",
        price=Decimal("30.00"),
        currency="usd",
        billing_cycle="monthly",
        is_active=True,
        trial_allowed=False,
        trial_duration_days=0,
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture
def make_subscription(db_session, customer, plan):
    """Factory for subscriptions in an arbitrary status."""

    def _make(
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        next_billing_date: datetime | None = None,
        remote_subscription_id: str | None = None,
        **fields,
    ) -> Subscription:
        subscription = Subscription(
            customer_id=customer.id,
            plan_id=fields.pop("plan_id", plan.id),
            billing_cycle=fields.pop("billing_cycle", "monthly"),
            status=status.value,
            price=fields.pop("price", Decimal("30.00")),
            currency="usd",
            auto_renew=fields.pop("auto_renew", True),
            start_date=fields.pop("start_date", NOW - timedelta(days=20)),
            next_billing_date=next_billing_date or NOW + timedelta(days=10),
            remote_subscription_id=remote_subscription_id,
            remote_customer_id="cus_test" if remote_subscription_id else None,
            **fields,
        )
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make
