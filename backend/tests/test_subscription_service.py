"""Tests for subscription creation and plan changes."""

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import (
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    RemoteSyncFailure,
    ValidationFailure,
)
from app.models.audit_log import AuditLog
from app.models.notification import Notification
from app.models.plan import BillingCycle, SubscriptionPlan
from app.models.subscription import Subscription, SubscriptionStatus
from app.repositories.status_history_repository import StatusHistoryRepository
from app.schemas.subscription import SubscriptionCreate
from app.services.subscription_service import SubscriptionService
from tests.conftest import NOW

S = SubscriptionStatus


@pytest.fixture
def service(db_session, gateway):
    return SubscriptionService(db_session, gateway)


@pytest.fixture
def team_plan(db_session):
    plan = SubscriptionPlan(
        name="Team",
        price=Decimal("60.00"),
        currency="usd",
        billing_cycle="monthly",
        remote_product_id="prod_team",
        remote_monthly_price_id="price_team_m",
        remote_quarterly_price_id="price_team_q",
        remote_annual_price_id="price_team_a",
        remote_synced_price=Decimal("60.00"),
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


class TestCreateSubscription:
    def test_creates_remote_then_local(self, service, customer, plan, gateway, db_session):
        data = SubscriptionCreate(customer_id=customer.id, plan_id=plan.id, payment_method_id="pm_1")

        subscription = service.create_subscription(data, actor_id="ops-1", now=NOW)

        assert subscription.status == "active"
        assert subscription.remote_subscription_id == "sub_remote"
        assert subscription.remote_customer_id == "cus_test"
        assert subscription.remote_price_id == "price_month_1_30.00"
        assert subscription.price == Decimal("30.00")
        assert subscription.next_billing_date.replace(tzinfo=None) == NOW.replace(
            month=4, tzinfo=None
        )
        gateway.create_subscription.assert_called_once_with(
            "cus_test", "price_month_1_30.00", "pm_1"
        )
        (entry,) = StatusHistoryRepository(db_session).get_by_subscription(subscription.id)
        assert entry.from_status is None
        assert entry.to_status == "active"
        assert db_session.query(Notification).count() == 1
        assert db_session.query(AuditLog).filter(AuditLog.action == "created").count() == 1

    def test_trial_plan_starts_in_trial(self, service, customer, plan, db_session):
        plan.trial_allowed = True
        plan.trial_duration_days = 14
        db_session.commit()

        subscription = service.create_subscription(
            SubscriptionCreate(customer_id=customer.id, plan_id=plan.id), now=NOW
        )

        assert subscription.status == "trial_active"
        assert subscription.trial_end_date.replace(tzinfo=None) == (
            NOW + timedelta(days=14)
        ).replace(tzinfo=None)
        assert subscription.next_billing_date == subscription.trial_end_date

    def test_billing_cycle_override_uses_tier_price(self, service, customer, team_plan, gateway):
        subscription = service.create_subscription(
            SubscriptionCreate(
                customer_id=customer.id, plan_id=team_plan.id, billing_cycle=BillingCycle.ANNUAL
            ),
            now=NOW,
        )
        assert subscription.billing_cycle == "annual"
        assert subscription.price == Decimal("720.00")
        assert subscription.remote_price_id == "price_team_a"
        gateway.create_price.assert_not_called()

    def test_inactive_plan(self, service, customer, plan, db_session, gateway):
        plan.is_active = False
        db_session.commit()
        with pytest.raises(ValidationFailure):
            service.create_subscription(
                SubscriptionCreate(customer_id=customer.id, plan_id=plan.id), now=NOW
            )
        gateway.create_subscription.assert_not_called()

    def test_unknown_customer(self, service, plan):
        with pytest.raises(NotFound):
            service.create_subscription(
                SubscriptionCreate(customer_id=uuid.uuid4(), plan_id=plan.id), now=NOW
            )

    def test_duplicate_live_subscription(self, service, customer, plan, make_subscription):
        make_subscription(status=S.PAUSED)
        with pytest.raises(ValidationFailure, match="live subscription"):
            service.create_subscription(
                SubscriptionCreate(customer_id=customer.id, plan_id=plan.id), now=NOW
            )

    def test_ended_subscription_does_not_block(self, service, customer, plan, make_subscription):
        make_subscription(status=S.CANCELLED)
        subscription = service.create_subscription(
            SubscriptionCreate(customer_id=customer.id, plan_id=plan.id), now=NOW
        )
        assert subscription.status == "active"

    def test_invalid_payment_method(self, service, customer, plan, gateway, db_session):
        gateway.validate_payment_method.return_value = False
        with pytest.raises(ValidationFailure):
            service.create_subscription(
                SubscriptionCreate(
                    customer_id=customer.id, plan_id=plan.id, payment_method_id="pm_bad"
                ),
                now=NOW,
            )
        gateway.create_subscription.assert_not_called()
        assert db_session.query(Subscription).count() == 0

    def test_gateway_failure_leaves_nothing_locally(
        self, service, customer, plan, gateway, db_session
    ):
        gateway.create_subscription.side_effect = RemoteSyncFailure("card_declined")
        with pytest.raises(RemoteSyncFailure):
            service.create_subscription(
                SubscriptionCreate(customer_id=customer.id, plan_id=plan.id), now=NOW
            )
        assert db_session.query(Subscription).count() == 0

    def test_local_failure_cancels_remote_subscription(
        self, service, customer, plan, gateway, db_session
    ):
        with (
            patch.object(
                StatusHistoryRepository, "append", side_effect=SQLAlchemyError("disk full")
            ),
            pytest.raises(PersistenceFailure),
        ):
            service.create_subscription(
                SubscriptionCreate(customer_id=customer.id, plan_id=plan.id), now=NOW
            )

        gateway.cancel_subscription.assert_called_once_with("sub_remote")
        assert db_session.query(Subscription).count() == 0


class TestPlanChange:
    def test_quote(self, service, make_subscription, team_plan):
        subscription = make_subscription(next_billing_date=NOW + timedelta(days=15))
        quote = service.quote_plan_change(subscription.id, team_plan.id, NOW)
        assert quote.amount == Decimal("15.00")
        assert quote.days_remaining == 15
        assert quote.cycle_days == 30

    def test_quote_after_period_end(self, service, make_subscription, team_plan):
        subscription = make_subscription(next_billing_date=NOW - timedelta(days=2))
        quote = service.quote_plan_change(subscription.id, team_plan.id, NOW)
        assert quote.amount == Decimal("0.00")
        assert quote.days_remaining == 0

    def test_change_plan_updates_local_and_remote(
        self, service, make_subscription, team_plan, gateway
    ):
        subscription = make_subscription(remote_subscription_id="sub_1")

        result = service.change_plan(subscription.id, team_plan.id, actor_id="ops-1", now=NOW)

        assert result.subscription.plan_id == team_plan.id
        assert result.subscription.price == Decimal("60.00")
        assert result.remote_error is None
        gateway.update_subscription.assert_called_once_with("sub_1", "price_team_m")

    def test_remote_failure_flags_drift(
        self, service, make_subscription, team_plan, gateway, db_session
    ):
        gateway.update_subscription.side_effect = RemoteSyncFailure("timeout")
        subscription = make_subscription(remote_subscription_id="sub_1")

        result = service.change_plan(subscription.id, team_plan.id, now=NOW)

        assert result.subscription.plan_id == team_plan.id
        assert result.subscription.remote_sync_pending is True
        audit = db_session.query(AuditLog).filter(AuditLog.action == "plan_changed").one()
        assert audit.outcome == "drifted"

    def test_local_subscription_skips_gateway(self, service, make_subscription, team_plan, gateway):
        subscription = make_subscription()
        service.change_plan(subscription.id, team_plan.id, now=NOW)
        gateway.update_subscription.assert_not_called()

    def test_paused_subscription_cannot_change_plan(self, service, make_subscription, team_plan):
        subscription = make_subscription(status=S.PAUSED)
        with pytest.raises(InvalidTransition):
            service.change_plan(subscription.id, team_plan.id, now=NOW)

    def test_same_plan_rejected(self, service, make_subscription, plan):
        subscription = make_subscription()
        with pytest.raises(ValidationFailure):
            service.change_plan(subscription.id, plan.id, now=NOW)
