"""Tests for scheduled billing, renewal, expiration and dunning sweeps."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.core.config import settings
from app.core.errors import InvalidTransition, PersistenceFailure, RemoteSyncFailure
from app.models.plan import SubscriptionPlan
from app.models.subscription import SubscriptionStatus
from app.services.billing_automation import BillingAutomationService
from app.services.payment_gateway import PaymentResult, RemoteSubscription
from tests.conftest import NOW

S = SubscriptionStatus


@pytest.fixture
def automation(db_session, gateway):
    return BillingAutomationService(db_session, gateway)


def _naive(dt: datetime) -> datetime:
    return dt.replace(tzinfo=None)


class TestNextBillingDate:
    def test_gateway_period_end_wins(self, automation, make_subscription, gateway):
        period_end = datetime(2026, 4, 20, tzinfo=UTC)
        gateway.get_subscription.return_value = RemoteSubscription(
            remote_id="sub_1", status="active", current_period_end=period_end
        )
        subscription = make_subscription(remote_subscription_id="sub_1")
        assert automation.calculate_next_billing_date(subscription, NOW) == period_end

    def test_falls_back_to_local_dates(self, automation, make_subscription, gateway):
        gateway.get_subscription.side_effect = RemoteSyncFailure("timeout")
        subscription = make_subscription(
            remote_subscription_id="sub_1", next_billing_date=NOW - timedelta(days=1)
        )
        result = automation.calculate_next_billing_date(subscription, NOW)
        assert result == datetime(2026, 4, 14, 12, 0, tzinfo=UTC)

    def test_local_subscription_uses_cycle(self, automation, make_subscription, gateway):
        subscription = make_subscription(next_billing_date=NOW)
        result = automation.calculate_next_billing_date(subscription, NOW)
        assert result == datetime(2026, 4, 15, 12, 0, tzinfo=UTC)
        gateway.get_subscription.assert_not_called()

    def test_prorated_amount(self, automation, make_subscription, db_session):
        bigger = SubscriptionPlan(
            name="Team", price=Decimal("60.00"), currency="usd", billing_cycle="monthly"
        )
        db_session.add(bigger)
        db_session.commit()
        subscription = make_subscription(next_billing_date=NOW + timedelta(days=15))
        assert automation.calculate_prorated_amount(subscription, bigger, NOW) == Decimal("15.00")


class TestBillSubscription:
    def test_charges_local_subscription(self, automation, make_subscription, gateway):
        subscription = make_subscription(
            next_billing_date=NOW - timedelta(hours=1), payment_method_id="pm_1"
        )

        outcome = automation.bill_subscription(subscription.id, NOW)

        assert outcome.action == "charged"
        gateway.process_payment.assert_called_once_with(
            "pm_1", Decimal("30.00"), "usd", idempotency_key=f"charge:{subscription.id}:2026-03-15"
        )
        assert _naive(subscription.next_billing_date) == _naive(
            NOW - timedelta(hours=1) + timedelta(days=31)
        )
        assert subscription.last_payment_date is not None

    def test_declined_charge_marks_payment_failed(self, automation, make_subscription, gateway):
        gateway.process_payment.return_value = PaymentResult(
            status="failed", error_message="Your card was declined."
        )
        subscription = make_subscription(next_billing_date=NOW, payment_method_id="pm_1")

        outcome = automation.bill_subscription(subscription.id, NOW)

        assert outcome.action == "payment_failed"
        assert subscription.status == "payment_failed"
        assert subscription.failed_payment_attempts == 1
        assert subscription.last_payment_error == "Your card was declined."

    def test_no_payment_method(self, automation, make_subscription, gateway):
        subscription = make_subscription(next_billing_date=NOW)
        outcome = automation.bill_subscription(subscription.id, NOW)
        assert outcome.error == "No payment method on file"
        gateway.process_payment.assert_not_called()

    def test_gateway_linked_subscription_only_mirrors_period(
        self, automation, make_subscription, gateway
    ):
        period_end = datetime(2026, 4, 15, 12, 0, tzinfo=UTC)
        gateway.get_subscription.return_value = RemoteSubscription(
            remote_id="sub_1", status="active", current_period_end=period_end
        )
        subscription = make_subscription(next_billing_date=NOW, remote_subscription_id="sub_1")

        outcome = automation.bill_subscription(subscription.id, NOW)

        assert outcome.action == "synced"
        gateway.process_payment.assert_not_called()
        assert _naive(subscription.next_billing_date) == _naive(period_end)

    def test_skips_subscription_not_due(self, automation, make_subscription, gateway):
        subscription = make_subscription(payment_method_id="pm_1")
        assert automation.bill_subscription(subscription.id, NOW).action == "skipped"
        gateway.process_payment.assert_not_called()

    def test_batch_isolates_failures(self, automation, make_subscription, gateway):
        ok = make_subscription(next_billing_date=NOW, payment_method_id="pm_ok")
        broken = make_subscription(next_billing_date=NOW, payment_method_id="pm_broken")

        def charge(payer_id, amount, currency, idempotency_key=None):
            if payer_id == "pm_broken":
                raise RuntimeError("unexpected response")
            return PaymentResult(status="succeeded")

        gateway.process_payment.side_effect = charge

        result = automation.process_recurring_billing(NOW)

        assert result.total == 2
        assert result.processed == 1
        assert result.failed == 1
        assert result.failures[0].subscription_id == str(broken.id)
        assert automation.subscriptions.get_by_id(ok.id).last_payment_date is not None

    def test_repeated_charge_reuses_idempotency_key(self, automation, make_subscription, gateway):
        subscription = make_subscription(next_billing_date=NOW, payment_method_id="pm_1")

        with patch.object(
            automation.state_machine, "record_payment", side_effect=PersistenceFailure("db down")
        ):
            first = automation.process_recurring_billing(NOW)
        second = automation.process_recurring_billing(NOW)

        assert first.failed == 1
        assert second.processed == 1
        keys = [c.kwargs["idempotency_key"] for c in gateway.process_payment.call_args_list]
        assert keys == [f"charge:{subscription.id}:2026-03-15"] * 2


class TestRenewals:
    def test_renews_subscription_due_in_lookahead(self, automation, make_subscription, gateway):
        due = NOW + timedelta(days=3)
        subscription = make_subscription(next_billing_date=due, payment_method_id="pm_1")

        result = automation.process_automated_renewals(NOW)

        assert result.processed == 1
        gateway.process_payment.assert_called_once()
        assert _naive(subscription.next_billing_date) == datetime(2026, 4, 18, 12, 0)

    def test_outside_lookahead_is_left_alone(self, automation, make_subscription):
        make_subscription(
            next_billing_date=NOW + timedelta(days=settings.RENEWAL_LOOKAHEAD_DAYS + 1),
            payment_method_id="pm_1",
        )
        assert automation.process_automated_renewals(NOW).total == 0

    def test_gateway_linked_renewal_is_not_charged_locally(
        self, automation, make_subscription, gateway
    ):
        subscription = make_subscription(
            next_billing_date=NOW + timedelta(days=2), remote_subscription_id="sub_1"
        )
        automation.renew_subscription(subscription.id, NOW)
        gateway.process_payment.assert_not_called()

    def test_renewing_expired_subscription_reactivates_it(
        self, automation, make_subscription, db_session
    ):
        subscription = make_subscription(status=S.EXPIRED, payment_method_id="pm_1")

        renewed = automation.renew_subscription(subscription.id, NOW)

        assert renewed.status == "active"
        assert _naive(renewed.next_billing_date) == datetime(2026, 4, 15, 12, 0)

    def test_failed_renewal_payment(self, automation, make_subscription, gateway):
        gateway.process_payment.return_value = PaymentResult(status="failed", error_message="no")
        subscription = make_subscription(
            next_billing_date=NOW + timedelta(days=2), payment_method_id="pm_1"
        )
        with pytest.raises(RemoteSyncFailure):
            automation.renew_subscription(subscription.id, NOW)
        assert subscription.status == "payment_failed"

    def test_cancelled_subscription_cannot_renew(self, automation, make_subscription):
        subscription = make_subscription(status=S.CANCELLED)
        with pytest.raises(InvalidTransition):
            automation.renew_subscription(subscription.id, NOW)

    def test_gateway_linked_renewal_follows_gateway_period(
        self, automation, make_subscription, gateway
    ):
        period_end = datetime(2026, 4, 29, tzinfo=UTC)
        gateway.get_subscription.return_value = RemoteSubscription(
            remote_id="sub_1", status="active", current_period_end=period_end
        )
        subscription = make_subscription(
            next_billing_date=NOW + timedelta(days=3), remote_subscription_id="sub_1"
        )

        renewed = automation.renew_subscription(subscription.id, NOW)

        assert _naive(renewed.next_billing_date) == _naive(period_end)

    def test_renewing_expired_linked_subscription_opens_new_gateway_subscription(
        self, automation, make_subscription, gateway
    ):
        gateway.create_subscription.return_value = "sub_new"
        subscription = make_subscription(status=S.EXPIRED, remote_subscription_id="sub_old")

        renewed = automation.renew_subscription(subscription.id, NOW)

        assert renewed.status == "active"
        assert renewed.remote_subscription_id == "sub_new"
        gateway.cancel_subscription.assert_called_once_with("sub_old")
        gateway.process_payment.assert_not_called()


class TestExpirations:
    def test_expires_past_due_non_renewing(self, automation, make_subscription):
        ending = make_subscription(next_billing_date=NOW - timedelta(days=1), auto_renew=False)
        renewing = make_subscription(next_billing_date=NOW - timedelta(days=1), auto_renew=True)

        result = automation.process_expired_subscriptions(NOW)

        assert result.processed == 1
        assert automation.subscriptions.get_by_id(ending.id).status == "expired"
        assert automation.subscriptions.get_by_id(ending.id).status_reason == (
            "Automated expiration"
        )
        assert automation.subscriptions.get_by_id(renewing.id).status == "active"

    def test_expiry_cancels_gateway_subscription(self, automation, make_subscription, gateway):
        make_subscription(
            next_billing_date=NOW - timedelta(days=1),
            auto_renew=False,
            remote_subscription_id="sub_1",
        )

        result = automation.process_expired_subscriptions(NOW)

        assert result.processed == 1
        gateway.cancel_subscription.assert_called_once_with("sub_1")


class TestTrialExpirations:
    def test_trial_without_payment_details_expires(self, automation, make_subscription):
        subscription = make_subscription(
            status=S.TRIAL_ACTIVE, trial_end_date=NOW - timedelta(minutes=1)
        )
        automation.process_trial_expirations(NOW)
        assert automation.subscriptions.get_by_id(subscription.id).status == "trial_expired"

    def test_trial_with_payment_method_converts(self, automation, make_subscription):
        subscription = make_subscription(
            status=S.TRIAL_ACTIVE,
            trial_end_date=NOW - timedelta(minutes=1),
            payment_method_id="pm_1",
        )
        automation.process_trial_expirations(NOW)
        assert automation.subscriptions.get_by_id(subscription.id).status == "active"

    def test_running_trial_untouched(self, automation, make_subscription):
        make_subscription(status=S.TRIAL_ACTIVE, trial_end_date=NOW + timedelta(days=1))
        assert automation.process_trial_expirations(NOW).total == 0


class TestPaymentRetries:
    def test_successful_retry_recovers(self, automation, make_subscription):
        subscription = make_subscription(
            status=S.PAYMENT_FAILED,
            failed_payment_attempts=1,
            payment_method_id="pm_1",
            next_billing_date=NOW - timedelta(days=2),
        )
        automation.process_failed_payment_retries(NOW)
        recovered = automation.subscriptions.get_by_id(subscription.id)
        assert recovered.status == "active"
        assert recovered.failed_payment_attempts == 0

    def test_failed_retry_counts_attempt(self, automation, make_subscription, gateway):
        gateway.process_payment.return_value = PaymentResult(status="failed", error_message="no")
        subscription = make_subscription(
            status=S.PAYMENT_FAILED, failed_payment_attempts=1, payment_method_id="pm_1"
        )
        automation.process_failed_payment_retries(NOW)
        retried = automation.subscriptions.get_by_id(subscription.id)
        assert retried.status == "payment_failed"
        assert retried.failed_payment_attempts == 2

    def test_suspends_at_retry_limit(self, automation, make_subscription, gateway):
        subscription = make_subscription(
            status=S.PAYMENT_FAILED,
            failed_payment_attempts=settings.PAYMENT_RETRY_LIMIT,
            payment_method_id="pm_1",
        )
        automation.process_failed_payment_retries(NOW)
        assert automation.subscriptions.get_by_id(subscription.id).status == "suspended"
        gateway.process_payment.assert_not_called()

    def test_gateway_linked_retries_left_to_gateway(self, automation, make_subscription, gateway):
        subscription = make_subscription(
            status=S.PAYMENT_FAILED, failed_payment_attempts=1, remote_subscription_id="sub_1"
        )
        automation.process_failed_payment_retries(NOW)
        assert automation.subscriptions.get_by_id(subscription.id).status == "payment_failed"
        gateway.process_payment.assert_not_called()

    def test_retry_uses_per_attempt_idempotency_key(self, automation, make_subscription, gateway):
        subscription = make_subscription(
            status=S.PAYMENT_FAILED,
            failed_payment_attempts=1,
            payment_method_id="pm_1",
            next_billing_date=NOW - timedelta(days=2),
        )
        automation.process_failed_payment_retries(NOW)
        assert gateway.process_payment.call_args.kwargs["idempotency_key"] == (
            f"charge:{subscription.id}:2026-03-13:retry1"
        )


class TestAutomationStatus:
    def test_counts(self, automation, make_subscription):
        make_subscription(next_billing_date=NOW - timedelta(days=1))
        make_subscription(next_billing_date=NOW + timedelta(days=2))
        make_subscription(next_billing_date=NOW - timedelta(days=1), auto_renew=False)
        make_subscription(status=S.TRIAL_ACTIVE, trial_end_date=NOW - timedelta(hours=1))
        make_subscription(status=S.PAYMENT_FAILED, remote_sync_pending=True)

        status = automation.get_automation_status(NOW)

        assert status.due_for_billing == 1
        assert status.due_for_renewal == 1
        assert status.past_due_active == 1
        assert status.trials_ending == 1
        assert status.payment_failed == 1
        assert status.drifted == 1
        assert status.renewal_lookahead_days == settings.RENEWAL_LOOKAHEAD_DAYS
