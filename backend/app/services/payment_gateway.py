"""Payment gateway capability interface.

The billing core only talks to the gateway through ``PaymentGatewayBase``.
Implementations translate every transport or API error into
``RemoteSyncFailure`` so callers handle one failure type.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from app.core.config import settings
from app.core.errors import RemoteSyncFailure
from app.services.billing_dates import to_minor_units

logger = logging.getLogger(__name__)


@dataclass
class RemoteSubscription:
    """The slice of a gateway subscription the core relies on."""

    remote_id: str
    status: str
    current_period_end: datetime | None = None


@dataclass
class PaymentResult:
    status: str  # succeeded, processing, requires_action, failed
    error_message: str | None = None
    remote_payment_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentGatewayBase(ABC):
    """Abstract base class for payment gateways.

    Creation calls are not idempotent on the gateway side; callers must not
    retry them blindly.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        pass  # pragma: no cover

    @abstractmethod
    def create_customer(self, email: str | None, name: str) -> str:
        pass  # pragma: no cover

    @abstractmethod
    def create_product(self, name: str, description: str | None) -> str:
        pass  # pragma: no cover

    @abstractmethod
    def update_product(self, product_id: str, name: str, description: str | None) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def create_price(
        self,
        product_id: str,
        amount: Decimal,
        currency: str,
        interval_unit: str,
        interval_count: int,
    ) -> str:
        pass  # pragma: no cover

    @abstractmethod
    def deactivate_price(self, price_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def delete_product(self, product_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def create_subscription(
        self, customer_id: str, price_id: str, payment_method_id: str | None
    ) -> str:
        pass  # pragma: no cover

    @abstractmethod
    def update_subscription(self, subscription_id: str, new_price_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def pause_subscription(self, subscription_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def resume_subscription(self, subscription_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def get_subscription(self, subscription_id: str) -> RemoteSubscription:
        pass  # pragma: no cover

    @abstractmethod
    def process_payment(
        self,
        payer_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Charge a payment method or a customer's default method.

        Calls sharing an ``idempotency_key`` result in at most one charge.
        """
        pass  # pragma: no cover

    @abstractmethod
    def validate_payment_method(self, payment_method_id: str) -> bool:
        pass  # pragma: no cover


class StripeGateway(PaymentGatewayBase):
    """Stripe implementation of the gateway interface."""

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self.api_key = api_key or settings.stripe_api_key
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            try:
                import stripe

                stripe.api_key = self.api_key
                # Creation calls must never be replayed by the client itself.
                stripe.max_network_retries = 0
                stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
                self._stripe = stripe
            except ImportError as e:
                raise ImportError("stripe package not installed. Run: pip install stripe") from e
        return self._stripe

    @property
    def name(self) -> str:
        return "stripe"

    def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except self.stripe.StripeError as e:
            logger.warning("Stripe %s failed: %s", operation, e)
            raise RemoteSyncFailure(f"Stripe {operation} failed: {e}") from e

    def create_customer(self, email: str | None, name: str) -> str:
        params: dict[str, Any] = {"name": name}
        if email:
            params["email"] = email
        customer = self._call("create_customer", self.stripe.Customer.create, **params)
        return str(customer.id)

    def create_product(self, name: str, description: str | None) -> str:
        params: dict[str, Any] = {"name": name}
        if description:
            params["description"] = description
        product = self._call("create_product", self.stripe.Product.create, **params)
        return str(product.id)

    def update_product(self, product_id: str, name: str, description: str | None) -> bool:
        params: dict[str, Any] = {"name": name}
        if description:
            params["description"] = description
        self._call("update_product", self.stripe.Product.modify, product_id, **params)
        return True

    def create_price(
        self,
        product_id: str,
        amount: Decimal,
        currency: str,
        interval_unit: str,
        interval_count: int,
    ) -> str:
        price = self._call(
            "create_price",
            self.stripe.Price.create,
            product=product_id,
            unit_amount=to_minor_units(amount),
            currency=currency.lower(),
            recurring={"interval": interval_unit, "interval_count": interval_count},
        )
        return str(price.id)

    def deactivate_price(self, price_id: str) -> bool:
        self._call("deactivate_price", self.stripe.Price.modify, price_id, active=False)
        return True

    def delete_product(self, product_id: str) -> bool:
        result = self._call("delete_product", self.stripe.Product.delete, product_id)
        return bool(result.get("deleted", True))

    def create_subscription(
        self, customer_id: str, price_id: str, payment_method_id: str | None
    ) -> str:
        params: dict[str, Any] = {"customer": customer_id, "items": [{"price": price_id}]}
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        subscription = self._call(
            "create_subscription", self.stripe.Subscription.create, **params
        )
        return str(subscription.id)

    def update_subscription(self, subscription_id: str, new_price_id: str) -> bool:
        current = self._call(
            "retrieve_subscription", self.stripe.Subscription.retrieve, subscription_id
        )
        item_id = current["items"]["data"][0]["id"]
        self._call(
            "update_subscription",
            self.stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior="create_prorations",
        )
        return True

    def pause_subscription(self, subscription_id: str) -> bool:
        self._call(
            "pause_subscription",
            self.stripe.Subscription.modify,
            subscription_id,
            pause_collection={"behavior": "void"},
        )
        return True

    def resume_subscription(self, subscription_id: str) -> bool:
        self._call(
            "resume_subscription",
            self.stripe.Subscription.modify,
            subscription_id,
            pause_collection="",
        )
        return True

    def cancel_subscription(self, subscription_id: str) -> bool:
        self._call("cancel_subscription", self.stripe.Subscription.cancel, subscription_id)
        return True

    def get_subscription(self, subscription_id: str) -> RemoteSubscription:
        subscription = self._call(
            "retrieve_subscription", self.stripe.Subscription.retrieve, subscription_id
        )
        period_end = subscription.get("current_period_end")
        if period_end is None:
            # Newer API versions report the period on each item.
            items = subscription.get("items", {}).get("data", [])
            if items:
                period_end = items[0].get("current_period_end")
        return RemoteSubscription(
            remote_id=str(subscription["id"]),
            status=str(subscription.get("status", "")),
            current_period_end=datetime.fromtimestamp(period_end, tz=UTC)
            if period_end
            else None,
        )

    def process_payment(
        self,
        payer_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        params: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "confirm": True,
            "off_session": True,
        }
        if payer_id.startswith("cus_"):
            params["customer"] = payer_id
        else:
            params["payment_method"] = payer_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = self.stripe.PaymentIntent.create(**params)
        except self.stripe.CardError as e:
            return PaymentResult(status="failed", error_message=str(e.user_message or e))
        except self.stripe.StripeError as e:
            logger.warning("Stripe process_payment failed: %s", e)
            raise RemoteSyncFailure(f"Stripe process_payment failed: {e}") from e
        status = str(intent.status)
        error = None
        if status != "succeeded":
            last_error = intent.get("last_payment_error") or {}
            error = last_error.get("message") or f"Payment {status}"
        return PaymentResult(status=status, error_message=error, remote_payment_id=str(intent.id))

    def validate_payment_method(self, payment_method_id: str) -> bool:
        try:
            self.stripe.PaymentMethod.retrieve(payment_method_id)
        except self.stripe.InvalidRequestError:
            return False
        except self.stripe.StripeError as e:
            raise RemoteSyncFailure(f"Stripe validate_payment_method failed: {e}") from e
        return True


class NullGateway(PaymentGatewayBase):
    """Stand-in used when no gateway is configured. Every call fails."""

    @property
    def name(self) -> str:
        return "null"

    def _unavailable(self, *args: Any, **kwargs: Any) -> Any:
        raise RemoteSyncFailure("Payment gateway is not configured")

    create_customer = _unavailable
    create_product = _unavailable
    update_product = _unavailable
    create_price = _unavailable
    deactivate_price = _unavailable
    delete_product = _unavailable
    create_subscription = _unavailable
    update_subscription = _unavailable
    pause_subscription = _unavailable
    resume_subscription = _unavailable
    cancel_subscription = _unavailable
    get_subscription = _unavailable
    process_payment = _unavailable
    validate_payment_method = _unavailable


def get_payment_gateway() -> PaymentGatewayBase:
    """Return the configured gateway implementation."""
    if settings.gateway_enabled and settings.PAYMENT_GATEWAY == "stripe":
        return StripeGateway()
    return NullGateway()
