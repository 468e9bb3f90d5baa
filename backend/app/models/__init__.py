from app.models.audit_log import AuditLog
from app.models.customer import Customer
from app.models.notification import Notification
from app.models.plan import BillingCycle, SubscriptionPlan
from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_status_history import SubscriptionStatusHistory

__all__ = [
    "AuditLog",
    "BillingCycle",
    "Customer",
    "Notification",
    "ProcessedWebhookEvent",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "SubscriptionStatusHistory",
]
