from app.repositories.audit_log_repository import AuditLogRepository
from app.repositories.customer_repository import CustomerRepository
from app.repositories.notification_repository import NotificationRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.status_history_repository import StatusHistoryRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.webhook_event_repository import WebhookEventRepository

__all__ = [
    "AuditLogRepository",
    "CustomerRepository",
    "NotificationRepository",
    "PlanRepository",
    "StatusHistoryRepository",
    "SubscriptionRepository",
    "WebhookEventRepository",
]
