from app.schemas.audit_log import AuditLogResponse
from app.schemas.automation import (
    AutomationStatusResponse,
    BatchFailureResponse,
    BatchResultResponse,
)
from app.schemas.customer import CustomerCreate, CustomerResponse
from app.schemas.gateway_event import (
    GatewayEventPayload,
    GatewayEventResponse,
    WebhookStatsResponse,
)
from app.schemas.plan import PlanCreate, PlanResponse, PlanUpdate, SyncValidationResponse
from app.schemas.subscription import (
    ChangePlanRequest,
    ProrationResponse,
    StatusChangeRequest,
    StatusHistoryResponse,
    SubscriptionCreate,
    SubscriptionResponse,
    TransitionRequest,
)

__all__ = [
    "AuditLogResponse",
    "AutomationStatusResponse",
    "BatchFailureResponse",
    "BatchResultResponse",
    "ChangePlanRequest",
    "CustomerCreate",
    "CustomerResponse",
    "GatewayEventPayload",
    "GatewayEventResponse",
    "PlanCreate",
    "PlanResponse",
    "PlanUpdate",
    "ProrationResponse",
    "StatusChangeRequest",
    "StatusHistoryResponse",
    "SubscriptionCreate",
    "SubscriptionResponse",
    "SyncValidationResponse",
    "TransitionRequest",
    "WebhookStatsResponse",
]
