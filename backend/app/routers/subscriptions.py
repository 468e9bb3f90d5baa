from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.audit_log import AuditLog
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_status_history import SubscriptionStatusHistory
from app.repositories.audit_log_repository import AuditLogRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.audit_log import AuditLogResponse
from app.schemas.plan import SyncValidationResponse
from app.schemas.subscription import (
    ChangePlanRequest,
    ProrationResponse,
    StatusChangeRequest,
    StatusHistoryResponse,
    SubscriptionCreate,
    SubscriptionResponse,
    TransitionRequest,
)
from app.services.audit_service import RESOURCE_SUBSCRIPTION
from app.services.gateway_sync import GatewaySyncService
from app.services.payment_gateway import PaymentGatewayBase, get_payment_gateway
from app.services.subscription_service import SubscriptionService
from app.services.subscription_state_machine import SubscriptionStateMachine

router = APIRouter()

_TRANSITION_RESPONSES = {
    400: {"description": "Transition not allowed from the current status"},
    404: {"description": "Subscription not found"},
    409: {"description": "Subscription was modified concurrently"},
}


def _state_machine(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(db, gateway)


@router.get("/", response_model=list[SubscriptionResponse], summary="List subscriptions")
async def list_subscriptions(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    status: SubscriptionStatus | None = None,
    customer_id: UUID | None = None,
    db: Session = Depends(get_db),
) -> list[Subscription]:
    """List subscriptions, optionally filtered by status or customer."""
    repo = SubscriptionRepository(db)
    criteria = []
    if status is not None:
        criteria.append(Subscription.status == status.value)
    if customer_id is not None:
        criteria.append(Subscription.customer_id == customer_id)
    response.headers["X-Total-Count"] = str(repo.count(*criteria))
    return repo.get_all(
        skip=skip,
        limit=limit,
        status=status.value if status else None,
        customer_id=customer_id,
    )


@router.post(
    "/",
    response_model=SubscriptionResponse,
    status_code=201,
    summary="Create subscription",
    responses={
        400: {"description": "Plan inactive, duplicate subscription or invalid payment method"},
        404: {"description": "Customer or plan not found"},
        502: {"description": "Payment gateway call failed"},
    },
)
async def create_subscription(
    data: SubscriptionCreate,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> Subscription:
    return SubscriptionService(db, gateway).create_subscription(data)


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    summary="Get subscription",
    responses={404: {"description": "Subscription not found"}},
)
async def get_subscription(subscription_id: UUID, db: Session = Depends(get_db)) -> Subscription:
    subscription = SubscriptionRepository(db).get_by_id(subscription_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


@router.get(
    "/{subscription_id}/history",
    response_model=list[StatusHistoryResponse],
    summary="Get subscription status history",
    responses={404: {"description": "Subscription not found"}},
)
async def get_status_history(
    subscription_id: UUID,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> list[SubscriptionStatusHistory]:
    return machine.get_status_history(subscription_id)


@router.get(
    "/{subscription_id}/audit_logs",
    response_model=list[AuditLogResponse],
    summary="Get the audit trail of a subscription",
    responses={404: {"description": "Subscription not found"}},
)
async def get_audit_trail(
    subscription_id: UUID,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[AuditLog]:
    if not SubscriptionRepository(db).get_by_id(subscription_id):
        raise HTTPException(status_code=404, detail="Subscription not found")
    return AuditLogRepository(db).get_by_resource(
        RESOURCE_SUBSCRIPTION, subscription_id, skip=skip, limit=limit
    )


@router.get(
    "/{subscription_id}/transitions",
    response_model=list[SubscriptionStatus],
    summary="List statuses the subscription can move to",
    responses={404: {"description": "Subscription not found"}},
)
async def get_valid_transitions(
    subscription_id: UUID,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> list[SubscriptionStatus]:
    return machine.valid_transitions(subscription_id)


@router.post(
    "/{subscription_id}/status",
    response_model=SubscriptionResponse,
    summary="Change subscription status",
    responses=_TRANSITION_RESPONSES,
)
async def change_status(
    subscription_id: UUID,
    data: StatusChangeRequest,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    return machine.request_transition(
        subscription_id, data.status, data.reason, actor_id=data.actor_id
    ).subscription


@router.post(
    "/{subscription_id}/activate",
    response_model=SubscriptionResponse,
    summary="Activate subscription",
    responses=_TRANSITION_RESPONSES,
)
async def activate_subscription(
    subscription_id: UUID,
    data: TransitionRequest | None = None,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    data = data or TransitionRequest()
    return machine.activate(subscription_id, data.reason, actor_id=data.actor_id).subscription


@router.post(
    "/{subscription_id}/pause",
    response_model=SubscriptionResponse,
    summary="Pause subscription",
    responses=_TRANSITION_RESPONSES,
)
async def pause_subscription(
    subscription_id: UUID,
    data: TransitionRequest | None = None,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    data = data or TransitionRequest()
    return machine.pause(subscription_id, data.reason, actor_id=data.actor_id).subscription


@router.post(
    "/{subscription_id}/resume",
    response_model=SubscriptionResponse,
    summary="Resume subscription",
    responses=_TRANSITION_RESPONSES,
)
async def resume_subscription(
    subscription_id: UUID,
    data: TransitionRequest | None = None,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    data = data or TransitionRequest()
    return machine.resume(subscription_id, data.reason, actor_id=data.actor_id).subscription


@router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel subscription",
    responses=_TRANSITION_RESPONSES,
)
async def cancel_subscription(
    subscription_id: UUID,
    data: TransitionRequest | None = None,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    data = data or TransitionRequest()
    return machine.cancel(subscription_id, data.reason, actor_id=data.actor_id).subscription


@router.post(
    "/{subscription_id}/suspend",
    response_model=SubscriptionResponse,
    summary="Suspend subscription",
    responses=_TRANSITION_RESPONSES,
)
async def suspend_subscription(
    subscription_id: UUID,
    data: TransitionRequest | None = None,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    data = data or TransitionRequest()
    return machine.suspend(subscription_id, data.reason, actor_id=data.actor_id).subscription


@router.post(
    "/{subscription_id}/expire",
    response_model=SubscriptionResponse,
    summary="Expire subscription",
    responses=_TRANSITION_RESPONSES,
)
async def expire_subscription(
    subscription_id: UUID,
    data: TransitionRequest | None = None,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    data = data or TransitionRequest()
    return machine.expire(subscription_id, data.reason, actor_id=data.actor_id).subscription


@router.post(
    "/{subscription_id}/reactivate",
    response_model=SubscriptionResponse,
    summary="Reactivate a cancelled or expired subscription",
    responses=_TRANSITION_RESPONSES,
)
async def reactivate_subscription(
    subscription_id: UUID,
    data: TransitionRequest | None = None,
    machine: SubscriptionStateMachine = Depends(_state_machine),
) -> Subscription:
    data = data or TransitionRequest()
    return machine.reactivate(subscription_id, data.reason, actor_id=data.actor_id).subscription


@router.get(
    "/{subscription_id}/proration",
    response_model=ProrationResponse,
    summary="Preview the proration for a plan change",
    responses={404: {"description": "Subscription or plan not found"}},
)
async def preview_proration(
    subscription_id: UUID,
    new_plan_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> ProrationResponse:
    quote = SubscriptionService(db, gateway).quote_plan_change(subscription_id, new_plan_id)
    return ProrationResponse(
        subscription_id=quote.subscription_id,
        new_plan_id=quote.new_plan_id,
        amount=quote.amount,
        days_remaining=quote.days_remaining,
        cycle_days=quote.cycle_days,
    )


@router.post(
    "/{subscription_id}/change_plan",
    response_model=SubscriptionResponse,
    summary="Move subscription to another plan",
    responses=_TRANSITION_RESPONSES,
)
async def change_plan(
    subscription_id: UUID,
    data: ChangePlanRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> Subscription:
    return (
        SubscriptionService(db, gateway)
        .change_plan(subscription_id, data.new_plan_id, actor_id=data.actor_id)
        .subscription
    )


@router.get(
    "/{subscription_id}/sync",
    response_model=SyncValidationResponse,
    summary="Check the subscription against the payment gateway",
    responses={404: {"description": "Subscription not found"}},
)
async def validate_subscription_sync(
    subscription_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> SyncValidationResponse:
    result = GatewaySyncService(db, gateway).validate_subscription_synchronization(
        subscription_id
    )
    return SyncValidationResponse(
        is_synchronized=result.is_synchronized,
        issues=result.issues,
        recommendations=result.recommendations,
    )


@router.post(
    "/{subscription_id}/repair",
    response_model=SubscriptionResponse,
    summary="Rebuild the subscription at the payment gateway",
    responses={404: {"description": "Subscription not found"}, 502: {"description": "Gateway error"}},
)
async def repair_subscription_sync(
    subscription_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> Subscription:
    return GatewaySyncService(db, gateway).repair_subscription_synchronization(subscription_id)
