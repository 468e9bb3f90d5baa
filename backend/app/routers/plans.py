from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.plan import SubscriptionPlan
from app.repositories.plan_repository import PlanRepository
from app.schemas.plan import PlanCreate, PlanResponse, PlanUpdate, SyncValidationResponse
from app.services.gateway_sync import GatewaySyncService
from app.services.payment_gateway import PaymentGatewayBase, get_payment_gateway

router = APIRouter()

_GATEWAY_RESPONSES = {
    404: {"description": "Plan not found"},
    502: {"description": "Payment gateway call failed"},
}


@router.get("/", response_model=list[PlanResponse], summary="List plans")
async def list_plans(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    active_only: bool = False,
    db: Session = Depends(get_db),
) -> list[SubscriptionPlan]:
    repo = PlanRepository(db)
    response.headers["X-Total-Count"] = str(repo.count())
    return repo.get_all(skip=skip, limit=limit, active_only=active_only)


@router.post("/", response_model=PlanResponse, status_code=201, summary="Create plan")
async def create_plan(data: PlanCreate, db: Session = Depends(get_db)) -> SubscriptionPlan:
    return PlanRepository(db).create(data)


@router.get(
    "/{plan_id}",
    response_model=PlanResponse,
    summary="Get plan",
    responses={404: {"description": "Plan not found"}},
)
async def get_plan(plan_id: UUID, db: Session = Depends(get_db)) -> SubscriptionPlan:
    plan = PlanRepository(db).get_by_id(plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")
    return plan


@router.put(
    "/{plan_id}",
    response_model=PlanResponse,
    summary="Update plan",
    responses={404: {"description": "Plan not found"}},
)
async def update_plan(
    plan_id: UUID, data: PlanUpdate, db: Session = Depends(get_db)
) -> SubscriptionPlan:
    plan = PlanRepository(db).update(plan_id, data)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")
    return plan


@router.post(
    "/{plan_id}/sync",
    response_model=PlanResponse,
    summary="Create or update the plan's gateway product and prices",
    responses=_GATEWAY_RESPONSES,
)
async def sync_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> SubscriptionPlan:
    return GatewaySyncService(db, gateway).synchronize_plan(plan_id)


@router.get(
    "/{plan_id}/sync",
    response_model=SyncValidationResponse,
    summary="Check the plan against its gateway resources",
    responses={404: {"description": "Plan not found"}},
)
async def validate_plan_sync(
    plan_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> SyncValidationResponse:
    result = GatewaySyncService(db, gateway).validate_plan_synchronization(plan_id)
    return SyncValidationResponse(
        is_synchronized=result.is_synchronized,
        issues=result.issues,
        recommendations=result.recommendations,
    )


@router.post(
    "/{plan_id}/repair",
    response_model=PlanResponse,
    summary="Rebuild the plan's gateway product and prices",
    responses=_GATEWAY_RESPONSES,
)
async def repair_plan_sync(
    plan_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> SubscriptionPlan:
    return GatewaySyncService(db, gateway).repair_plan_synchronization(plan_id)


@router.delete(
    "/{plan_id}/sync",
    status_code=204,
    summary="Remove the plan's gateway product and prices",
    responses=_GATEWAY_RESPONSES,
)
async def delete_plan_sync(
    plan_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> None:
    GatewaySyncService(db, gateway).synchronize_plan_deletion(plan_id)
