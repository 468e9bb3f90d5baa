from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.customer import Customer
from app.repositories.customer_repository import CustomerRepository
from app.schemas.customer import CustomerCreate, CustomerResponse
from app.services.gateway_sync import GatewaySyncService
from app.services.payment_gateway import PaymentGatewayBase, get_payment_gateway

router = APIRouter()


@router.get("/", response_model=list[CustomerResponse], summary="List customers")
async def list_customers(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[Customer]:
    return CustomerRepository(db).get_all(skip=skip, limit=limit)


@router.post(
    "/",
    response_model=CustomerResponse,
    status_code=201,
    summary="Create customer",
    responses={409: {"description": "Customer with this external_id already exists"}},
)
async def create_customer(data: CustomerCreate, db: Session = Depends(get_db)) -> Customer:
    repo = CustomerRepository(db)
    if repo.get_by_external_id(data.external_id):
        raise HTTPException(status_code=409, detail="Customer with this external_id already exists")
    return repo.create(data)


@router.get(
    "/{customer_id}",
    response_model=CustomerResponse,
    summary="Get customer",
    responses={404: {"description": "Customer not found"}},
)
async def get_customer(customer_id: UUID, db: Session = Depends(get_db)) -> Customer:
    customer = CustomerRepository(db).get_by_id(customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@router.post(
    "/{customer_id}/sync",
    response_model=CustomerResponse,
    summary="Create the customer at the payment gateway",
    responses={404: {"description": "Customer not found"}, 502: {"description": "Gateway error"}},
)
async def sync_customer(
    customer_id: UUID,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> Customer:
    GatewaySyncService(db, gateway).synchronize_customer(customer_id)
    return CustomerRepository(db).get_by_id(customer_id)  # type: ignore[return-value]
