from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.schemas.automation import AutomationStatusResponse, BatchResultResponse
from app.services.billing_automation import BillingAutomationService
from app.services.gateway_sync import GatewaySyncService
from app.services.payment_gateway import PaymentGatewayBase, get_payment_gateway

router = APIRouter()


def _automation(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> BillingAutomationService:
    return BillingAutomationService(db, gateway)


@router.get("/status", response_model=AutomationStatusResponse, summary="Automation queue sizes")
async def get_automation_status(
    automation: BillingAutomationService = Depends(_automation),
) -> AutomationStatusResponse:
    status = automation.get_automation_status()
    return AutomationStatusResponse(**status.__dict__)


@router.post("/billing", response_model=BatchResultResponse, summary="Bill due subscriptions now")
async def trigger_billing(
    automation: BillingAutomationService = Depends(_automation),
) -> dict:  # type: ignore[type-arg]
    return automation.process_recurring_billing().to_dict()


@router.post("/renewals", response_model=BatchResultResponse, summary="Run automated renewals now")
async def trigger_renewals(
    automation: BillingAutomationService = Depends(_automation),
) -> dict:  # type: ignore[type-arg]
    return automation.process_automated_renewals().to_dict()


@router.post(
    "/expirations", response_model=BatchResultResponse, summary="Expire past-due subscriptions now"
)
async def trigger_expirations(
    automation: BillingAutomationService = Depends(_automation),
) -> dict:  # type: ignore[type-arg]
    return automation.process_expired_subscriptions().to_dict()


@router.post(
    "/reconcile", response_model=BatchResultResponse, summary="Repair drifted subscriptions now"
)
async def trigger_reconciliation(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> dict:  # type: ignore[type-arg]
    return GatewaySyncService(db, gateway).reconcile_drifted_subscriptions().to_dict()


@router.post(
    "/trials", response_model=BatchResultResponse, summary="Close out ended trials now"
)
async def trigger_trial_expirations(
    automation: BillingAutomationService = Depends(_automation),
) -> dict:  # type: ignore[type-arg]
    return automation.process_trial_expirations().to_dict()


@router.post(
    "/payment_retries",
    response_model=BatchResultResponse,
    summary="Retry failed payments now",
)
async def trigger_payment_retries(
    automation: BillingAutomationService = Depends(_automation),
) -> dict:  # type: ignore[type-arg]
    return automation.process_failed_payment_retries().to_dict()
