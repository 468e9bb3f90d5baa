from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.schemas.gateway_event import (
    GatewayEventPayload,
    GatewayEventResponse,
    WebhookStatsResponse,
)
from app.services.gateway_events import GatewayEventProcessor
from app.services.payment_gateway import PaymentGatewayBase, get_payment_gateway
from app.services.webhook_idempotency import WebhookIdempotencyService

router = APIRouter()


@router.post(
    "/",
    response_model=GatewayEventResponse,
    summary="Apply a verified payment gateway event",
    responses={404: {"description": "Event references an unknown subscription"}},
)
async def receive_gateway_event(
    payload: GatewayEventPayload,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayBase = Depends(get_payment_gateway),
) -> GatewayEventResponse:
    """Process an event that the signature-checking edge has already authenticated.

    Duplicate deliveries are acknowledged without being applied again.
    """
    outcome = GatewayEventProcessor(db, gateway).process(payload)
    return GatewayEventResponse(
        event_id=outcome.event_id,
        processed=outcome.processed,
        skipped=outcome.skipped,
        reason=outcome.reason,
    )


@router.get("/stats", response_model=WebhookStatsResponse, summary="Event processing statistics")
async def get_event_stats(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    db: Session = Depends(get_db),
) -> WebhookStatsResponse:
    stats = WebhookIdempotencyService(db).get_processing_stats(hours)
    return WebhookStatsResponse(
        window_hours=stats.window_hours,
        total_events=stats.total_events,
        successful_events=stats.successful_events,
        failed_events=stats.failed_events,
        permanently_failed_events=stats.permanently_failed_events,
        retryable_events=stats.retryable_events,
        average_processing_ms=stats.average_processing_ms,
        events_by_type=stats.events_by_type,
    )
