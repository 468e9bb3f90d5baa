from typing import Any

from pydantic import BaseModel, Field


class GatewayEventPayload(BaseModel):
    """An already-verified event forwarded from the payment gateway."""

    event_id: str = Field(..., min_length=1, max_length=255)
    event_type: str = Field(..., min_length=1, max_length=100)
    subject_id: str | None = Field(
        default=None,
        description="Gateway subscription id the event refers to.",
    )
    data: dict[str, Any] = Field(default_factory=dict)


class GatewayEventResponse(BaseModel):
    event_id: str
    processed: bool
    skipped: bool
    reason: str


class WebhookStatsResponse(BaseModel):
    window_hours: int
    total_events: int
    successful_events: int
    failed_events: int
    permanently_failed_events: int
    retryable_events: int
    average_processing_ms: float | None
    events_by_type: dict[str, int]
