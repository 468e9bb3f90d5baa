from pydantic import BaseModel


class BatchFailureResponse(BaseModel):
    subscription_id: str
    error: str


class BatchResultResponse(BaseModel):
    operation: str
    total: int
    processed: int
    failed: int
    failures: list[BatchFailureResponse]


class AutomationStatusResponse(BaseModel):
    due_for_billing: int
    due_for_renewal: int
    past_due_active: int
    trials_ending: int
    payment_failed: int
    drifted: int
    renewal_lookahead_days: int
