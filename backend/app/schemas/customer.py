from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class CustomerCreate(BaseModel):
    external_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)


class CustomerResponse(BaseModel):
    id: UUID
    external_id: str
    name: str
    email: str | None
    remote_customer_id: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
