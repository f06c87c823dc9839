"""Quote schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.quote import QuoteStatus


class QuoteCreate(BaseModel):
    amount: int = Field(gt=0)
    urgent_surcharge_percent: int | None = Field(default=None, ge=0)
    labor_cost: int | None = Field(default=None, ge=0)
    materials_cost: int | None = Field(default=None, ge=0)
    message: str | None = None
    estimated_duration: str | None = Field(default=None, max_length=100)


class QuoteRevision(QuoteCreate):
    pass


class QuoteReject(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class QuoteRead(BaseModel):
    id: int
    project_id: int
    provider_id: int
    amount: int
    urgent_surcharge_percent: int
    labor_cost: int | None
    materials_cost: int | None
    message: str | None
    estimated_duration: str | None
    revision_count: int
    status: QuoteStatus
    rejection_reason: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
