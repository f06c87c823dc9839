"""Dispute schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.dispute import DisputeStatus, ResolutionMode


class DisputeResolve(BaseModel):
    mode: ResolutionMode
    client_share_percent: int | None = Field(default=None, ge=0, le=100)
    note: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _share_required_for_split(self) -> "DisputeResolve":
        if self.mode is ResolutionMode.SPLIT and self.client_share_percent is None:
            raise ValueError("client_share_percent is required for a split")
        return self


class DisputeRead(BaseModel):
    id: int
    project_id: int
    escrow_id: int
    raised_by: int
    reason: str
    status: DisputeStatus
    resolution: ResolutionMode | None
    client_share_percent: int | None
    client_refund: int | None
    artisan_payment: int | None
    platform_retained: int | None
    resolution_note: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
