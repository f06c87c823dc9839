"""Escrow schemas.

The read model is one variant per escrow status, selected on ``status``, so
each state only exposes the fields that are meaningful in it: a pending
escrow has no payment reference and no advance paid.
"""
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.models.escrow import Escrow


class EscrowBreakdown(BaseModel):
    id: int
    project_id: int
    base_amount: int
    urgent_surcharge: int
    total_amount: int
    commission_percent: int
    commission_amount: int
    tva_percent: int
    tva_amount: int
    artisan_payout: int
    advance_percent: int
    advance_amount: int
    created_at: datetime


class PendingEscrow(EscrowBreakdown):
    status: Literal["pending"]


class _Funded(EscrowBreakdown):
    payment_method: str
    payment_reference: str
    gateway_fees: int
    held_at: datetime


class HeldEscrow(_Funded):
    status: Literal["held"]


class AdvancePaidEscrow(_Funded):
    status: Literal["advance_paid"]
    advance_paid: int


class FrozenEscrow(_Funded):
    status: Literal["frozen"]
    advance_paid: int


class ReleasedEscrow(_Funded):
    status: Literal["released"]
    advance_paid: int
    released_amount: int
    refunded_amount: int
    released_at: datetime


class RefundedEscrow(EscrowBreakdown):
    status: Literal["refunded"]
    advance_paid: int
    refunded_amount: int
    released_amount: int
    payment_method: str | None = None
    payment_reference: str | None = None


EscrowRead = Annotated[
    Union[PendingEscrow, HeldEscrow, AdvancePaidEscrow, FrozenEscrow, ReleasedEscrow, RefundedEscrow],
    Field(discriminator="status"),
]

_escrow_adapter: TypeAdapter[Any] = TypeAdapter(EscrowRead)


def escrow_read(escrow: Escrow) -> Any:
    """Build the status-specific read model for an escrow row."""

    data = {column.key: getattr(escrow, column.key) for column in Escrow.__table__.columns}
    data["status"] = escrow.status.value
    return _escrow_adapter.validate_python(data)


class EscrowDeposit(BaseModel):
    payment_method: str = Field(min_length=1, max_length=50)


class EscrowAmountUpdate(BaseModel):
    base_amount: int = Field(gt=0)
    urgent_surcharge_percent: int | None = Field(default=None, ge=0)


class EscrowRefund(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class EscrowEventRead(BaseModel):
    kind: str
    from_status: str | None
    to_status: str
    data_json: dict[str, Any]
    at: datetime

    model_config = ConfigDict(from_attributes=True)
