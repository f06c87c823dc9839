"""Fee calculator: quoted amount plus modifiers to a full cost breakdown.

All amounts are integers in the smallest currency unit. Percentages are
applied with half-up rounding to the nearest unit. Commission and TVA are
both taken on ``total_amount`` (gross), and the artisan receives what is
left after both.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.utils.errors import DomainValidationError, InvariantViolationError

DEFAULT_COMMISSION_PERCENT = 10
TVA_PERCENT = 18
VERIFIED_ADVANCE_PERCENT = 50


def percent_of(amount: int, percent: int | float | Decimal) -> int:
    """Return ``amount * percent / 100`` rounded half-up to an integer."""

    value = Decimal(amount) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FeeBreakdown:
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

    @property
    def remaining_payout(self) -> int:
        return self.artisan_payout - self.advance_amount

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _require_percent(name: str, value: int, *, upper: int | None = 100) -> None:
    if value < 0 or (upper is not None and value > upper):
        bound = f"[0, {upper}]" if upper is not None else ">= 0"
        raise DomainValidationError(f"{name} must be {bound}, got {value}.", details={name: value})


def check_breakdown(breakdown: FeeBreakdown) -> FeeBreakdown:
    """Raise ``InvariantViolationError`` unless the breakdown balances."""

    parts = breakdown.artisan_payout + breakdown.commission_amount + breakdown.tva_amount
    if parts != breakdown.total_amount:
        raise InvariantViolationError(
            "Fee breakdown does not sum to total_amount.",
            details={**breakdown.as_dict(), "sum_of_parts": parts},
        )
    if breakdown.total_amount != breakdown.base_amount + breakdown.urgent_surcharge:
        raise InvariantViolationError("total_amount != base_amount + urgent_surcharge.", details=breakdown.as_dict())
    negative = [name for name, value in breakdown.as_dict().items() if value < 0]
    if negative:
        raise InvariantViolationError(
            f"Fee breakdown has negative fields: {', '.join(negative)}.",
            details=breakdown.as_dict(),
        )
    if breakdown.advance_amount > breakdown.artisan_payout:
        raise InvariantViolationError("advance_amount exceeds artisan_payout.", details=breakdown.as_dict())
    return breakdown


def calculate_fees(
    base_amount: int,
    *,
    urgent_surcharge_percent: int = 0,
    commission_percent: int = DEFAULT_COMMISSION_PERCENT,
    tva_percent: int = TVA_PERCENT,
    provider_is_verified: bool = False,
    advance_percent: int = VERIFIED_ADVANCE_PERCENT,
) -> FeeBreakdown:
    """Compute the escrow breakdown for a quoted amount.

    ``urgent_surcharge_percent`` of 0 means the job is not urgent. The advance
    only applies to verified providers; for everyone else ``advance_percent``
    is recorded as 0.
    """

    if isinstance(base_amount, bool) or not isinstance(base_amount, int):
        raise DomainValidationError("base_amount must be an integer amount in minor units.")
    if base_amount <= 0:
        raise DomainValidationError(
            f"base_amount must be positive, got {base_amount}.", details={"base_amount": base_amount}
        )
    _require_percent("urgent_surcharge_percent", urgent_surcharge_percent, upper=None)
    _require_percent("commission_percent", commission_percent)
    _require_percent("tva_percent", tva_percent)
    _require_percent("advance_percent", advance_percent)

    urgent_surcharge = percent_of(base_amount, urgent_surcharge_percent) if urgent_surcharge_percent else 0
    total_amount = base_amount + urgent_surcharge
    commission_amount = percent_of(total_amount, commission_percent)
    tva_amount = percent_of(total_amount, tva_percent)
    artisan_payout = total_amount - commission_amount - tva_amount
    effective_advance_percent = advance_percent if provider_is_verified else 0
    advance_amount = percent_of(artisan_payout, effective_advance_percent) if provider_is_verified else 0

    return check_breakdown(
        FeeBreakdown(
            base_amount=base_amount,
            urgent_surcharge=urgent_surcharge,
            total_amount=total_amount,
            commission_percent=commission_percent,
            commission_amount=commission_amount,
            tva_percent=tva_percent,
            tva_amount=tva_amount,
            artisan_payout=artisan_payout,
            advance_percent=effective_advance_percent,
            advance_amount=advance_amount,
        )
    )


__all__ = [
    "DEFAULT_COMMISSION_PERCENT",
    "TVA_PERCENT",
    "VERIFIED_ADVANCE_PERCENT",
    "FeeBreakdown",
    "calculate_fees",
    "check_breakdown",
    "percent_of",
]
