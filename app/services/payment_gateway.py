"""Payment gateway adapter.

The marketplace does not settle against real payment rails yet. The
``SimulatedPaymentGateway`` stands in for the mobile-money and card
operators: it validates the method and amount limits, charges the
operator's fee, waits a realistic latency and succeeds with a configured
probability. The engine only depends on the ``PaymentGateway`` protocol and
always calls it through ``charge_with_timeout``.
"""
from __future__ import annotations

import asyncio
import logging
import random
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from app.config import Settings, get_settings
from app.services.fees import percent_of
from app.utils.errors import ExternalServiceError
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentMethod:
    id: str
    name: str
    fee_percent: float
    min_amount: int
    max_amount: int
    available: bool = True


PAYMENT_METHODS: dict[str, PaymentMethod] = {
    "wave": PaymentMethod("wave", "Wave", 0, 100, 5_000_000),
    "orange_money": PaymentMethod("orange_money", "Orange Money", 1, 100, 2_000_000),
    "card": PaymentMethod("card", "Carte Bancaire", 2.5, 1_000, 10_000_000),
}


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    reference: str
    fees: int
    message: str
    transaction_id: str = ""
    method: str = ""
    amount: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    async def process_payment(
        self, amount: int, method: str, metadata: Mapping[str, Any] | None = None
    ) -> PaymentResult: ...


def _transaction_id(prefix: str) -> str:
    stamp = format(int(time.time() * 1000), "x").upper()
    return f"{prefix}-{stamp}-{secrets.token_hex(3).upper()}"


def _reference() -> str:
    return f"MBK-{utcnow():%Y%m%d}-{random.randint(0, 9999):04d}"


class SimulatedPaymentGateway:
    """Probabilistic stand-in for the external payment operators."""

    def __init__(
        self,
        *,
        success_rate: float = 0.95,
        min_latency: float = 1.5,
        max_latency: float = 2.5,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = success_rate
        self.min_latency = min_latency
        self.max_latency = max(max_latency, min_latency)
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SimulatedPaymentGateway":
        return cls(
            success_rate=settings.PAYMENT_GATEWAY_SUCCESS_RATE,
            min_latency=settings.PAYMENT_GATEWAY_MIN_LATENCY_SECONDS,
            max_latency=settings.PAYMENT_GATEWAY_MAX_LATENCY_SECONDS,
        )

    async def process_payment(
        self, amount: int, method: str, metadata: Mapping[str, Any] | None = None
    ) -> PaymentResult:
        await asyncio.sleep(self._rng.uniform(self.min_latency, self.max_latency))
        meta = dict(metadata or {})

        payment_method = PAYMENT_METHODS.get(method)
        if payment_method is None or not payment_method.available:
            return PaymentResult(False, "", 0, "Unknown payment method.", method=method, amount=amount, metadata=meta)
        if amount < payment_method.min_amount:
            return PaymentResult(
                False, "", 0, f"Minimum amount is {payment_method.min_amount}.", method=method, amount=amount, metadata=meta
            )
        if amount > payment_method.max_amount:
            return PaymentResult(
                False, "", 0, f"Maximum amount is {payment_method.max_amount}.", method=method, amount=amount, metadata=meta
            )

        fees = percent_of(amount, payment_method.fee_percent)
        if self._rng.random() >= self.success_rate:
            return PaymentResult(
                False,
                _reference(),
                fees,
                "Payment declined by the operator. Please try again.",
                transaction_id=_transaction_id("FAIL"),
                method=method,
                amount=amount,
                metadata=meta,
            )
        return PaymentResult(
            True,
            _reference(),
            fees,
            "Payment completed.",
            transaction_id=_transaction_id("PAY"),
            method=method,
            amount=amount,
            metadata=meta,
        )


async def charge_with_timeout(
    gateway: PaymentGateway,
    amount: int,
    method: str,
    metadata: Mapping[str, Any] | None,
    *,
    timeout: float,
) -> PaymentResult:
    """Call the gateway with a bounded wait and turn every non-success into ``ExternalServiceError``."""

    try:
        result = await asyncio.wait_for(gateway.process_payment(amount, method, metadata), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("Payment gateway timed out", extra={"amount": amount, "method": method, "timeout": timeout})
        raise ExternalServiceError(
            "The payment service did not answer in time. No money was taken; please retry.",
            unavailable=True,
            details={"method": method},
        ) from exc
    except ExternalServiceError:
        raise
    except Exception as exc:
        logger.exception("Payment gateway call failed", extra={"amount": amount, "method": method})
        raise ExternalServiceError(
            "The payment service is unavailable. Please retry later.",
            unavailable=True,
            details={"method": method},
        ) from exc

    if not result.success:
        logger.info(
            "Payment declined by gateway",
            extra={"amount": amount, "method": method, "gateway_message": result.message},
        )
        raise ExternalServiceError(
            result.message or "Payment failed.",
            details={"method": method, "reference": result.reference},
        )
    return result


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway."""

    return SimulatedPaymentGateway.from_settings(get_settings())


__all__ = [
    "PAYMENT_METHODS",
    "PaymentGateway",
    "PaymentMethod",
    "PaymentResult",
    "SimulatedPaymentGateway",
    "charge_with_timeout",
    "get_payment_gateway",
]
