import pytest

from app.services.fees import calculate_fees, check_breakdown, percent_of
from app.utils.errors import DomainValidationError, InvariantViolationError


def test_standard_breakdown():
    breakdown = calculate_fees(100_000)

    assert breakdown.total_amount == 100_000
    assert breakdown.urgent_surcharge == 0
    assert breakdown.commission_amount == 10_000
    assert breakdown.tva_amount == 18_000
    assert breakdown.artisan_payout == 72_000
    assert breakdown.advance_amount == 0
    assert breakdown.advance_percent == 0


def test_verified_provider_gets_half_the_payout_as_advance():
    breakdown = calculate_fees(100_000, provider_is_verified=True)

    assert breakdown.advance_percent == 50
    assert breakdown.advance_amount == 36_000
    assert breakdown.remaining_payout == 36_000


def test_urgent_surcharge_is_added_before_fees():
    breakdown = calculate_fees(100_000, urgent_surcharge_percent=20)

    assert breakdown.urgent_surcharge == 20_000
    assert breakdown.total_amount == 120_000
    assert breakdown.commission_amount == 12_000
    assert breakdown.tva_amount == 21_600
    assert breakdown.artisan_payout == 86_400


def test_parts_always_sum_to_total_with_rounding():
    for base in (1, 7, 333, 12_345, 99_999):
        breakdown = calculate_fees(base, urgent_surcharge_percent=15, provider_is_verified=True)
        assert breakdown.artisan_payout + breakdown.commission_amount + breakdown.tva_amount == breakdown.total_amount
        assert 0 <= breakdown.advance_amount <= breakdown.artisan_payout


def test_percent_rounds_half_up():
    assert percent_of(5, 10) == 1
    assert percent_of(25, 10) == 3
    assert percent_of(1_000, 2.5) == 25


@pytest.mark.parametrize("amount", [0, -100])
def test_non_positive_amount_rejected(amount):
    with pytest.raises(DomainValidationError):
        calculate_fees(amount)


def test_non_integer_amount_rejected():
    with pytest.raises(DomainValidationError):
        calculate_fees(100.5)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"urgent_surcharge_percent": -1},
        {"commission_percent": 101},
        {"tva_percent": -5},
        {"advance_percent": 150},
    ],
)
def test_out_of_range_percentages_rejected(kwargs):
    with pytest.raises(DomainValidationError):
        calculate_fees(10_000, **kwargs)


def test_commission_and_tva_can_exhaust_the_payout():
    breakdown = calculate_fees(10_000, commission_percent=82, tva_percent=18)

    assert breakdown.artisan_payout == 0


def test_unbalanced_breakdown_is_an_invariant_violation():
    good = calculate_fees(100_000)
    bad = type(good)(**{**good.as_dict(), "tva_amount": good.tva_amount + 1})

    with pytest.raises(InvariantViolationError):
        check_breakdown(bad)
