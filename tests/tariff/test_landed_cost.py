from __future__ import annotations

from datetime import date

import pytest

from dutystack.errors import InvalidInput
from dutystack.tariff.landed_cost import (
    MPF_MAX,
    MPF_MIN,
    MPF_RATE,
    LandedCostCalculator,
    landed_cost_from_rate,
    merchandise_processing_fee,
    round_money,
)
from dutystack.tariff.stacking import TariffResolver


def test_vietnam_shipment_worked_example():
    result = landed_cost_from_rate(
        hts_code="6109100010",
        country="VN",
        effective_rate=7.5,
        product_value=10000,
        quantity=500,
        shipping=300,
        insurance=50,
        is_ocean=True,
    )
    assert result.duties == 750.00
    assert result.mpf == 34.64
    assert result.hmf == 12.50
    assert result.fees_total == 47.14
    assert result.total_landed_cost == 11147.14
    assert result.per_unit_cost == 22.29


@pytest.mark.parametrize(
    "value, expected",
    [(1000, 31.67), (10000, 34.64), (1_000_000, 614.35)],
)
def test_mpf_is_clamped(value, expected):
    assert round_money(merchandise_processing_fee(value)) == expected


def test_air_shipments_pay_no_hmf():
    result = landed_cost_from_rate(
        hts_code="85423100", country="TW", effective_rate=0.0, product_value=5000, quantity=10, is_ocean=False
    )
    assert result.hmf == 0.0
    assert result.total_landed_cost == 5031.67


def test_rounding_is_half_up_at_output_only():
    assert round_money(0.125) == 0.13
    assert round_money(2.675) == 2.68
    result = landed_cost_from_rate(
        hts_code="x", country="CN", effective_rate=3.333, product_value=1234.56, quantity=3
    )
    duties = 1234.56 * 3.333 / 100.0
    fees = 31.67 + 1234.56 * 0.00125
    raw_total = 1234.56 + 0.0 + 0.0 + duties + fees
    assert result.total_landed_cost == round_money(raw_total)
    assert result.per_unit_cost == round_money(raw_total / 3)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"product_value": 0, "quantity": 1},
        {"product_value": -5, "quantity": 1},
        {"product_value": 100, "quantity": 0},
        {"product_value": 100, "quantity": 1, "shipping": -1},
        {"product_value": 100, "quantity": 1, "insurance": -0.01},
        {"product_value": float("inf"), "quantity": 1},
        {"product_value": float("nan"), "quantity": 1},
        {"product_value": 100, "quantity": float("nan")},
        {"product_value": 100, "quantity": float("inf")},
        {"product_value": 100, "quantity": 1, "shipping": float("inf")},
        {"product_value": 100, "quantity": 1, "insurance": float("nan")},
    ],
)
def test_invalid_inputs_rejected(kwargs):
    with pytest.raises(InvalidInput):
        landed_cost_from_rate(hts_code="x", country="CN", effective_rate=5.0, **kwargs)


class ExplodingResolver:
    def resolve(self, code, country, as_of=None):
        raise AssertionError("resolver must not be called for invalid input")


def test_calculator_validates_before_resolving():
    with pytest.raises(InvalidInput):
        LandedCostCalculator(ExplodingResolver()).calculate("6109100010", "CN", 100.0, 0)


def test_calculator_uses_resolved_rate(hierarchy, registry):
    calculator = LandedCostCalculator(TariffResolver(hierarchy, registry))
    result = calculator.calculate("6109100010", "KR", 10000, 500, 300, 50, True, date(2025, 6, 10))
    assert result.effective_rate == pytest.approx(10.0)
    assert result.duties == 1000.00
    assert result.fta_applied
    assert result.duty_breakdown.fta_program == "KORUS"
    payload = result.to_dict()
    assert payload["duty_breakdown"]["code"] == "6109100010"
    assert payload["fta_applied"] is True


def test_non_finite_value_rejected_before_resolving():
    with pytest.raises(InvalidInput):
        LandedCostCalculator(ExplodingResolver()).calculate("6109100010", "CN", float("inf"), 1)


@pytest.mark.parametrize("is_ocean", [True, False])
def test_landed_cost_never_decreases_with_value(is_ocean):
    low_clamp = MPF_MIN / MPF_RATE
    high_clamp = MPF_MAX / MPF_RATE
    values = sorted(
        {0.01, 1.0, 500.0, 5000.0, 50_000.0, 150_000.0, 500_000.0, 2_000_000.0}
        | {low_clamp + step for step in (-1.0, -0.01, 0.0, 0.01, 1.0)}
        | {high_clamp + step for step in (-1.0, -0.01, 0.0, 0.01, 1.0)}
        | {float(v) for v in range(100, 200_001, 1_337)}
    )
    totals = [
        landed_cost_from_rate(
            hts_code="6109100010",
            country="VN",
            effective_rate=7.5,
            product_value=value,
            quantity=1,
            is_ocean=is_ocean,
        ).total_landed_cost
        for value in values
    ]
    assert all(later >= earlier for earlier, later in zip(totals, totals[1:]))
    assert 9142 < low_clamp < 9143
    assert 177352 < high_clamp < 177353
