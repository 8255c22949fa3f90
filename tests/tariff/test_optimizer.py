from __future__ import annotations

import time
from datetime import date

import pytest

from dutystack.errors import InvalidInput
from dutystack.tariff.landed_cost import LandedCostCalculator
from dutystack.tariff.optimizer import MAX_RESULTS_CAP, DutyOptimizer, OptimizerRequest
from dutystack.tariff.ranker import ClassificationRanker
from dutystack.tariff.stacking import TariffResolver

AS_OF = date(2025, 6, 10)


class FlakyCalculator(LandedCostCalculator):
    def __init__(self, resolver, failing_code):
        super().__init__(resolver)
        self.failing_code = failing_code

    def calculate(self, code, *args, **kwargs):
        if code == self.failing_code:
            raise RuntimeError("pricing backend down")
        return super().calculate(code, *args, **kwargs)


class SlowCalculator(LandedCostCalculator):
    def calculate(self, code, *args, **kwargs):
        time.sleep(0.5)
        return super().calculate(code, *args, **kwargs)


@pytest.fixture()
def ranker(hierarchy):
    return ClassificationRanker(hierarchy)


@pytest.fixture()
def resolver(hierarchy, registry):
    return TariffResolver(hierarchy, registry)


@pytest.fixture()
def optimizer(ranker, resolver):
    return DutyOptimizer(ranker, LandedCostCalculator(resolver))


def _request(**overrides):
    payload = {
        "product_description": "ceramic coffee mug",
        "country_of_origin": "CN",
        "unit_value": 100.0,
        "as_of": AS_OF,
    }
    payload.update(overrides)
    return OptimizerRequest(**payload)


def test_cheapest_code_first(optimizer):
    result = optimizer.optimize(_request())
    costs = [entry.landed_cost for entry in result.applicable_codes]

    assert costs == sorted(costs)
    assert result.recommended_code == result.applicable_codes[0].code
    assert [entry.code for entry in result.applicable_codes[:2]] == ["69111080", "39249005"]
    assert result.applicable_codes[0].effective_rate == pytest.approx(45.5)


def test_savings_measured_against_most_likely_code(optimizer):
    result = optimizer.optimize(_request())
    summary = result.savings_summary

    assert summary.baseline_code == "69120044"
    assert summary.baseline_rate == pytest.approx(65.0)
    assert summary.best_rate == pytest.approx(45.5)
    assert summary.potential_savings_per_unit == pytest.approx(19.5, abs=0.01)
    baseline_entry = next(e for e in result.applicable_codes if e.code == "69120044")
    assert baseline_entry.savings_vs_baseline == 0.0


def test_every_candidate_in_widened_pool_is_priced(optimizer, ranker):
    result = optimizer.optimize(_request())
    pool = ranker.generate_candidates("ceramic coffee mug", include_siblings=True)
    assert result.savings_summary.evaluated == len(pool.candidates)
    assert result.dropped == ()


def test_max_results_truncates_and_caps(optimizer):
    assert len(optimizer.optimize(_request(max_results=3)).applicable_codes) == 3
    assert optimizer.optimize(_request(max_results=500)).max_results == MAX_RESULTS_CAP


def test_unit_value_defaults_to_one_hundred(optimizer):
    result = optimizer.optimize(_request(unit_value=None))
    assert result.unit_value == 100.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"product_description": "  "},
        {"country_of_origin": "CHN"},
        {"unit_value": 0},
        {"unit_value": float("inf")},
        {"unit_value": float("nan")},
        {"max_results": 0},
    ],
)
def test_invalid_requests_rejected(optimizer, overrides):
    with pytest.raises(InvalidInput):
        optimizer.optimize(_request(**overrides))


def test_optimizer_is_deterministic(optimizer):
    first = optimizer.optimize(_request()).to_dict()
    second = optimizer.optimize(_request()).to_dict()
    assert first == second


def test_failed_candidate_is_dropped_not_fatal(ranker, resolver):
    optimizer = DutyOptimizer(ranker, FlakyCalculator(resolver, "69120044"))
    result = optimizer.optimize(_request())

    assert [d.code for d in result.dropped] == ["69120044"]
    assert result.dropped[0].reason == "RuntimeError: pricing backend down"
    assert "69120044" not in {entry.code for entry in result.applicable_codes}
    assert result.recommended_code == "69111080"
    assert result.savings_summary.dropped == 1


def test_slow_candidates_time_out(ranker, resolver):
    optimizer = DutyOptimizer(ranker, SlowCalculator(resolver), timeout=0.05)
    started = time.perf_counter()
    result = optimizer.optimize(_request())

    assert time.perf_counter() - started < 0.45
    assert result.applicable_codes == ()
    assert result.recommended_code is None
    assert result.dropped
    assert all(d.reason.startswith("timed out") for d in result.dropped)
    assert result.savings_summary.potential_savings_per_unit == 0.0
