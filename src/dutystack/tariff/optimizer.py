"""Duty optimizer: cheapest defensible code for a product.

Widens the ranker's candidate pool, prices every code through the landed
cost calculator on a bounded worker pool, and orders the survivors by
landed cost. Candidates that time out or fail are dropped and reported;
they never fail the request.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from dutystack.errors import InvalidInput
from dutystack.observability import log_event
from dutystack.tariff.hierarchy import format_code
from dutystack.tariff.landed_cost import LandedCostCalculator, LandedCostResult, round_money
from dutystack.tariff.layers import normalize_country
from dutystack.tariff.oracle import ClassificationHints
from dutystack.tariff.ranker import ClassificationCandidate, ClassificationRanker

logger = logging.getLogger(__name__)

DEFAULT_UNIT_VALUE = 100.0
DEFAULT_MAX_RESULTS = 20
MAX_RESULTS_CAP = 50


@dataclass(frozen=True)
class OptimizerRequest:
    product_description: str
    country_of_origin: str
    unit_value: Optional[float] = None
    max_results: int = DEFAULT_MAX_RESULTS
    material: Optional[str] = None
    intended_use: Optional[str] = None
    as_of: Optional[date] = None


@dataclass(frozen=True)
class OptimizedCode:
    code: str
    description: str
    confidence: float
    effective_rate: float
    landed_cost: float
    savings_vs_baseline: float
    stale: bool = False
    flags: Tuple[str, ...] = ()

    @property
    def display_code(self) -> str:
        return format_code(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "display_code": self.display_code,
            "description": self.description,
            "confidence": self.confidence,
            "effective_rate": self.effective_rate,
            "landed_cost": self.landed_cost,
            "savings_vs_baseline": self.savings_vs_baseline,
            "stale": self.stale,
            "flags": list(self.flags),
        }


@dataclass(frozen=True)
class DroppedCandidate:
    code: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "reason": self.reason}


@dataclass(frozen=True)
class SavingsSummary:
    baseline_code: Optional[str]
    baseline_rate: Optional[float]
    best_rate: Optional[float]
    worst_rate: Optional[float]
    potential_savings_per_unit: float
    evaluated: int
    dropped: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline_code": self.baseline_code,
            "baseline_rate": self.baseline_rate,
            "best_rate": self.best_rate,
            "worst_rate": self.worst_rate,
            "potential_savings_per_unit": self.potential_savings_per_unit,
            "evaluated": self.evaluated,
            "dropped": self.dropped,
        }


@dataclass(frozen=True)
class OptimizerResult:
    product_description: str
    country_of_origin: str
    unit_value: float
    applicable_codes: Tuple[OptimizedCode, ...]
    recommended_code: Optional[str]
    max_results: int
    savings_summary: SavingsSummary
    dropped: Tuple[DroppedCandidate, ...] = ()
    flags: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_description": self.product_description,
            "country_of_origin": self.country_of_origin,
            "unit_value": self.unit_value,
            "applicable_codes": [entry.to_dict() for entry in self.applicable_codes],
            "recommended_code": self.recommended_code,
            "max_results": self.max_results,
            "savings_summary": self.savings_summary.to_dict(),
            "dropped": [entry.to_dict() for entry in self.dropped],
            "flags": list(self.flags),
        }


def _validate(request: OptimizerRequest) -> Tuple[str, float, int]:
    if not request.product_description or not request.product_description.strip():
        raise InvalidInput("product_description must not be empty")
    country = normalize_country(request.country_of_origin)
    unit_value = DEFAULT_UNIT_VALUE if request.unit_value is None else float(request.unit_value)
    if not math.isfinite(unit_value) or unit_value <= 0:
        raise InvalidInput(f"unit_value must be a finite number greater than 0 (got {unit_value})")
    if request.max_results is None or request.max_results < 1:
        raise InvalidInput(f"max_results must be at least 1 (got {request.max_results})")
    return country, unit_value, min(int(request.max_results), MAX_RESULTS_CAP)


class DutyOptimizer:
    def __init__(
        self,
        ranker: ClassificationRanker,
        calculator: LandedCostCalculator,
        *,
        workers: int = 8,
        timeout: float = 10.0,
    ) -> None:
        self.ranker = ranker
        self.calculator = calculator
        self.workers = max(1, workers)
        self.timeout = timeout

    def _price(
        self,
        candidate: ClassificationCandidate,
        country: str,
        unit_value: float,
        as_of: Optional[date],
    ) -> LandedCostResult:
        return self.calculator.calculate(candidate.code, country, unit_value, 1, as_of=as_of)

    def _evaluate(
        self,
        candidates: Tuple[ClassificationCandidate, ...],
        country: str,
        unit_value: float,
        as_of: Optional[date],
    ) -> Tuple[List[Tuple[ClassificationCandidate, LandedCostResult]], List[DroppedCandidate]]:
        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="optimizer")
        futures: Dict[Future, ClassificationCandidate] = {}
        try:
            for candidate in candidates:
                futures[executor.submit(self._price, candidate, country, unit_value, as_of)] = candidate
            done, not_done = wait(futures, timeout=self.timeout)
        finally:
            # Unfinished work is abandoned, not awaited.
            executor.shutdown(wait=False, cancel_futures=True)

        priced: List[Tuple[ClassificationCandidate, LandedCostResult]] = []
        dropped: List[DroppedCandidate] = []
        for future in not_done:
            future.cancel()
            dropped.append(DroppedCandidate(futures[future].code, f"timed out after {self.timeout:.1f}s"))
        for future in done:
            candidate = futures[future]
            exc = future.exception()
            if exc is not None:
                dropped.append(DroppedCandidate(candidate.code, f"{type(exc).__name__}: {exc}"))
                continue
            priced.append((candidate, future.result()))

        dropped.sort(key=lambda item: item.code)
        for item in dropped:
            log_event("optimizer.dropped", level=logging.WARNING, code=item.code, reason=item.reason)
        return priced, dropped

    def optimize(self, request: OptimizerRequest) -> OptimizerResult:
        country, unit_value, max_results = _validate(request)
        hints = ClassificationHints(
            material=request.material,
            intended_use=request.intended_use,
            country_of_origin=country,
            unit_value=unit_value,
        )
        pool = self.ranker.generate_candidates(request.product_description, hints, include_siblings=True)
        priced, dropped = self._evaluate(pool.candidates, country, unit_value, request.as_of)

        baseline: Optional[Tuple[ClassificationCandidate, LandedCostResult]] = None
        if priced:
            baseline = min(priced, key=lambda item: (-item[0].confidence, -len(item[0].code), item[0].code))
        baseline_cost = baseline[1].total_landed_cost if baseline else 0.0

        ordered = sorted(
            priced,
            key=lambda item: (item[1].total_landed_cost, -item[0].confidence, item[0].code),
        )
        entries: List[OptimizedCode] = []
        for candidate, cost in ordered[:max_results]:
            breakdown = cost.duty_breakdown
            entries.append(
                OptimizedCode(
                    code=candidate.code,
                    description=candidate.description,
                    confidence=candidate.confidence,
                    effective_rate=cost.effective_rate,
                    landed_cost=cost.total_landed_cost,
                    savings_vs_baseline=round_money(baseline_cost - cost.total_landed_cost),
                    stale=bool(breakdown and breakdown.stale),
                    flags=tuple(breakdown.flags) if breakdown else (),
                )
            )

        rates = [cost.effective_rate for _, cost in priced]
        summary = SavingsSummary(
            baseline_code=baseline[0].code if baseline else None,
            baseline_rate=baseline[1].effective_rate if baseline else None,
            best_rate=min(rates) if rates else None,
            worst_rate=max(rates) if rates else None,
            potential_savings_per_unit=round_money(baseline_cost - ordered[0][1].total_landed_cost) if ordered else 0.0,
            evaluated=len(priced),
            dropped=len(dropped),
        )
        log_event(
            "optimizer.complete",
            evaluated=len(priced),
            dropped=len(dropped),
            recommended=entries[0].code if entries else None,
        )
        return OptimizerResult(
            product_description=request.product_description,
            country_of_origin=country,
            unit_value=unit_value,
            applicable_codes=tuple(entries),
            recommended_code=entries[0].code if entries else None,
            max_results=max_results,
            savings_summary=summary,
            dropped=tuple(dropped),
            flags=pool.flags,
        )
