"""Cross-origin duty comparison.

One code is priced from several origins on the same shipment terms, so
the only thing that varies between rows is the duty stack. Rows are
ordered cheapest first; savings are measured against the origin the
importer sources from today.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dutystack.errors import InvalidInput
from dutystack.observability import log_event
from dutystack.tariff.countries import country_name
from dutystack.tariff.landed_cost import LandedCostCalculator, LandedCostResult, round_money, validate_landed_cost_inputs
from dutystack.tariff.layers import normalize_country

# Origins priced when the caller names none: the usual sourcing shortlist.
DEFAULT_COMPARISON_ORIGINS: Tuple[str, ...] = ("CN", "VN", "IN", "MX", "TH", "ID", "BD", "KR", "TW", "MY")
MAX_COMPARISON_ORIGINS = 50


@dataclass(frozen=True)
class OriginCost:
    country: str
    country_name: str
    effective_rate: float
    duties: float
    fees_total: float
    total_landed_cost: float
    per_unit_cost: float
    fta_program: Optional[str] = None
    savings_vs_current: Optional[float] = None
    savings_percent: Optional[float] = None
    is_current: bool = False
    is_cheapest: bool = False
    adcvd_warning: Optional[str] = None
    flags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country": self.country,
            "country_name": self.country_name,
            "effective_rate": self.effective_rate,
            "duties": self.duties,
            "fees_total": self.fees_total,
            "total_landed_cost": self.total_landed_cost,
            "per_unit_cost": self.per_unit_cost,
            "fta_program": self.fta_program,
            "savings_vs_current": self.savings_vs_current,
            "savings_percent": self.savings_percent,
            "is_current": self.is_current,
            "is_cheapest": self.is_cheapest,
            "adcvd_warning": self.adcvd_warning,
            "flags": list(self.flags),
        }


@dataclass(frozen=True)
class OriginComparison:
    hts_code: str
    as_of: date
    product_value: float
    quantity: float
    current_origin: Optional[str]
    origins: Tuple[OriginCost, ...]
    cheapest_origin: str
    most_expensive_origin: str
    average_landed_cost: float
    max_savings: Optional[float] = None

    def origin(self, country: str) -> OriginCost:
        code = normalize_country(country)
        for row in self.origins:
            if row.country == code:
                return row
        raise KeyError(code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hts_code": self.hts_code,
            "as_of": self.as_of.isoformat(),
            "product_value": self.product_value,
            "quantity": self.quantity,
            "current_origin": self.current_origin,
            "origins": [row.to_dict() for row in self.origins],
            "cheapest_origin": self.cheapest_origin,
            "most_expensive_origin": self.most_expensive_origin,
            "average_landed_cost": self.average_landed_cost,
            "max_savings": self.max_savings,
        }


def _dedupe_origins(countries: Sequence[str], current_origin: Optional[str]) -> List[str]:
    ordered: List[str] = []
    for raw in list(countries) + ([current_origin] if current_origin else []):
        code = normalize_country(raw)
        if code not in ordered:
            ordered.append(code)
    return ordered


def _money_delta(baseline: float, value: float) -> float:
    return round_money(float(Decimal(repr(baseline)) - Decimal(repr(value))))


def _row(priced: LandedCostResult) -> OriginCost:
    tariff = priced.duty_breakdown
    return OriginCost(
        country=priced.country,
        country_name=country_name(priced.country),
        effective_rate=priced.effective_rate,
        duties=priced.duties,
        fees_total=priced.fees_total,
        total_landed_cost=priced.total_landed_cost,
        per_unit_cost=priced.per_unit_cost,
        fta_program=tariff.fta_program if tariff else None,
        adcvd_warning=tariff.adcvd_warning.message if tariff and tariff.adcvd_warning else None,
        flags=tariff.flags if tariff else (),
    )


class OriginComparer:
    """Price one code from several origins with a shared calculator."""

    def __init__(self, calculator: LandedCostCalculator) -> None:
        self.calculator = calculator

    def compare(
        self,
        code: str,
        countries: Optional[Sequence[str]] = None,
        *,
        current_origin: Optional[str] = None,
        product_value: float = 10000.0,
        quantity: float = 1.0,
        shipping: float = 0.0,
        insurance: float = 0.0,
        is_ocean: bool = True,
        as_of: Optional[date] = None,
    ) -> OriginComparison:
        validate_landed_cost_inputs(product_value, quantity, shipping, insurance)
        current = normalize_country(current_origin) if current_origin else None
        origins = _dedupe_origins(countries or DEFAULT_COMPARISON_ORIGINS, current)
        if len(origins) > MAX_COMPARISON_ORIGINS:
            raise InvalidInput(
                f"At most {MAX_COMPARISON_ORIGINS} origins can be compared (got {len(origins)})"
            )
        as_of = as_of or date.today()

        priced = [
            self.calculator.calculate(code, origin, product_value, quantity, shipping, insurance, is_ocean, as_of)
            for origin in origins
        ]
        rows = [_row(result) for result in priced]
        rows.sort(key=lambda row: (row.total_landed_cost, row.country))

        baseline = next((row.total_landed_cost for row in rows if row.country == current), None)
        finished: List[OriginCost] = []
        for index, row in enumerate(rows):
            savings = percent = None
            if baseline is not None:
                savings = _money_delta(baseline, row.total_landed_cost)
                percent = round(savings / baseline * 100.0, 2)
            finished.append(
                replace(
                    row,
                    savings_vs_current=savings,
                    savings_percent=percent,
                    is_current=row.country == current,
                    is_cheapest=index == 0,
                )
            )

        average = round_money(sum(row.total_landed_cost for row in finished) / len(finished))
        comparison = OriginComparison(
            hts_code=priced[0].hts_code,
            as_of=as_of,
            product_value=round_money(product_value),
            quantity=quantity,
            current_origin=current,
            origins=tuple(finished),
            cheapest_origin=finished[0].country,
            most_expensive_origin=finished[-1].country,
            average_landed_cost=average,
            max_savings=finished[0].savings_vs_current,
        )
        log_event(
            "compare.complete",
            code=comparison.hts_code,
            origins=len(finished),
            cheapest=comparison.cheapest_origin,
            current=current,
            max_savings=comparison.max_savings,
        )
        return comparison
