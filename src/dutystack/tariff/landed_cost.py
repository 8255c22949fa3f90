"""Landed cost: product value + logistics + duties + statutory fees.

Internal math runs at full float precision; money is rounded half-up to
cents only when the result object is built.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Protocol

from dutystack.errors import InvalidInput
from dutystack.tariff.stacking import EffectiveTariffResult

MPF_RATE = 0.003464
MPF_MIN = 31.67
MPF_MAX = 614.35
HMF_RATE = 0.00125


class RateResolver(Protocol):
    def resolve(self, code: str, country: str, as_of: Optional[date] = None) -> EffectiveTariffResult: ...


def round_money(value: float) -> float:
    return float(Decimal(repr(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def merchandise_processing_fee(product_value: float) -> float:
    return min(max(product_value * MPF_RATE, MPF_MIN), MPF_MAX)


def harbor_maintenance_fee(product_value: float, is_ocean: bool) -> float:
    return product_value * HMF_RATE if is_ocean else 0.0


@dataclass(frozen=True)
class LandedCostResult:
    hts_code: str
    country: str
    product_value: float
    quantity: float
    shipping_cost: float
    insurance_cost: float
    effective_rate: float
    duties: float
    mpf: float
    hmf: float
    fees_total: float
    total_landed_cost: float
    per_unit_cost: float
    is_ocean_shipment: bool
    duty_breakdown: Optional[EffectiveTariffResult] = None

    @property
    def fta_applied(self) -> bool:
        return bool(self.duty_breakdown and self.duty_breakdown.fta_discount > 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hts_code": self.hts_code,
            "country": self.country,
            "product_value": self.product_value,
            "quantity": self.quantity,
            "shipping_cost": self.shipping_cost,
            "insurance_cost": self.insurance_cost,
            "effective_rate": self.effective_rate,
            "duties": self.duties,
            "mpf": self.mpf,
            "hmf": self.hmf,
            "fees_total": self.fees_total,
            "total_landed_cost": self.total_landed_cost,
            "per_unit_cost": self.per_unit_cost,
            "is_ocean_shipment": self.is_ocean_shipment,
            "fta_applied": self.fta_applied,
            "duty_breakdown": self.duty_breakdown.to_dict() if self.duty_breakdown else None,
        }


def _require_finite(name: str, value: Optional[float]) -> float:
    if value is None or isinstance(value, bool):
        raise InvalidInput(f"{name} is required")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{name} must be a number (got {value!r})") from exc
    if not math.isfinite(number):
        raise InvalidInput(f"{name} must be a finite number (got {value!r})")
    return number


def validate_landed_cost_inputs(
    product_value: float,
    quantity: float,
    shipping: float = 0.0,
    insurance: float = 0.0,
) -> None:
    product_value = _require_finite("product_value", product_value)
    quantity = _require_finite("quantity", quantity)
    shipping = _require_finite("shipping_cost", shipping)
    insurance = _require_finite("insurance_cost", insurance)
    if product_value <= 0:
        raise InvalidInput(f"product_value must be greater than 0 (got {product_value})")
    if quantity <= 0:
        raise InvalidInput(f"quantity must be greater than 0 (got {quantity})")
    if shipping < 0:
        raise InvalidInput(f"shipping_cost cannot be negative (got {shipping})")
    if insurance < 0:
        raise InvalidInput(f"insurance_cost cannot be negative (got {insurance})")


def landed_cost_from_rate(
    *,
    hts_code: str,
    country: str,
    effective_rate: float,
    product_value: float,
    quantity: float,
    shipping: float = 0.0,
    insurance: float = 0.0,
    is_ocean: bool = True,
    duty_breakdown: Optional[EffectiveTariffResult] = None,
) -> LandedCostResult:
    """Pure landed-cost computation for an already-resolved effective rate."""
    validate_landed_cost_inputs(product_value, quantity, shipping, insurance)

    duties = product_value * effective_rate / 100.0
    mpf = merchandise_processing_fee(product_value)
    hmf = harbor_maintenance_fee(product_value, is_ocean)
    fees = mpf + hmf
    total = product_value + shipping + insurance + duties + fees
    per_unit = total / quantity

    return LandedCostResult(
        hts_code=hts_code,
        country=country,
        product_value=round_money(product_value),
        quantity=quantity,
        shipping_cost=round_money(shipping),
        insurance_cost=round_money(insurance),
        effective_rate=effective_rate,
        duties=round_money(duties),
        mpf=round_money(mpf),
        hmf=round_money(hmf),
        fees_total=round_money(fees),
        total_landed_cost=round_money(total),
        per_unit_cost=round_money(per_unit),
        is_ocean_shipment=is_ocean,
        duty_breakdown=duty_breakdown,
    )


class LandedCostCalculator:
    def __init__(self, resolver: RateResolver) -> None:
        self.resolver = resolver

    def calculate(
        self,
        code: str,
        country: str,
        product_value: float,
        quantity: float,
        shipping: float = 0.0,
        insurance: float = 0.0,
        is_ocean: bool = True,
        as_of: Optional[date] = None,
    ) -> LandedCostResult:
        # Reject bad input before touching the resolver.
        validate_landed_cost_inputs(product_value, quantity, shipping, insurance)
        tariff = self.resolver.resolve(code, country, as_of)
        return landed_cost_from_rate(
            hts_code=tariff.code,
            country=tariff.country,
            effective_rate=tariff.effective_rate,
            product_value=product_value,
            quantity=quantity,
            shipping=shipping,
            insurance=insurance,
            is_ocean=is_ocean,
            duty_breakdown=tariff,
        )
