"""Rate stacking resolver.

Combines base MFN + additional-duty programs - FTA preference into one
effective rate:

    effective = max(0, base_mfn + sum(program rates after exclusions) - fta_discount)

Exclusions are netted per program (floor 0 per program). The FTA
discount only reduces the base MFN rate; trade-remedy programs are never
waived by an agreement. Summation order is fixed by program id so the
result does not depend on the order layers arrive in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from dutystack.errors import ADCVD_WARNING, RATE_UNPARSED, STALE_RATE
from dutystack.tariff.adcvd import AdcvdOrderTable, AdcvdWarning
from dutystack.tariff.countries import country_name
from dutystack.tariff.fta import find_special_rate
from dutystack.tariff.hierarchy import CodeHierarchyStore, HtsNode, normalize_code
from dutystack.tariff.layers import LayerRate, TariffLayer, TariffLayerRegistry, normalize_country
from dutystack.tariff.rate_cache import RateCache
from dutystack.tariff.rate_parser import ParsedRate, parse_rate_expression

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class AppliedDuty:
    program_id: str
    rate: float
    layer_id: str
    scope_pattern: str
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program_id": self.program_id,
            "rate": self.rate,
            "layer_id": self.layer_id,
            "scope_pattern": self.scope_pattern,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class EffectiveTariffResult:
    code: str
    country: str
    country_name: str
    as_of: date
    base_mfn_rate: float
    additional_duties: Tuple[AppliedDuty, ...]
    total_additional_duties: float
    fta_discount: float
    effective_rate: float
    fta_program: Optional[str] = None
    excluded_programs: Tuple[str, ...] = ()
    base_rate_text: str = ""
    base_rate_kind: str = "ad_valorem"
    base_rate_source: Optional[str] = None
    rate_unparsed: bool = False
    stale: bool = False
    flags: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    adcvd_warning: Optional[AdcvdWarning] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "country": self.country,
            "country_name": self.country_name,
            "as_of": self.as_of.isoformat(),
            "base_mfn_rate": self.base_mfn_rate,
            "additional_duties": [duty.to_dict() for duty in self.additional_duties],
            "total_additional_duties": self.total_additional_duties,
            "fta_discount": self.fta_discount,
            "fta_program": self.fta_program,
            "effective_rate": self.effective_rate,
            "excluded_programs": list(self.excluded_programs),
            "base_rate_text": self.base_rate_text,
            "base_rate_kind": self.base_rate_kind,
            "base_rate_source": self.base_rate_source,
            "rate_unparsed": self.rate_unparsed,
            "stale": self.stale,
            "flags": list(self.flags),
            "warnings": list(self.warnings),
            "adcvd_warning": self.adcvd_warning.to_dict() if self.adcvd_warning else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EffectiveTariffResult":
        return cls(
            code=str(payload["code"]),
            country=str(payload["country"]),
            country_name=str(payload["country_name"]),
            as_of=date.fromisoformat(str(payload["as_of"])),
            base_mfn_rate=float(payload["base_mfn_rate"]),
            additional_duties=tuple(AppliedDuty(**duty) for duty in payload.get("additional_duties", [])),
            total_additional_duties=float(payload["total_additional_duties"]),
            fta_discount=float(payload["fta_discount"]),
            effective_rate=float(payload["effective_rate"]),
            fta_program=payload.get("fta_program"),
            excluded_programs=tuple(payload.get("excluded_programs", [])),
            base_rate_text=str(payload.get("base_rate_text", "")),
            base_rate_kind=str(payload.get("base_rate_kind", "ad_valorem")),
            base_rate_source=payload.get("base_rate_source"),
            rate_unparsed=bool(payload.get("rate_unparsed", False)),
            stale=bool(payload.get("stale", False)),
            flags=tuple(payload.get("flags", [])),
            warnings=tuple(payload.get("warnings", [])),
            adcvd_warning=AdcvdWarning.from_dict(payload["adcvd_warning"]) if payload.get("adcvd_warning") else None,
        )


@dataclass(frozen=True)
class StackOutcome:
    additional_duties: Tuple[AppliedDuty, ...]
    excluded_programs: Tuple[str, ...]
    total_additional_duties: float
    effective_rate: float


# ---------------------------------------------------------------------------
# Pure stacking
# ---------------------------------------------------------------------------
def stack_layers(
    base_mfn_rate: float,
    matched: Iterable[Tuple[TariffLayer, LayerRate]],
    fta_discount: float = 0.0,
) -> StackOutcome:
    """Combine matched layers into the effective rate.

    ``matched`` may arrive in any order. Programs are reported by
    ``(precedence_class, program_id)`` and summed in program-id order.
    """
    additive: Dict[str, List[Tuple[TariffLayer, LayerRate]]] = {}
    subtractive: Dict[str, List[Tuple[TariffLayer, LayerRate]]] = {}
    for layer, rate in matched:
        bucket = subtractive if layer.exclusion else additive
        bucket.setdefault(layer.program_id, []).append((layer, rate))

    applied: List[AppliedDuty] = []
    excluded: List[str] = []
    order = sorted(
        additive,
        key=lambda pid: (min(layer.precedence_class for layer, _ in additive[pid]), pid),
    )
    for program_id in order:
        adds = sorted(additive[program_id], key=lambda item: item[0].layer_id)
        subs = sorted(subtractive.get(program_id, []), key=lambda item: item[0].layer_id)
        gross = sum(rate.rate for _, rate in adds)
        if any(rate.waives_program for _, rate in subs):
            net = 0.0
        else:
            net = max(0.0, gross - sum(rate.rate for _, rate in subs))
        if net <= 0.0:
            if subs:
                excluded.append(program_id)
            continue
        lead_layer = adds[0][0]
        applied.append(
            AppliedDuty(
                program_id=program_id,
                rate=net,
                layer_id=",".join(layer.layer_id for layer, _ in adds),
                scope_pattern=lead_layer.scope_pattern,
                stale=any(rate.stale for _, rate in adds),
            )
        )

    total_additional = sum(duty.rate for duty in sorted(applied, key=lambda duty: duty.program_id))
    effective = max(0.0, base_mfn_rate + total_additional - fta_discount)
    return StackOutcome(
        additional_duties=tuple(applied),
        excluded_programs=tuple(excluded),
        total_additional_duties=total_additional,
        effective_rate=effective,
    )


def _base_rate_node(chain: Sequence[HtsNode]) -> Optional[HtsNode]:
    for node in reversed(chain):
        if node.general_rate:
            return node
    return None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------
class TariffResolver:
    """Resolve ``(code, country, as_of)`` into an EffectiveTariffResult."""

    def __init__(
        self,
        hierarchy: CodeHierarchyStore,
        registry: TariffLayerRegistry,
        adcvd_orders: Optional[AdcvdOrderTable] = None,
    ) -> None:
        self.hierarchy = hierarchy
        self.registry = registry
        self.adcvd_orders = adcvd_orders

    def resolve(self, code: str, country: str, as_of: Optional[date] = None) -> EffectiveTariffResult:
        digits = normalize_code(code)
        origin = normalize_country(country)
        as_of = as_of or date.today()

        chain = self.hierarchy.ancestors(digits)
        flags: List[str] = []
        warnings: List[str] = []

        base_node = _base_rate_node(chain)
        parsed: ParsedRate = parse_rate_expression(base_node.general_rate if base_node else "")
        base_pct = parsed.percentage
        rate_unparsed = base_pct is None
        if rate_unparsed:
            base_pct = 0.0
            flags.append(RATE_UNPARSED)
            if base_node is None:
                warnings.append(f"No general rate published for {digits} or its ancestors")
            else:
                warnings.append(
                    f"General rate {base_node.general_rate!r} ({parsed.kind}) cannot be reduced to a "
                    "percentage; base duty treated as 0 and needs manual review"
                )
            logger.warning("Unparsed base rate for %s: %s", digits, parsed.raw)

        matched: List[Tuple[TariffLayer, LayerRate]] = []
        for layer in self.registry.match_layers(digits, origin, as_of):
            layer_rate = self.registry.current_rate(layer, digits)
            if layer_rate.flag and layer_rate.flag not in flags:
                flags.append(layer_rate.flag)
            if layer_rate.stale:
                warnings.append(f"Rate for {layer.program_id} is stale ({layer_rate.source})")
            matched.append((layer, layer_rate))

        fta_discount = 0.0
        fta_program = None
        special = find_special_rate(chain, origin)
        if special is not None:
            fta_discount = max(0.0, base_pct - special.rate)
            fta_program = special.program_name

        outcome = stack_layers(base_pct, matched, fta_discount)
        stale = any(rate.stale for _, rate in matched)
        if stale and STALE_RATE not in flags:
            flags.append(STALE_RATE)

        adcvd = self.adcvd_orders.check(digits, origin) if self.adcvd_orders is not None else None
        if adcvd is not None and adcvd.country_affected:
            flags.append(ADCVD_WARNING)

        return EffectiveTariffResult(
            code=digits,
            country=origin,
            country_name=country_name(origin),
            as_of=as_of,
            base_mfn_rate=base_pct,
            additional_duties=outcome.additional_duties,
            total_additional_duties=outcome.total_additional_duties,
            fta_discount=fta_discount,
            effective_rate=outcome.effective_rate,
            fta_program=fta_program,
            excluded_programs=outcome.excluded_programs,
            base_rate_text=parsed.raw,
            base_rate_kind=parsed.kind,
            base_rate_source=base_node.code if base_node else None,
            rate_unparsed=rate_unparsed,
            stale=stale,
            flags=tuple(flags),
            warnings=tuple(warnings),
            adcvd_warning=adcvd,
        )


class CachedTariffResolver:
    """Read-through wrapper keyed by ``(code, country, as_of)``."""

    def __init__(self, resolver: TariffResolver, cache: RateCache) -> None:
        self.resolver = resolver
        self.cache = cache

    @property
    def hierarchy(self) -> CodeHierarchyStore:
        return self.resolver.hierarchy

    @property
    def registry(self) -> TariffLayerRegistry:
        return self.resolver.registry

    def resolve(self, code: str, country: str, as_of: Optional[date] = None) -> EffectiveTariffResult:
        digits = normalize_code(code)
        origin = normalize_country(country)
        as_of = as_of or date.today()
        key = ("resolve", digits, origin, as_of.isoformat())
        return self.cache.get_or_load(key, lambda: self.resolver.resolve(digits, origin, as_of))
