"""Tariff layer registry: additional-duty programs scoped by code prefix.

Each layer belongs to a program (Section 301 list 3, Section 232 steel,
an IEEPA surtax...) and matches a code when the code starts with its
scope pattern, the origin country is in scope, and the as-of date falls
in ``[effective_from, effective_to)``. Within a program only the most
specific matching layer survives; different programs are all returned
and combined later by the stacking resolver.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from dutystack.errors import InvalidInput, LAYER_RATE_UNPARSED
from dutystack.tariff.hierarchy import normalize_code
from dutystack.tariff.rate_parser import parse_rate_expression

if TYPE_CHECKING:
    from dutystack.tariff.live_rates import LiveRateService

logger = logging.getLogger(__name__)

UNIVERSAL_SCOPE = "*"
# Exclusion layers with this rate waive the whole program for their scope.
FULL_EXCLUSION = "full"


def normalize_country(value: object) -> str:
    """Upper-case ISO-2 country code or raise InvalidInput."""
    text = str(value or "").strip().upper()
    if len(text) != 2 or not text.isalpha():
        raise InvalidInput(f"Country code {value!r} must be a 2-letter ISO code")
    return text


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CountryScope:
    """``countries=None`` means every country; ``excluded`` always wins."""

    countries: Optional[FrozenSet[str]] = None
    excluded: FrozenSet[str] = frozenset()

    def includes(self, country: str) -> bool:
        if country in self.excluded:
            return False
        return self.countries is None or country in self.countries

    @classmethod
    def from_value(cls, raw: Any, excluded: Iterable[str] = ()) -> "CountryScope":
        excluded_set = frozenset(normalize_country(c) for c in excluded)
        if raw is None or (isinstance(raw, str) and raw.strip().lower() in ("all", "*")):
            return cls(None, excluded_set)
        if isinstance(raw, str):
            raw = [raw]
        return cls(frozenset(normalize_country(c) for c in raw), excluded_set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "countries": "all" if self.countries is None else sorted(self.countries),
            "excluded": sorted(self.excluded),
        }


@dataclass(frozen=True)
class TariffLayer:
    layer_id: str
    program_id: str
    scope_pattern: str
    rate: str
    country_scope: CountryScope = field(default_factory=CountryScope)
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    precedence_class: int = 100
    exclusion: bool = False
    live: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if self.scope_pattern != UNIVERSAL_SCOPE:
            if not self.scope_pattern.isdigit() or not 4 <= len(self.scope_pattern) <= 10:
                raise ValueError(
                    f"Layer {self.layer_id}: scope pattern {self.scope_pattern!r} must be 4-10 digits or '*'"
                )
        if self.effective_from and self.effective_to and self.effective_to <= self.effective_from:
            raise ValueError(f"Layer {self.layer_id}: effective_to must be after effective_from")

    @property
    def specificity(self) -> int:
        return 0 if self.scope_pattern == UNIVERSAL_SCOPE else len(self.scope_pattern)

    def active_on(self, as_of: date) -> bool:
        if self.effective_from is not None and as_of < self.effective_from:
            return False
        if self.effective_to is not None and as_of >= self.effective_to:
            return False
        return True

    def covers(self, code: str) -> bool:
        return self.scope_pattern == UNIVERSAL_SCOPE or code.startswith(self.scope_pattern)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layer_id": self.layer_id,
            "program_id": self.program_id,
            "scope_pattern": self.scope_pattern,
            "rate": self.rate,
            "country_scope": self.country_scope.to_dict(),
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "precedence_class": self.precedence_class,
            "exclusion": self.exclusion,
            "live": self.live,
            "description": self.description,
        }


@dataclass(frozen=True)
class LayerRate:
    """The rate a layer contributes for one code, with provenance."""

    rate: float
    stale: bool = False
    source: str = "catalog"  # catalog | live | cache | catalog_fallback
    flag: Optional[str] = None
    waives_program: bool = False


def _selection_rank(layer: TariffLayer) -> Tuple[int, int, int, str]:
    # Lowest rank wins: longest scope, then latest window, then lowest
    # precedence class, then smallest layer id.
    return (
        -layer.specificity,
        -(layer.effective_from or date.min).toordinal(),
        layer.precedence_class,
        layer.layer_id,
    )


def layer_sort_key(layer: TariffLayer) -> Tuple[int, str, bool, str]:
    return (layer.precedence_class, layer.program_id, layer.exclusion, layer.layer_id)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
class TariffLayerRegistry:
    """Prefix-indexed catalog of tariff layers.

    Layers are bucketed by scope length and keyed by their exact prefix, so
    matching a 10-digit code costs one dict probe per bucket instead of a
    scan over the whole catalog.
    """

    def __init__(
        self,
        layers: Iterable[TariffLayer],
        *,
        version: str = "unversioned",
        live_rates: Optional["LiveRateService"] = None,
    ) -> None:
        self.version = version
        self.live_rates = live_rates
        self._layers: Tuple[TariffLayer, ...] = tuple(sorted(layers, key=layer_sort_key))
        self._universal: List[TariffLayer] = []
        self._buckets: Dict[int, Dict[str, List[TariffLayer]]] = {}
        seen: set[str] = set()
        for layer in self._layers:
            if layer.layer_id in seen:
                raise ValueError(f"Duplicate layer id {layer.layer_id}")
            seen.add(layer.layer_id)
            if layer.scope_pattern == UNIVERSAL_SCOPE:
                self._universal.append(layer)
            else:
                bucket = self._buckets.setdefault(len(layer.scope_pattern), {})
                bucket.setdefault(layer.scope_pattern, []).append(layer)
        self._lengths = sorted(self._buckets)

    def __len__(self) -> int:
        return len(self._layers)

    @property
    def layers(self) -> Tuple[TariffLayer, ...]:
        return self._layers

    def with_live_rates(self, live_rates: Optional["LiveRateService"]) -> "TariffLayerRegistry":
        return TariffLayerRegistry(self._layers, version=self.version, live_rates=live_rates)

    def programs(self) -> List[str]:
        return sorted({layer.program_id for layer in self._layers})

    def candidates_for(self, code: str) -> List[TariffLayer]:
        """All layers whose scope covers ``code``, ignoring country and date."""
        found = list(self._universal)
        for length in self._lengths:
            if length > len(code):
                break
            found.extend(self._buckets[length].get(code[:length], ()))
        return found

    def match_layers(self, code: str, country: str, as_of: date) -> Tuple[TariffLayer, ...]:
        """Layers applicable to ``(code, country, as_of)``, one per program.

        Exclusion layers are reduced separately from the additive layers of
        the same program so a narrow exclusion never hides the broad layer it
        carves out of.
        """
        digits = normalize_code(code)
        origin = normalize_country(country)
        best: Dict[Tuple[str, bool], TariffLayer] = {}
        for layer in self.candidates_for(digits):
            if not layer.country_scope.includes(origin) or not layer.active_on(as_of):
                continue
            key = (layer.program_id, layer.exclusion)
            current = best.get(key)
            if current is None or _selection_rank(layer) < _selection_rank(current):
                best[key] = layer
        return tuple(sorted(best.values(), key=layer_sort_key))

    def current_rate(self, layer: TariffLayer, code: str) -> LayerRate:
        """Rate the layer contributes for ``code`` (live-fetched when enabled)."""
        if layer.live and not layer.exclusion and self.live_rates is not None:
            return self.live_rates.rate_for(layer, code)
        return catalog_rate(layer)

    # -- construction ------------------------------------------------------

    @classmethod
    def from_catalog(cls, payload: Mapping[str, Any], *, live_rates: Optional["LiveRateService"] = None) -> "TariffLayerRegistry":
        """Expand catalog program entries (one per scope pattern) into layers."""
        layers: List[TariffLayer] = []
        for program in payload.get("programs", []):
            program_id = str(program["program_id"])
            precedence = int(program.get("precedence_class", 100))
            for entry in program.get("layers", []):
                patterns = entry.get("scope_patterns") or [entry.get("scope_pattern", UNIVERSAL_SCOPE)]
                scope = CountryScope.from_value(entry.get("countries", "all"), entry.get("exclude_countries", ()))
                base_id = str(entry.get("layer_id") or f"{program_id}:{len(layers)}")
                for pattern in patterns:
                    pattern = str(pattern)
                    if pattern != UNIVERSAL_SCOPE:
                        pattern = normalize_code(pattern)
                    layer_id = base_id if len(patterns) == 1 else f"{base_id}:{pattern}"
                    layers.append(
                        TariffLayer(
                            layer_id=layer_id,
                            program_id=program_id,
                            scope_pattern=pattern,
                            rate=str(entry.get("rate", "0")),
                            country_scope=scope,
                            effective_from=_parse_date(entry.get("effective_from")),
                            effective_to=_parse_date(entry.get("effective_to")),
                            precedence_class=int(entry.get("precedence_class", precedence)),
                            exclusion=bool(entry.get("exclusion", False)),
                            live=bool(entry.get("live", program.get("live", False))),
                            description=str(entry.get("description") or program.get("description") or ""),
                        )
                    )
        return cls(layers, version=str(payload.get("version") or "unversioned"), live_rates=live_rates)

    @classmethod
    def load_catalog(cls, path: Path, *, live_rates: Optional["LiveRateService"] = None) -> "TariffLayerRegistry":
        payload = json.loads(path.read_text(encoding="utf-8"))
        registry = cls.from_catalog(payload, live_rates=live_rates)
        logger.info(
            "Loaded %d tariff layers across %d programs (catalog %s)",
            len(registry),
            len(registry.programs()),
            registry.version,
        )
        return registry


def catalog_rate(layer: TariffLayer) -> LayerRate:
    if layer.exclusion and layer.rate.strip().lower() == FULL_EXCLUSION:
        return LayerRate(rate=0.0, source="catalog", waives_program=True)
    parsed = parse_rate_expression(layer.rate)
    if parsed.percentage is None:
        logger.warning("Layer %s rate %r is not ad valorem; contributing 0", layer.layer_id, layer.rate)
        return LayerRate(rate=0.0, source="catalog", flag=LAYER_RATE_UNPARSED)
    return LayerRate(rate=parsed.percentage, source="catalog")


def _default_catalog_path() -> Path:
    return Path(__file__).resolve().parents[3] / "data" / "layers" / "tariff_programs.json"


@lru_cache(maxsize=4)
def get_layer_registry(catalog_path: Optional[str] = None) -> TariffLayerRegistry:
    """Cached registry for the static catalog (no live fetcher attached)."""
    path = Path(catalog_path) if catalog_path else _default_catalog_path()
    return TariffLayerRegistry.load_catalog(path)
