"""Antidumping / countervailing duty (AD/CVD) order table.

AD/CVD cash deposits are set per manufacturer and revised on review, so
they are never folded into the effective rate. A matching order only
produces a warning that travels with the resolved result.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from dutystack.tariff.countries import country_name
from dutystack.tariff.hierarchy import normalize_code
from dutystack.tariff.layers import normalize_country

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_URL = "https://aceservices.cbp.dhs.gov/adcvdweb"


@dataclass(frozen=True)
class AdcvdOrder:
    order_id: str
    product_category: str
    hts_prefixes: Tuple[str, ...]
    origin_countries: Tuple[str, ...]
    duty_range: str = ""
    case_numbers: Tuple[str, ...] = ()

    def covers_country(self, country: str) -> bool:
        return country in self.origin_countries


@dataclass(frozen=True)
class AdcvdWarning:
    order_id: str
    product_category: str
    matched_prefix: str
    country_affected: bool
    affected_countries: Tuple[str, ...]
    case_numbers: Tuple[str, ...]
    message: str
    lookup_url: str = DEFAULT_LOOKUP_URL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "product_category": self.product_category,
            "matched_prefix": self.matched_prefix,
            "country_affected": self.country_affected,
            "affected_countries": list(self.affected_countries),
            "case_numbers": list(self.case_numbers),
            "message": self.message,
            "lookup_url": self.lookup_url,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AdcvdWarning":
        return cls(
            order_id=str(payload["order_id"]),
            product_category=str(payload["product_category"]),
            matched_prefix=str(payload.get("matched_prefix", "")),
            country_affected=bool(payload.get("country_affected", False)),
            affected_countries=tuple(payload.get("affected_countries", [])),
            case_numbers=tuple(payload.get("case_numbers", [])),
            message=str(payload.get("message", "")),
            lookup_url=str(payload.get("lookup_url") or DEFAULT_LOOKUP_URL),
        )


def _warning_message(order: AdcvdOrder, origin: str, affected: bool) -> str:
    if affected:
        cases = f" (cases {', '.join(order.case_numbers)})" if order.case_numbers else ""
        duty_range = order.duty_range or "10%-500%+"
        return (
            f"{order.product_category} from {country_name(origin)} is subject to active AD/CVD orders{cases}. "
            f"Manufacturer-specific duties of {duty_range} may apply on top of the effective rate."
        )
    names = ", ".join(country_name(code) for code in order.origin_countries[:4])
    return (
        f"{order.product_category} has AD/CVD orders against {names}. "
        "Additional duties may apply if sourcing from those countries."
    )


class AdcvdOrderTable:
    """Prefix index over AD/CVD orders; the longest matching prefix wins."""

    def __init__(self, orders: Iterable[AdcvdOrder], *, version: str = "unversioned", lookup_url: str = DEFAULT_LOOKUP_URL) -> None:
        self.version = version
        self.lookup_url = lookup_url
        self._orders: Tuple[AdcvdOrder, ...] = tuple(sorted(orders, key=lambda order: order.order_id))
        self._by_prefix: Dict[str, List[AdcvdOrder]] = {}
        for order in self._orders:
            for prefix in order.hts_prefixes:
                self._by_prefix.setdefault(prefix, []).append(order)

    def __len__(self) -> int:
        return len(self._orders)

    @property
    def orders(self) -> Tuple[AdcvdOrder, ...]:
        return self._orders

    def orders_for_country(self, country: str) -> List[AdcvdOrder]:
        origin = normalize_country(country)
        return [order for order in self._orders if order.covers_country(origin)]

    def _match(self, digits: str) -> Optional[Tuple[str, AdcvdOrder]]:
        for length in range(len(digits), 1, -1):
            found = self._by_prefix.get(digits[:length])
            if found:
                return digits[:length], found[0]
        return None

    def check(self, code: str, country: str) -> Optional[AdcvdWarning]:
        """Warning for ``code`` from ``country``, or None when no order covers the code."""
        digits = normalize_code(code)
        origin = normalize_country(country)
        matched = self._match(digits)
        if matched is None:
            return None
        prefix, order = matched
        affected = order.covers_country(origin)
        return AdcvdWarning(
            order_id=order.order_id,
            product_category=order.product_category,
            matched_prefix=prefix,
            country_affected=affected,
            affected_countries=order.origin_countries,
            case_numbers=order.case_numbers,
            message=_warning_message(order, origin, affected),
            lookup_url=self.lookup_url,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AdcvdOrderTable":
        orders: List[AdcvdOrder] = []
        for entry in payload.get("orders", []):
            orders.append(
                AdcvdOrder(
                    order_id=str(entry["order_id"]),
                    product_category=str(entry.get("product_category", entry["order_id"])),
                    hts_prefixes=tuple(normalize_code(prefix) for prefix in entry.get("hts_prefixes", [])),
                    origin_countries=tuple(normalize_country(c) for c in entry.get("origin_countries", [])),
                    duty_range=str(entry.get("duty_range", "")),
                    case_numbers=tuple(str(case) for case in entry.get("case_numbers", [])),
                )
            )
        return cls(
            orders,
            version=str(payload.get("version", "unversioned")),
            lookup_url=str(payload.get("lookup_url") or DEFAULT_LOOKUP_URL),
        )

    @classmethod
    def load(cls, path: Path) -> "AdcvdOrderTable":
        if not path.exists():
            logger.warning("AD/CVD order table %s not found; no AD/CVD warnings will be raised", path)
            return cls(())
        table = cls.from_payload(json.loads(path.read_text(encoding="utf-8")))
        logger.info("Loaded %d AD/CVD orders (table %s)", len(table), table.version)
        return table


def _default_orders_path() -> Path:
    return Path(__file__).resolve().parents[3] / "data" / "layers" / "adcvd_orders.json"


@lru_cache(maxsize=4)
def get_adcvd_table(orders_path: Optional[str] = None) -> AdcvdOrderTable:
    path = Path(orders_path) if orders_path else _default_orders_path()
    return AdcvdOrderTable.load(path)
