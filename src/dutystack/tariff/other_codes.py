"""Residual "other" basket codes and the facts their exclusions hinge on.

An "Other" line is only correct once every more specific sibling has been
ruled out. Some siblings can be ruled out from the description alone;
others hinge on facts (unit value, dimensions, material) the user may not
have supplied yet.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from dutystack.tariff.hierarchy import HtsNode

_VALUE_RE = re.compile(r"valued\s+(not\s+)?over\s+\$\s*([\d,.]+)(?:\s+per\s+(\w+))?", re.IGNORECASE)
_SIZE_RE = re.compile(r"(not\s+)?(?:over|exceeding)\s+([\d,.]+)\s*(cm|mm|m)\b", re.IGNORECASE)
_MATERIAL_RE = re.compile(
    r"\b(?:of|containing)\s+(?:\d+\s*percent\s+or\s+more\s+by\s+weight\s+of\s+)?"
    r"(cotton|wool|silk|man-made fibers|plastics?|rubber|wood|teak|stainless steel|steel|aluminum|porcelain|china)\b",
    re.IGNORECASE,
)

FACT_UNIT_VALUE = "unit_value"
FACT_DIMENSIONS = "dimensions"
FACT_MATERIAL = "material"


def is_other_description(description: str) -> bool:
    desc = (description or "").lower().strip()
    return (
        desc in ("other", "other:")
        or desc.startswith(("other ", "other,", "other:"))
        or desc.endswith((": other", ":other"))
        or "not elsewhere specified" in desc
        or "nesoi" in desc
        or "n.e.s.o.i" in desc
    )


@dataclass(frozen=True)
class FactThreshold:
    fact: str
    sibling_code: str
    detail: str


def thresholds_in(node: HtsNode) -> List[FactThreshold]:
    """Unknown-fact thresholds a sibling's description depends on."""
    found: List[FactThreshold] = []
    for match in _VALUE_RE.finditer(node.description):
        comparator = "not over" if match.group(1) else "over"
        unit = f" per {match.group(3)}" if match.group(3) else ""
        found.append(
            FactThreshold(FACT_UNIT_VALUE, node.code, f"valued {comparator} ${match.group(2)}{unit}")
        )
    for match in _SIZE_RE.finditer(node.description):
        comparator = "not over" if match.group(1) else "over"
        found.append(
            FactThreshold(FACT_DIMENSIONS, node.code, f"{comparator} {match.group(2)} {match.group(3)}")
        )
    material = _MATERIAL_RE.search(node.description)
    if material:
        found.append(FactThreshold(FACT_MATERIAL, node.code, f"of {material.group(1).lower()}"))
    return found


def other_exclusions(node: HtsNode, siblings: Sequence[HtsNode]) -> Tuple[str, ...]:
    """Sibling codes that must be ruled out before ``node`` applies."""
    if not is_other_description(node.description):
        return ()
    return tuple(sorted(s.code for s in siblings if not is_other_description(s.description)))


def unresolved_facts(
    siblings: Sequence[HtsNode],
    exclusions: Sequence[str],
    *,
    known_facts: Sequence[str],
) -> List[FactThreshold]:
    """Thresholds among ``exclusions`` whose facts are not in ``known_facts``."""
    wanted = set(exclusions)
    known = set(known_facts)
    pending: List[FactThreshold] = []
    for sibling in siblings:
        if sibling.code not in wanted:
            continue
        for threshold in thresholds_in(sibling):
            if threshold.fact not in known:
                pending.append(threshold)
    return pending
