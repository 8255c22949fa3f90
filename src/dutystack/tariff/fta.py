"""Free-trade-agreement lookup against the schedule's Special column."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from dutystack.tariff.hierarchy import HtsNode
from dutystack.tariff.rate_parser import parse_rate_expression

# Country → Special-column program codes that may grant it a preference.
# "S" is USMCA; "P" is CAFTA-DR.
_COUNTRY_TO_SPECIAL: Dict[str, List[str]] = {
    "AU": ["AU"],
    "BH": ["BH"],
    "CA": ["S", "CA"],
    "CL": ["CL"],
    "CO": ["CO"],
    "CR": ["P"],
    "DO": ["P"],
    "GT": ["P"],
    "HN": ["P"],
    "IL": ["IL"],
    "JO": ["JO"],
    "KR": ["KR"],
    "MA": ["MA"],
    "MX": ["S", "MX"],
    "NI": ["P"],
    "OM": ["OM"],
    "PA": ["PA"],
    "PE": ["PE"],
    "SG": ["SG"],
    "SV": ["P"],
}

_PROGRAM_NAMES: Dict[str, str] = {
    "S": "USMCA",
    "CA": "USMCA",
    "MX": "USMCA",
    "P": "CAFTA-DR",
    "AU": "US-Australia FTA",
    "BH": "US-Bahrain FTA",
    "CL": "US-Chile FTA",
    "CO": "US-Colombia TPA",
    "IL": "US-Israel FTA",
    "JO": "US-Jordan FTA",
    "KR": "KORUS",
    "MA": "US-Morocco FTA",
    "OM": "US-Oman FTA",
    "PA": "US-Panama TPA",
    "PE": "US-Peru TPA",
    "SG": "US-Singapore FTA",
}


def country_to_special_codes(country: str) -> List[str]:
    return list(_COUNTRY_TO_SPECIAL.get(country.upper(), []))


def fta_partners() -> List[str]:
    return sorted(_COUNTRY_TO_SPECIAL)


@dataclass(frozen=True)
class SpecialRateMatch:
    program_code: str
    program_name: str
    rate: float
    rate_text: str
    matched_code: str


def find_special_rate(chain: Sequence[HtsNode], country: str) -> Optional[SpecialRateMatch]:
    """Nearest-first search of ``chain`` (chapter → code) for the country's rate.

    Special rates that do not reduce to a percentage are ignored.
    """
    codes = country_to_special_codes(country)
    if not codes:
        return None
    for node in reversed(chain):
        if not node.special_rates:
            continue
        for program in codes:
            text = node.special_rates.get(program)
            if text is None:
                continue
            pct = parse_rate_expression(text).percentage
            if pct is None:
                continue
            return SpecialRateMatch(
                program_code=program,
                program_name=_PROGRAM_NAMES.get(program, program),
                rate=pct,
                rate_text=text,
                matched_code=node.code,
            )
        # The nearest node publishing a Special column is authoritative.
        return None
    return None
