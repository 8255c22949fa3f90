"""Parse legal duty-rate expressions into a tagged variant.

Handles the common schedule formats:
  - "Free"
  - "2.5%"
  - "3.4¢/kg"
  - "$1.18/doz."
  - "6.5% + 2.1¢/kg" (compound)

Only ``ad_valorem`` and ``free`` rates reduce to a percentage. Everything
else is kept but flagged so stacking never silently uses a wrong number.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Literal, Optional

RateKind = Literal["ad_valorem", "compound", "free", "specific", "unparsed"]

# ---------------------------------------------------------------------------
# Grammar
# ---------------------------------------------------------------------------
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_CENTS_PER_UNIT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*¢\s*/\s*([a-z.]+)", re.IGNORECASE)
_DOLLAR_PER_UNIT_RE = re.compile(r"\$\s*(\d+(?:\.\d+)?)\s*/\s*([a-z.]+)", re.IGNORECASE)
_BARE_NUMBER_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*$")
_FREE_WORDS = {"free", "0", "0%", "0.0%"}


@dataclass(frozen=True)
class ParsedRate:
    """Structured form of a legal rate expression."""

    kind: RateKind
    raw: str
    ad_valorem_pct: Optional[float] = None
    specific_amount: Optional[float] = None  # dollars per unit
    specific_unit: Optional[str] = None

    @property
    def percentage(self) -> Optional[float]:
        """The rate as a percentage, or None when it cannot be reduced."""
        if self.kind == "free":
            return 0.0
        if self.kind == "ad_valorem":
            return self.ad_valorem_pct
        return None

    @property
    def is_unparsed(self) -> bool:
        return self.percentage is None


def parse_rate_expression(raw: object) -> ParsedRate:
    """Parse a rate expression (string or number) into a :class:`ParsedRate`."""
    if isinstance(raw, bool):
        return ParsedRate(kind="unparsed", raw=str(raw))
    if isinstance(raw, (int, float)):
        value = float(raw)
        if value == 0:
            return ParsedRate(kind="free", raw=str(raw), ad_valorem_pct=0.0)
        return ParsedRate(kind="ad_valorem", raw=str(raw), ad_valorem_pct=value)

    text = str(raw or "")
    cleaned = text.strip()
    if not cleaned:
        return ParsedRate(kind="unparsed", raw=text)
    if cleaned.lower() in _FREE_WORDS:
        return ParsedRate(kind="free", raw=text, ad_valorem_pct=0.0)

    bare = _BARE_NUMBER_RE.match(cleaned)
    if bare:
        return parse_rate_expression(float(bare.group(1)))

    ad_valorem = None
    specific = None
    specific_unit = None

    pct_match = _PERCENT_RE.search(cleaned)
    if pct_match:
        ad_valorem = float(pct_match.group(1))

    cents_match = _CENTS_PER_UNIT_RE.search(cleaned)
    if cents_match:
        specific = float(cents_match.group(1)) / 100.0
        specific_unit = cents_match.group(2).lower().rstrip(".")

    dollar_match = _DOLLAR_PER_UNIT_RE.search(cleaned)
    if dollar_match and specific is None:
        specific = float(dollar_match.group(1))
        specific_unit = dollar_match.group(2).lower().rstrip(".")

    if ad_valorem is not None and specific is not None:
        return ParsedRate(
            kind="compound",
            raw=text,
            ad_valorem_pct=ad_valorem,
            specific_amount=specific,
            specific_unit=specific_unit,
        )
    if specific is not None:
        return ParsedRate(kind="specific", raw=text, specific_amount=specific, specific_unit=specific_unit)
    if ad_valorem is not None:
        # Anything left over besides the percentage (e.g. "25% on the
        # value of the steel content") is not a plain ad valorem rate.
        remainder = _PERCENT_RE.sub("", cleaned, count=1).strip()
        if remainder:
            return ParsedRate(kind="unparsed", raw=text, ad_valorem_pct=ad_valorem)
        if ad_valorem == 0:
            return ParsedRate(kind="free", raw=text, ad_valorem_pct=0.0)
        return ParsedRate(kind="ad_valorem", raw=text, ad_valorem_pct=ad_valorem)
    return ParsedRate(kind="unparsed", raw=text)


# ---------------------------------------------------------------------------
# Special-column parsing
# ---------------------------------------------------------------------------
_SPECIAL_RATE_RE = re.compile(r"(Free|\d+(?:\.\d+)?%)\s*\(([A-Z*+,\s]+)\)")


def parse_special_rates(raw: str) -> Dict[str, str]:
    """Parse a Special-column string into ``{program_code: rate}``.

    Example input: "Free (A*,AU,BH,CL,CO,D,E,IL,JO,KR,MA,OM,P,PA,PE,S,SG)"
    """
    if not raw or not raw.strip():
        return {}

    rates: Dict[str, str] = {}
    for match in _SPECIAL_RATE_RE.finditer(raw):
        rate = match.group(1)
        for code in match.group(2).split(","):
            code = code.strip().rstrip("*+")
            if code:
                rates[code] = rate
    return rates
