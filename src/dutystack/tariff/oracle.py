"""Inference oracle: an external model proposing likely codes for free text.

The ranker treats the oracle as optional. ``NullOracle`` is the
keyword-only path; ``HttpInferenceOracle`` talks to a remote service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationHints:
    material: Optional[str] = None
    intended_use: Optional[str] = None
    country_of_origin: Optional[str] = None
    unit_value: Optional[float] = None
    dimensions_known: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "material": self.material,
            "intended_use": self.intended_use,
            "country_of_origin": self.country_of_origin,
            "unit_value": self.unit_value,
            "dimensions_known": self.dimensions_known,
        }


@dataclass(frozen=True)
class OracleSuggestion:
    code: str
    rationale: str = ""


class InferenceOracle(Protocol):
    name: str

    def infer(self, description: str, hints: ClassificationHints) -> Sequence[OracleSuggestion]: ...


class NullOracle:
    """No-op oracle used when no inference service is configured."""

    name = "none"

    def infer(self, description: str, hints: ClassificationHints) -> Sequence[OracleSuggestion]:
        return ()


class StaticOracle:
    """Fixed keyword → suggestions table; useful for demos and tests."""

    name = "static"

    def __init__(self, table: Mapping[str, Sequence[OracleSuggestion]]) -> None:
        self._table = {key.lower(): tuple(value) for key, value in table.items()}

    def infer(self, description: str, hints: ClassificationHints) -> Sequence[OracleSuggestion]:
        lower = description.lower()
        out: List[OracleSuggestion] = []
        for key in sorted(self._table):
            if key in lower:
                out.extend(self._table[key])
        return out


class HttpInferenceOracle:
    """POST ``{description, hints}`` to ``url``; expects ``{"candidates": [{code, rationale}]}``."""

    name = "http"

    def __init__(self, url: str, *, timeout: float = 2.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def infer(self, description: str, hints: ClassificationHints) -> Sequence[OracleSuggestion]:
        response = self._client.post(self.url, json={"description": description, "hints": hints.to_dict()})
        response.raise_for_status()
        payload = response.json()
        suggestions: List[OracleSuggestion] = []
        for item in payload.get("candidates", []) if isinstance(payload, dict) else []:
            if isinstance(item, dict) and item.get("code"):
                suggestions.append(OracleSuggestion(code=str(item["code"]), rationale=str(item.get("rationale") or "")))
        return suggestions

    def close(self) -> None:
        self._client.close()
