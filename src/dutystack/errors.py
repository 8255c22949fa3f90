"""Error taxonomy shared by the resolution, ranking and API layers.

Every error carries a machine-readable ``kind`` so request handlers can
report structured failures. Degradations that have a safe fallback
(stale live rates, oracle timeouts) are absorbed by the engine and
surfaced as result flags instead of propagating.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


# Result flags (non-fatal conditions surfaced on results)
RATE_UNPARSED = "RATE_UNPARSED"
LAYER_RATE_UNPARSED = "LAYER_RATE_UNPARSED"
STALE_RATE = "STALE_RATE"
ORACLE_TIMEOUT = "ORACLE_TIMEOUT"
ORACLE_ERROR = "ORACLE_ERROR"
ADCVD_WARNING = "ADCVD_WARNING"


class TariffEngineError(Exception):
    """Base class for structured engine failures."""

    kind = "ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        return payload


class InvalidInput(TariffEngineError):
    """Malformed or out-of-range request field. Never retried."""

    kind = "INVALID_INPUT"
    http_status = 400


class InvalidCodeFormat(TariffEngineError):
    kind = "INVALID_CODE_FORMAT"
    http_status = 400


class CodeNotFound(TariffEngineError):
    kind = "CODE_NOT_FOUND"
    http_status = 404

    def __init__(self, code: str, *, nearest: Optional[str] = None) -> None:
        hint = "Try a shorter prefix of the code"
        if nearest:
            hint = f"Try a shorter prefix of the code, e.g. {nearest}"
        super().__init__(f"HTS code {code} not found", hint=hint)
        self.code = code
        self.nearest = nearest


class UpstreamUnavailable(TariffEngineError):
    """Live rate source could not be reached or returned garbage."""

    kind = "UPSTREAM_UNAVAILABLE"
    http_status = 503


class OracleTimeout(TariffEngineError):
    kind = "ORACLE_TIMEOUT"
    http_status = 504


class InternalInconsistency(TariffEngineError):
    """Corrupt dataset, e.g. a node whose parent is missing."""

    kind = "INTERNAL_INCONSISTENCY"
    http_status = 500
