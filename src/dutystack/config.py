"""Environment-driven engine settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple


def _default_data_root() -> Path:
    return Path(__file__).resolve().parents[2] / "data"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class EngineSettings:
    data_root: Path = field(default_factory=_default_data_root)
    cache_ttl_seconds: float = 900.0
    cache_backend: str = "memory"  # memory | redis
    redis_url: Optional[str] = None
    oracle_url: Optional[str] = None
    oracle_timeout_seconds: float = 2.0
    live_rates_url: Optional[str] = None
    live_rates_timeout_seconds: float = 3.0
    optimizer_workers: int = 8
    optimizer_timeout_seconds: float = 10.0
    confidence_threshold: float = 0.40
    max_questions: int = 3
    history_max_items: int = 50
    engine_version: str = "0.1.0"
    api_keys: Tuple[str, ...] = field(default=("dev-key",), repr=False)
    rate_limit_per_minute: int = 120

    @property
    def hierarchy_seed_path(self) -> Path:
        return self.data_root / "hts" / "hierarchy_seed.json"

    @property
    def layer_catalog_path(self) -> Path:
        return self.data_root / "layers" / "tariff_programs.json"

    @property
    def adcvd_orders_path(self) -> Path:
        return self.data_root / "layers" / "adcvd_orders.json"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        data_root = _env_str("DUTYSTACK_DATA_ROOT")
        return cls(
            data_root=Path(data_root) if data_root else _default_data_root(),
            cache_ttl_seconds=_env_float("DUTYSTACK_CACHE_TTL_SECONDS", 900.0),
            cache_backend=(_env_str("DUTYSTACK_CACHE_BACKEND") or "memory").lower(),
            redis_url=_env_str("REDIS_URL"),
            oracle_url=_env_str("DUTYSTACK_ORACLE_URL"),
            oracle_timeout_seconds=_env_float("DUTYSTACK_ORACLE_TIMEOUT_SECONDS", 2.0),
            live_rates_url=_env_str("DUTYSTACK_LIVE_RATES_URL"),
            live_rates_timeout_seconds=_env_float("DUTYSTACK_LIVE_RATES_TIMEOUT_SECONDS", 3.0),
            optimizer_workers=max(1, _env_int("DUTYSTACK_OPTIMIZER_WORKERS", 8)),
            optimizer_timeout_seconds=_env_float("DUTYSTACK_OPTIMIZER_TIMEOUT_SECONDS", 10.0),
            confidence_threshold=_env_float("DUTYSTACK_CONFIDENCE_THRESHOLD", 0.40),
            max_questions=max(0, _env_int("DUTYSTACK_MAX_QUESTIONS", 3)),
            history_max_items=max(1, _env_int("DUTYSTACK_HISTORY_MAX_ITEMS", 50)),
            engine_version=_env_str("DUTYSTACK_ENGINE_VERSION") or "0.1.0",
            api_keys=_env_list("DUTYSTACK_API_KEYS") or ("dev-key",),
            rate_limit_per_minute=max(1, _env_int("DUTYSTACK_RATE_LIMIT_PER_MINUTE", 120)),
        )


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return EngineSettings.from_env()
