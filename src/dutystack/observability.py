"""Run-scoped logging helpers.

A run id is bound per request (or CLI invocation) so every engine log
line emitted while serving it can be correlated.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Optional

logger = logging.getLogger(__name__)

_run_id_ctx: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


def new_run_id() -> str:
    """Generate and bind a fresh run identifier."""

    value = str(uuid.uuid4())
    _run_id_ctx.set(value)
    return value


def bind_run_id(value: Optional[str]) -> ContextVar.Token | None:
    if value is None:
        return None
    return _run_id_ctx.set(value)


def reset_run_id(token: Optional[ContextVar.Token]) -> None:
    if token is None:
        return
    _run_id_ctx.reset(token)


def current_run_id() -> Optional[str]:
    return _run_id_ctx.get()


def redact_api_key(raw: Optional[str]) -> str:
    """Return a redacted representation of an API key for safe logging."""

    if not raw:
        return "<missing>"
    if len(raw) <= 3:
        return "***"
    return f"{raw[:4]}***"


def log_event(message: str, *, level: int = logging.INFO, **extra: object) -> None:
    """Log an event with the active run_id attached under ``payload``."""

    payload = {"run_id": current_run_id(), **extra}
    logger.log(level, message, extra={"payload": payload})
