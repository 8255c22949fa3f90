from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from dutystack.api.routes_tariff import router as tariff_router
from dutystack.config import get_settings
from dutystack.errors import TariffEngineError
from dutystack.observability import (
    bind_run_id,
    current_run_id,
    log_event,
    new_run_id,
    redact_api_key,
    reset_run_id,
)
from dutystack.tariff.engine import build_engine

# -----------------------------------------------------------------------------
# App setup
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = build_engine(get_settings())
    yield
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.close()
    app.state.engine = None


app = FastAPI(title="dutystack API", version="v1", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(tariff_router)


@app.middleware("http")
async def attach_run_id(request: Request, call_next):
    run_id = current_run_id() or new_run_id()
    token = bind_run_id(run_id)
    redacted_key = redact_api_key(request.headers.get("X-API-Key"))
    log_event("request.start", path=str(request.url.path), api_key=redacted_key)
    try:
        response = await call_next(request)
        response.headers["X-Run-ID"] = run_id
        return response
    finally:
        log_event("request.end", path=str(request.url.path), api_key=redacted_key)
        reset_run_id(token)


# -----------------------------------------------------------------------------
# Error normalization
# -----------------------------------------------------------------------------
def _redact_message(msg: str) -> str:
    if msg.lower().startswith("value error, "):
        msg = msg.split(", ", 1)[1]
    lowered = msg.lower()
    if "key" in lowered or "token" in lowered or "secret" in lowered:
        return "Invalid request payload"
    return msg


def _normalize_validation_errors(raw_errors: List[Dict[str, Any]]) -> Dict[str, Any]:
    fields: List[Dict[str, str]] = []
    for err in raw_errors:
        loc = err.get("loc", [])
        loc_parts = [str(part) for part in loc if part != "body"]
        path = ".".join(["request", *loc_parts]) if loc_parts else "request"
        message = _redact_message(err.get("msg", "Invalid request"))
        fields.append({"path": path, "message": message})
    return {"error": "VALIDATION_ERROR", "fields": fields}


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    content = _normalize_validation_errors(exc.errors())
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(ValidationError)
async def handle_pydantic_validation_error(request: Request, exc: ValidationError):
    content = _normalize_validation_errors(exc.errors())
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(TariffEngineError)
async def handle_engine_error(request: Request, exc: TariffEngineError):
    level = logging.ERROR if exc.http_status >= 500 else logging.INFO
    log_event("request.error", level=level, path=str(request.url.path), error=exc.kind, reason=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# -----------------------------------------------------------------------------
# Service endpoints
# -----------------------------------------------------------------------------
class VersionResp(BaseModel):
    engine_version: str
    build: str | None = None
    hierarchy_revision: str | None = None
    catalog_version: str | None = None


@app.get("/health")
def health(request: Request) -> Dict[str, Any]:
    engine = getattr(request.app.state, "engine", None)
    return {
        "ok": True,
        "status": "ok",
        "hierarchy_nodes": len(engine.hierarchy) if engine else 0,
        "layers": len(engine.registry) if engine else 0,
    }


@app.get("/v1/version", response_model=VersionResp)
def version(request: Request) -> VersionResp:
    engine = getattr(request.app.state, "engine", None)
    return VersionResp(
        engine_version=get_settings().engine_version,
        build=os.getenv("GIT_COMMIT"),
        hierarchy_revision=engine.hierarchy.revision if engine else None,
        catalog_version=engine.registry.version if engine else None,
    )
