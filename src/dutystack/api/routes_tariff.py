from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from dutystack.api.security import require_api_key
from dutystack.config import get_settings
from dutystack.tariff.engine import TariffEngine, build_engine
from dutystack.tariff.models import (
    ClassifyRequestModel,
    CompareOriginsRequestModel,
    LandedCostRequestModel,
    OptimizeRequestModel,
)
from dutystack.tariff.optimizer import OptimizerRequest
from dutystack.tariff.oracle import ClassificationHints

router = APIRouter(
    prefix="/api/tariff",
    tags=["tariff"],
    dependencies=[Depends(require_api_key)],
)


def get_engine(request: Request) -> TariffEngine:
    """Engine built by the app lifespan, or lazily when it did not run."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = build_engine(get_settings())
        request.app.state.engine = engine
    return engine


@router.get("/resolve")
def resolve_rate(
    code: str = Query(..., min_length=1),
    country: str = Query(..., min_length=2, max_length=2),
    as_of: Optional[date] = None,
    engine: TariffEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Effective duty rate for a code and country of origin."""

    return engine.resolve(code, country, as_of).to_dict()


@router.post("/landed-cost")
def landed_cost(request: LandedCostRequestModel, engine: TariffEngine = Depends(get_engine)) -> Dict[str, Any]:
    result = engine.landed_cost(
        request.hts_code,
        request.country_code,
        request.product_value,
        request.quantity,
        shipping=request.shipping_cost,
        insurance=request.insurance_cost,
        is_ocean=request.is_ocean_shipment,
        as_of=request.as_of,
    )
    return result.to_dict()


@router.post("/classify")
def classify(request: ClassifyRequestModel, engine: TariffEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Rank classification candidates for a product description."""

    hints = ClassificationHints(
        material=request.material_hint,
        intended_use=request.intended_use,
        country_of_origin=request.country_of_origin,
        unit_value=request.unit_value,
    )
    result = engine.classify(request.description, hints, as_of=request.as_of)
    payload = result.to_dict()
    payload["destination_country"] = request.destination_country.upper()
    return payload


@router.post("/optimize")
def optimize(request: OptimizeRequestModel, engine: TariffEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Applicable codes ordered by landed cost."""

    result = engine.optimize(
        OptimizerRequest(
            product_description=request.product_description,
            country_of_origin=request.country_of_origin,
            unit_value=request.unit_value,
            max_results=request.max_results,
            material=request.material,
            intended_use=request.intended_use,
            as_of=request.as_of,
        )
    )
    return result.to_dict()


@router.post("/compare-origins")
def compare_origins(request: CompareOriginsRequestModel, engine: TariffEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Landed cost from each origin with savings against the current one."""

    result = engine.compare_origins(
        request.hts_code,
        request.countries,
        current_origin=request.current_origin,
        product_value=request.product_value,
        quantity=request.quantity,
        shipping=request.shipping_cost,
        insurance=request.insurance_cost,
        is_ocean=request.is_ocean_shipment,
        as_of=request.as_of,
    )
    return result.to_dict()

@router.get("/hierarchy/{code}")
def hierarchy_node(code: str, engine: TariffEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.lookup(code)


@router.get("/cache/status")
def cache_status(engine: TariffEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.cache_status()


@router.post("/cache/clear")
def cache_clear(engine: TariffEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {"cleared": engine.clear_caches()}


@router.get("/history")
def history(
    limit: int = Query(20, ge=1, le=100),
    engine: TariffEngine = Depends(get_engine),
) -> Dict[str, Any]:
    records = engine.recent_history(limit)
    return {"count": len(records), "items": [record.to_dict() for record in records]}
