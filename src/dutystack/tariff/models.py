from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LandedCostRequestModel(BaseModel):
    """Landed cost for one HTS code, origin and shipment."""

    hts_code: str = Field(min_length=1, description="HTS code, dotted or plain digits")
    country_code: str = Field(min_length=2, max_length=2, description="ISO-2 country of origin")
    product_value: float = Field(allow_inf_nan=False, description="Customs value of the shipment in USD")
    quantity: float = Field(allow_inf_nan=False, description="Units in the shipment")
    shipping_cost: float = Field(default=0.0, allow_inf_nan=False)
    insurance_cost: float = Field(default=0.0, allow_inf_nan=False)
    is_ocean_shipment: bool = True
    as_of: Optional[date] = None

    model_config = ConfigDict(extra="forbid")


class ClassifyRequestModel(BaseModel):
    """Free-text product description to classify."""

    description: str = Field(min_length=1)
    country_of_origin: Optional[str] = Field(default=None, min_length=2, max_length=2)
    destination_country: str = Field(default="US", min_length=2, max_length=2)
    material_hint: Optional[str] = None
    intended_use: Optional[str] = None
    unit_value: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    as_of: Optional[date] = None

    model_config = ConfigDict(extra="forbid")


class OptimizeRequestModel(BaseModel):
    """Find the lowest landed-cost code among plausible classifications."""

    product_description: str = Field(min_length=1)
    country_of_origin: str = Field(min_length=2, max_length=2)
    unit_value: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    max_results: int = Field(default=20, ge=1, description="Capped at 50")
    material: Optional[str] = None
    intended_use: Optional[str] = None
    as_of: Optional[date] = None

    model_config = ConfigDict(extra="forbid")


class CompareOriginsRequestModel(BaseModel):
    """Landed cost of one code from several origins, cheapest first."""

    hts_code: str = Field(min_length=1)
    countries: List[str] = Field(
        default_factory=list,
        max_length=50,
        description="ISO-2 origins to price; empty prices the default sourcing shortlist",
    )
    current_origin: Optional[str] = Field(default=None, min_length=2, max_length=2)
    product_value: float = Field(default=10000.0, gt=0, allow_inf_nan=False)
    quantity: float = Field(default=1.0, gt=0, allow_inf_nan=False)
    shipping_cost: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    insurance_cost: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    is_ocean_shipment: bool = True
    as_of: Optional[date] = None

    model_config = ConfigDict(extra="forbid")
