from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from fieldstock.app.db.models.core_types import (
    ConsumptionKind,
    LocationKind,
    MaterialOwnership,
    MovementKind,
)


class MaterialRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    unit: str
    min_stock: Decimal
    category: str
    ownership: MaterialOwnership
    images: list[str] | None = None
    created_at: datetime
    deleted_at: datetime | None = None


class LocationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: LocationKind
    reference_id: str | None = None
    name: str
    active: bool


class InventoryRead(BaseModel):
    material_id: int
    material_name: str
    material_category: str
    material_images: list[str] | None = None
    unit: str

    quantity: Decimal
    min_stock: Decimal | None = None  # warehouse rows only

    location_id: int
    location_name: str
    location_kind: LocationKind
    location_reference_id: str | None = None
    last_updated: datetime | None = None


class MovementRead(BaseModel):
    id: int
    material_id: int
    material_name: str
    material_category: str
    material_unit: str

    from_location_id: int | None = None
    from_location_name: str | None = None
    to_location_id: int | None = None
    to_location_name: str | None = None

    quantity: Decimal
    kind: MovementKind
    order_id: str | None = None
    technician_id: str | None = None
    consumption_kind: ConsumptionKind | None = None
    created_at: datetime


class ConsumeItem(BaseModel):
    """One line of a batch consumption: used and damaged quantities of a material."""

    material_id: int
    quantity_used: Decimal = Decimal("0")
    quantity_damaged: Decimal = Decimal("0")


class InventoryStats(BaseModel):
    total_materials: int
    total_locations: int
    low_stock_count: int
    warehouse_out_of_stock_count: int


class MovementStats(BaseModel):
    today: int
    this_week: int
    this_month: int
