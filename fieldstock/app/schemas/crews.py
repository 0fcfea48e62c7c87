from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class CrewMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    technician_id: str
    role: str | None = None


class CrewRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    leader_technician_id: str | None = None
    description: str | None = None
    active: bool
    created_at: datetime
    members: list[CrewMemberRead] = Field(default_factory=list)


# ---------- Reconfiguration ----------
class NewCrewConfig(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    leader_technician_id: str = Field(min_length=1)
    technician_ids: list[str] = Field(default_factory=list)
    description: str | None = None


class LeaderResolution(BaseModel):
    """
    Decides which new crew wins a leader claimed by several old crews.
    `new_crew_ref` is the caller's own placeholder, kept for display only.
    """

    selected_leader_id: str
    conflicting_leaders: list[str]
    new_crew_ref: str | None = None


class PlannedMovement(BaseModel):
    material_id: int
    material_name: str
    unit: str
    from_crew_id: int
    from_crew_name: str
    # "new-<index>" for a crew still to be created, None for the warehouse
    to_crew_ref: str | None = None
    to_crew_name: str
    quantity: Decimal


class ReconfigureSummary(BaseModel):
    total_materials_to_move: int
    total_quantity: Decimal
    crews_affected: int


class ReconfigurePreview(BaseModel):
    material_movements: list[PlannedMovement]
    summary: ReconfigureSummary
    warnings: list[str]


class ExecutedMovement(BaseModel):
    movement_id: int
    material_id: int
    material_name: str
    unit: str
    from_crew_id: int
    # None when the material went to the warehouse
    to_crew_id: int | None = None
    to_location_id: int
    quantity: Decimal


class ReconfigureResult(BaseModel):
    new_crews: list[CrewRead]
    material_movements: list[ExecutedMovement]
    warnings: list[str]
    deactivated_crew_ids: list[int]
