from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SnapshotMember(BaseModel):
    technician_id: str
    role: str | None = None


class OrderCrewSnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    employee_id: str
    crew_id: int | None = None
    crew_name: str | None = None
    crew_member_ids: list[str] | None = None
    crew_members: list[SnapshotMember] | None = None
    snapshot_at: datetime
