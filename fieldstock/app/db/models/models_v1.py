from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldstock.app.db.base import Base
from fieldstock.app.db.models.core_types import (
    ConsumptionKind,
    LocationKind,
    MaterialOwnership,
    MovementKind,
)

# SQLite only autoincrements INTEGER PRIMARY KEY
PK = BigInteger().with_variant(Integer, "sqlite")
QTY = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, name: str) -> Enum:
    # store the enum values ("WAREHOUSE"), not the member names
    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


# ---------- CATALOG ----------
class Material(Base):
    __tablename__ = "materials"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(50), nullable=False)
    min_stock: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="GENERAL", nullable=False)
    ownership: Mapped[MaterialOwnership] = mapped_column(
        _enum(MaterialOwnership, "material_ownership"),
        default=MaterialOwnership.individual,
        nullable=False,
    )
    images: Mapped[list[str] | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (CheckConstraint("min_stock >= 0", name="ck_material_min_stock_nonneg"),)


# ---------- LOCATIONS ----------
class Location(Base):
    __tablename__ = "locations"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    kind: Mapped[LocationKind] = mapped_column(_enum(LocationKind, "location_kind"), nullable=False)
    # technician id / crew id; null for the warehouse
    reference_id: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("kind", "reference_id", name="uq_location_kind_reference"),
        Index(
            "uq_location_single_warehouse",
            "kind",
            unique=True,
            postgresql_where=text("kind = 'WAREHOUSE'"),
            sqlite_where=text("kind = 'WAREHOUSE'"),
        ),
    )


# ---------- STOCK LEDGER ----------
class Inventory(Base):
    __tablename__ = "inventories"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    material_id: Mapped[int] = mapped_column(
        ForeignKey("materials.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    quantity: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    # only set for warehouse rows
    min_stock: Mapped[Decimal | None] = mapped_column(QTY)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    material: Mapped[Material] = relationship()
    location: Mapped[Location] = relationship()

    __table_args__ = (
        UniqueConstraint("material_id", "location_id", name="uq_inventory_material_location"),
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_nonneg"),
    )


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"
    id: Mapped[int] = mapped_column(PK, primary_key=True)

    material_id: Mapped[int] = mapped_column(
        ForeignKey("materials.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    from_location_id: Mapped[int | None] = mapped_column(
        ForeignKey("locations.id", ondelete="SET NULL"),
        index=True,
    )
    to_location_id: Mapped[int | None] = mapped_column(
        ForeignKey("locations.id", ondelete="SET NULL"),
        index=True,
    )

    kind: Mapped[MovementKind] = mapped_column(_enum(MovementKind, "movement_kind"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(255), index=True)
    technician_id: Mapped[str | None] = mapped_column(String(255), index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    material: Mapped[Material] = relationship()
    from_location: Mapped[Location | None] = relationship(foreign_keys=[from_location_id])
    to_location: Mapped[Location | None] = relationship(foreign_keys=[to_location_id])

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_inventory_movement_qty_pos"),
        Index("ix_inventory_movements_material_time", "material_id", "created_at"),
    )


class ServiceOrderMaterial(Base):
    """Consumption record: what was used (or broken) on a service order."""

    __tablename__ = "service_order_materials"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    material_id: Mapped[int] = mapped_column(
        ForeignKey("materials.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    movement_id: Mapped[int] = mapped_column(
        ForeignKey("inventory_movements.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    technician_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    consumption_kind: Mapped[ConsumptionKind] = mapped_column(
        _enum(ConsumptionKind, "consumption_kind"),
        default=ConsumptionKind.used,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    material: Mapped[Material] = relationship()

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_service_order_material_qty_pos"),)


# ---------- CREWS ----------
class Crew(Base):
    __tablename__ = "crews"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    leader_technician_id: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(String(500))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    members: Mapped[list["CrewMember"]] = relationship(
        back_populates="crew",
        cascade="all, delete-orphan",
        order_by="CrewMember.id",
    )


class CrewMember(Base):
    __tablename__ = "crew_members"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    crew_id: Mapped[int] = mapped_column(
        ForeignKey("crews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    technician_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    role: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    crew: Mapped[Crew] = relationship(back_populates="members")

    __table_args__ = (UniqueConstraint("crew_id", "technician_id", name="uq_crew_member_technician"),)


# ---------- SNAPSHOTS ----------
class OrderCrewSnapshot(Base):
    __tablename__ = "order_crew_snapshots"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    employee_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # no FK: the snapshot outlives any later change to the crew
    crew_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    crew_name: Mapped[str | None] = mapped_column(String(255))
    crew_member_ids: Mapped[list[str] | None] = mapped_column(JSON)
    crew_members: Mapped[list[dict] | None] = mapped_column(JSON)

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
