"""
Stock ledger.

Two tables move together:
    inventories          current quantity per (material, location)
    inventory_movements  append-only log, one row per quantity change
                         (two for a partially damaged transfer)

Every read-check-write on an inventory row goes through
``lock_inventory_row`` (SELECT ... FOR UPDATE). When an operation touches
two rows they are locked in ascending location id order.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable

from pydantic import ValidationError
from sqlalchemy import and_, func, or_, select, union_all
from sqlalchemy.orm import Session, selectinload

from fieldstock.app.core.config import settings
from fieldstock.app.db.models.core_types import (
    ConsumptionKind,
    LocationKind,
    MaterialOwnership,
    MovementKind,
    StockStatus,
)
from fieldstock.app.db.models.models_v1 import (
    Inventory,
    InventoryMovement,
    Location,
    Material,
    ServiceOrderMaterial,
    utcnow,
)
from fieldstock.app.db.transaction import atomic
from fieldstock.app.schemas.inventory import (
    ConsumeItem,
    InventoryRead,
    InventoryStats,
    MovementRead,
    MovementStats,
)
from fieldstock.services.catalog import get_material
from fieldstock.services.crews import get_active_crew_for_technician
from fieldstock.services.errors import (
    InsufficientStockError,
    InvalidRequestError,
    NotFoundError,
)
from fieldstock.services.locations import (
    find_crew_location,
    find_technician_location,
    get_location,
    get_warehouse,
)
from fieldstock.services.quantities import ZERO, to_quantity
from fieldstock.services.snapshots import get_or_create_snapshot

logger = logging.getLogger(__name__)


# ---------- Row helpers ----------
def lock_inventory_stmt(material_id: int, location_id: int):
    return (
        select(Inventory)
        .where(Inventory.material_id == material_id)
        .where(Inventory.location_id == location_id)
        .with_for_update()
        # refresh a row already in the session with the locked values
        .execution_options(populate_existing=True)
    )


def lock_inventory_row(db: Session, material_id: int, location_id: int) -> Inventory | None:
    return db.execute(lock_inventory_stmt(material_id, location_id)).scalar_one_or_none()


def create_inventory_row(
    db: Session,
    material: Material,
    location: Location,
    *,
    with_threshold: bool = True,
) -> Inventory:
    # only warehouse rows carry a minimum-stock threshold
    min_stock = None
    if with_threshold and location.kind == LocationKind.warehouse:
        min_stock = material.min_stock
    inv = Inventory(
        material_id=material.id,
        location_id=location.id,
        quantity=ZERO,
        min_stock=min_stock,
    )
    db.add(inv)
    db.flush()
    return inv


def record_movement(
    db: Session,
    *,
    material_id: int,
    kind: MovementKind,
    quantity: Decimal,
    from_location_id: int | None = None,
    to_location_id: int | None = None,
    order_id: str | None = None,
    technician_id: str | None = None,
) -> InventoryMovement:
    mv = InventoryMovement(
        material_id=material_id,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        kind=kind,
        quantity=quantity,
        order_id=order_id,
        technician_id=technician_id,
    )
    db.add(mv)
    db.flush()
    return mv


def _require_stock(inv: Inventory | None, requested: Decimal, material: Material, location: Location) -> Decimal:
    available = inv.quantity if inv else ZERO
    if available < requested:
        raise InsufficientStockError(
            f"Insufficient stock of {material.name} at {location.name} "
            f"(available={available}, requested={requested})",
            available=available,
            requested=requested,
        )
    return available


# ---------- Transfer ----------
def transfer(
    db: Session,
    *,
    material_id: int,
    from_location_id: int,
    to_location_id: int,
    quantity,
    damaged_quantity=0,
    technician_id: str | None = None,
    order_id: str | None = None,
) -> list[InventoryMovement]:
    """
    Move stock between two locations.

    The source loses the full quantity; the destination only receives the
    good part (quantity - damaged_quantity). Returns the movements written:
    TRANSFER for the good part, DAMAGED (to_location NULL) for the rest.
    """
    qty = to_quantity(quantity, positive=True)
    damaged = to_quantity(damaged_quantity, field="damaged_quantity")

    if from_location_id == to_location_id:
        raise InvalidRequestError("from_location_id and to_location_id must differ")
    if damaged > qty:
        raise InvalidRequestError(
            f"damaged_quantity ({damaged}) cannot exceed quantity ({qty})"
        )

    with atomic(db):
        material = get_material(db, material_id)
        src_loc = get_location(db, from_location_id)
        dst_loc = get_location(db, to_location_id)

        # lock both rows, lowest location id first
        locked: dict[int, Inventory | None] = {}
        for loc_id in sorted((src_loc.id, dst_loc.id)):
            locked[loc_id] = lock_inventory_row(db, material.id, loc_id)

        src = locked[src_loc.id]
        available = _require_stock(src, qty, material, src_loc)
        src.quantity = available - qty

        good = qty - damaged
        movements: list[InventoryMovement] = []

        if good > ZERO:
            dst = locked[dst_loc.id] or create_inventory_row(db, material, dst_loc)
            dst.quantity = dst.quantity + good
            movements.append(
                record_movement(
                    db,
                    material_id=material.id,
                    kind=MovementKind.transfer,
                    quantity=good,
                    from_location_id=src_loc.id,
                    to_location_id=dst_loc.id,
                    order_id=order_id,
                    technician_id=technician_id,
                )
            )

        if damaged > ZERO:
            movements.append(
                record_movement(
                    db,
                    material_id=material.id,
                    kind=MovementKind.damaged,
                    quantity=damaged,
                    from_location_id=src_loc.id,
                    to_location_id=None,
                    order_id=order_id,
                    technician_id=technician_id,
                )
            )

        db.flush()
        logger.info(
            "Transfer material=%s %s->%s qty=%s damaged=%s",
            material.id,
            src_loc.id,
            dst_loc.id,
            qty,
            damaged,
        )
    return movements


# ---------- Consumption ----------
def _technician_location(db: Session, technician_id: str) -> Location:
    loc = find_technician_location(db, technician_id)
    if not loc:
        raise NotFoundError(f"Technician {technician_id} has no stock location")
    return loc


def _crew_location(db: Session, technician_id: str) -> Location:
    crew = get_active_crew_for_technician(db, technician_id)
    if not crew:
        raise NotFoundError(f"Technician {technician_id} is not in an active crew")
    loc = find_crew_location(db, crew.id)
    if not loc or not loc.active:
        raise NotFoundError(f"Crew {crew.id} has no active stock location")
    return loc


# ownership -> where the technician's stock of that material lives
CONSUMPTION_LOCATION_RESOLVERS: dict[MaterialOwnership, Callable[[Session, str], Location]] = {
    MaterialOwnership.individual: _technician_location,
    MaterialOwnership.pooled: _crew_location,
}


def resolve_consumption_location(db: Session, material: Material, technician_id: str) -> Location:
    resolver = CONSUMPTION_LOCATION_RESOLVERS.get(material.ownership)
    if resolver is None:
        raise InvalidRequestError(f"Unsupported ownership classification: {material.ownership}")
    return resolver(db, technician_id)


def _apply_consumption(
    db: Session,
    *,
    material: Material,
    location: Location,
    quantity: Decimal,
    order_id: str,
    technician_id: str,
    kind: ConsumptionKind,
) -> ServiceOrderMaterial:
    inv = lock_inventory_row(db, material.id, location.id)
    available = _require_stock(inv, quantity, material, location)
    inv.quantity = available - quantity

    mv = record_movement(
        db,
        material_id=material.id,
        kind=MovementKind.consumption if kind == ConsumptionKind.used else MovementKind.damaged,
        quantity=quantity,
        from_location_id=location.id,
        to_location_id=None,
        order_id=order_id,
        technician_id=technician_id,
    )
    record = ServiceOrderMaterial(
        order_id=order_id,
        material_id=material.id,
        movement_id=mv.id,
        quantity=quantity,
        technician_id=technician_id,
        consumption_kind=kind,
    )
    db.add(record)
    db.flush()
    return record


def _require_ref(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidRequestError(f"{field} is required")
    return str(value).strip()


def consume(
    db: Session,
    *,
    material_id: int,
    quantity,
    order_id: str,
    technician_id: str,
    location_id: int | None = None,
    kind: ConsumptionKind = ConsumptionKind.used,
) -> ServiceOrderMaterial:
    """
    Take stock out of one location for a service order.

    Without ``location_id`` the technician's own location is used. The
    warehouse is never touched implicitly.
    """
    qty = to_quantity(quantity, positive=True)
    order_id = _require_ref(order_id, "order_id")
    technician_id = _require_ref(technician_id, "technician_id")
    kind = ConsumptionKind(kind)

    with atomic(db):
        material = get_material(db, material_id)
        if location_id is None:
            location = _technician_location(db, technician_id)
        else:
            location = get_location(db, location_id)
            if location.kind not in (LocationKind.technician, LocationKind.crew):
                raise InvalidRequestError("Consumption must come from a technician or crew location")

        record = _apply_consumption(
            db,
            material=material,
            location=location,
            quantity=qty,
            order_id=order_id,
            technician_id=technician_id,
            kind=kind,
        )
        logger.info(
            "Consumption order=%s material=%s location=%s qty=%s kind=%s",
            order_id,
            material.id,
            location.id,
            qty,
            kind.value,
        )
    return record


def _parse_items(items: Iterable[ConsumeItem | dict]) -> list[ConsumeItem]:
    parsed = []
    for raw in items:
        try:
            item = raw if isinstance(raw, ConsumeItem) else ConsumeItem.model_validate(raw)
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid consumption item: {exc}") from exc
        parsed.append(
            ConsumeItem(
                material_id=item.material_id,
                quantity_used=to_quantity(item.quantity_used, field="quantity_used"),
                quantity_damaged=to_quantity(item.quantity_damaged, field="quantity_damaged"),
            )
        )
    return parsed


def consume_batch(
    db: Session,
    *,
    items: Iterable[ConsumeItem | dict],
    order_id: str,
    technician_id: str,
    capture_snapshot: bool = True,
) -> list[ServiceOrderMaterial]:
    """
    Record every material used on a service order in one transaction.

    Each material is taken from the technician's own location (INDIVIDUAL)
    or from the technician's active crew location (POOLED). If any line
    fails nothing is applied.

    After the commit, the order's crew snapshot is captured if it does not
    exist yet. A snapshot failure is logged and never fails the call.
    """
    order_id = _require_ref(order_id, "order_id")
    technician_id = _require_ref(technician_id, "technician_id")
    lines = _parse_items(items)
    if not lines:
        raise InvalidRequestError("At least one material is required")

    records: list[ServiceOrderMaterial] = []
    with atomic(db):
        for line in lines:
            if line.quantity_used == ZERO and line.quantity_damaged == ZERO:
                logger.warning(
                    "Skipping material %s on order %s: nothing used or damaged",
                    line.material_id,
                    order_id,
                )
                continue

            material = get_material(db, line.material_id)
            location = resolve_consumption_location(db, material, technician_id)

            for qty, kind in (
                (line.quantity_used, ConsumptionKind.used),
                (line.quantity_damaged, ConsumptionKind.damaged),
            ):
                if qty > ZERO:
                    records.append(
                        _apply_consumption(
                            db,
                            material=material,
                            location=location,
                            quantity=qty,
                            order_id=order_id,
                            technician_id=technician_id,
                            kind=kind,
                        )
                    )

        logger.info(
            "Batch consumption order=%s technician=%s records=%s",
            order_id,
            technician_id,
            len(records),
        )

    if capture_snapshot and records:
        try:
            get_or_create_snapshot(db, order_id=order_id, employee_id=technician_id)
        except Exception as exc:
            logger.warning("Could not capture crew snapshot for order %s: %s", order_id, exc)

    return records


def list_order_materials(db: Session, order_id: str) -> list[ServiceOrderMaterial]:
    return list(
        db.execute(
            select(ServiceOrderMaterial)
            .options(selectinload(ServiceOrderMaterial.material))
            .where(ServiceOrderMaterial.order_id == order_id)
            .order_by(ServiceOrderMaterial.id.asc())
        )
        .scalars()
        .all()
    )


# ---------- Adjustment ----------
def adjust(
    db: Session,
    *,
    material_id: int,
    location_id: int,
    delta,
    technician_id: str | None = None,
) -> InventoryMovement:
    """Add (delta > 0) or remove (delta < 0) stock at one location."""
    delta = to_quantity(delta, field="delta", allow_negative=True)
    if delta == ZERO:
        raise InvalidRequestError("delta must not be 0")

    with atomic(db):
        material = get_material(db, material_id)
        location = get_location(db, location_id)

        inv = lock_inventory_row(db, material.id, location.id)
        current = inv.quantity if inv else ZERO
        if current + delta < ZERO:
            raise InsufficientStockError(
                f"Adjustment would leave {material.name} at {location.name} below zero "
                f"(available={current}, requested={-delta})",
                available=current,
                requested=-delta,
            )
        if inv is None:
            inv = create_inventory_row(db, material, location)
        inv.quantity = current + delta

        mv = record_movement(
            db,
            material_id=material.id,
            kind=MovementKind.adjustment,
            quantity=abs(delta),
            from_location_id=location.id,
            to_location_id=location.id,
            technician_id=technician_id,
        )
        logger.info("Adjustment material=%s location=%s delta=%s", material.id, location.id, delta)
    return mv


# ---------- Reads ----------
def _last_movement_subquery():
    touched = union_all(
        select(
            InventoryMovement.material_id.label("material_id"),
            InventoryMovement.from_location_id.label("location_id"),
            InventoryMovement.created_at.label("created_at"),
        ).where(InventoryMovement.from_location_id.is_not(None)),
        select(
            InventoryMovement.material_id.label("material_id"),
            InventoryMovement.to_location_id.label("location_id"),
            InventoryMovement.created_at.label("created_at"),
        ).where(InventoryMovement.to_location_id.is_not(None)),
    ).subquery()
    return (
        select(
            touched.c.material_id,
            touched.c.location_id,
            func.max(touched.c.created_at).label("last_updated"),
        )
        .group_by(touched.c.material_id, touched.c.location_id)
        .subquery()
    )


def _stock_status_clause(status: StockStatus):
    if status == StockStatus.out_of_stock:
        return Inventory.quantity == 0
    if status == StockStatus.low:
        return and_(Inventory.min_stock.is_not(None), Inventory.quantity < Inventory.min_stock)
    return or_(
        and_(Inventory.min_stock.is_not(None), Inventory.quantity >= Inventory.min_stock),
        and_(Inventory.min_stock.is_(None), Inventory.quantity > 0),
    )


def get_inventory(
    db: Session,
    *,
    kind: LocationKind | None = None,
    location_id: int | None = None,
    category: str | None = None,
    stock_status: StockStatus | str | None = None,
    search: str | None = None,
) -> list[InventoryRead]:
    last = _last_movement_subquery()
    stmt = (
        select(Inventory, Material, Location, last.c.last_updated)
        .join(Material, Material.id == Inventory.material_id)
        .join(Location, Location.id == Inventory.location_id)
        .outerjoin(
            last,
            and_(
                last.c.material_id == Inventory.material_id,
                last.c.location_id == Inventory.location_id,
            ),
        )
        .where(Material.deleted_at.is_(None))
    )

    if location_id is not None:
        stmt = stmt.where(Inventory.location_id == location_id)
    elif kind is not None:
        stmt = stmt.where(Location.kind == LocationKind(kind))
    if category and category.strip():
        stmt = stmt.where(func.lower(Material.category) == category.strip().lower())
    if search and search.strip():
        stmt = stmt.where(Material.name.ilike(f"%{search.strip()}%"))
    if stock_status:
        try:
            status = StockStatus(stock_status)
        except ValueError:
            raise InvalidRequestError(f"Unknown stock status: {stock_status}")
        stmt = stmt.where(_stock_status_clause(status))

    stmt = stmt.order_by(Location.name.asc(), Material.name.asc(), Inventory.id.asc())

    return [
        InventoryRead(
            material_id=material.id,
            material_name=material.name,
            material_category=material.category,
            material_images=material.images,
            unit=material.unit,
            quantity=inv.quantity,
            min_stock=inv.min_stock,
            location_id=location.id,
            location_name=location.name,
            location_kind=location.kind,
            location_reference_id=location.reference_id,
            last_updated=last_updated,
        )
        for inv, material, location, last_updated in db.execute(stmt).all()
    ]


def get_warehouse_inventory(db: Session) -> list[InventoryRead]:
    wh = get_warehouse(db)
    if not wh:
        return []
    return get_inventory(db, location_id=wh.id)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _lower_bound(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _upper_bound(value: date | datetime) -> tuple[datetime, bool]:
    """(bound, exclusive); a bare date covers the whole day."""
    if isinstance(value, datetime):
        return _as_utc(value), False
    return datetime.combine(value + timedelta(days=1), time.min, tzinfo=timezone.utc), True


def get_movements(
    db: Session,
    *,
    page: int = 1,
    per_page: int | None = None,
    material_id: int | None = None,
    location_id: int | None = None,
    from_location_id: int | None = None,
    to_location_id: int | None = None,
    technician_id: str | None = None,
    kind: MovementKind | None = None,
    from_date: date | datetime | None = None,
    to_date: date | datetime | None = None,
) -> tuple[list[MovementRead], int]:
    per_page = per_page or settings.default_page_size
    if page < 1 or per_page < 1:
        raise InvalidRequestError("page and per_page must be positive")

    conditions = []
    if material_id is not None:
        conditions.append(InventoryMovement.material_id == material_id)
    if location_id is not None:
        conditions.append(
            or_(
                InventoryMovement.from_location_id == location_id,
                InventoryMovement.to_location_id == location_id,
            )
        )
    if from_location_id is not None:
        conditions.append(InventoryMovement.from_location_id == from_location_id)
    if to_location_id is not None:
        conditions.append(InventoryMovement.to_location_id == to_location_id)
    if technician_id:
        conditions.append(InventoryMovement.technician_id == technician_id)
    if kind is not None:
        conditions.append(InventoryMovement.kind == MovementKind(kind))
    if from_date is not None:
        conditions.append(InventoryMovement.created_at >= _lower_bound(from_date))
    if to_date is not None:
        bound, exclusive = _upper_bound(to_date)
        conditions.append(
            InventoryMovement.created_at < bound if exclusive else InventoryMovement.created_at <= bound
        )

    total = db.execute(
        select(func.count(InventoryMovement.id)).where(*conditions)
    ).scalar_one()

    rows = db.execute(
        select(InventoryMovement, ServiceOrderMaterial.consumption_kind)
        .outerjoin(ServiceOrderMaterial, ServiceOrderMaterial.movement_id == InventoryMovement.id)
        .options(
            selectinload(InventoryMovement.material),
            selectinload(InventoryMovement.from_location),
            selectinload(InventoryMovement.to_location),
        )
        .where(*conditions)
        .order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).all()

    items = [
        MovementRead(
            id=mv.id,
            material_id=mv.material_id,
            material_name=mv.material.name,
            material_category=mv.material.category,
            material_unit=mv.material.unit,
            from_location_id=mv.from_location_id,
            from_location_name=mv.from_location.name if mv.from_location else None,
            to_location_id=mv.to_location_id,
            to_location_name=mv.to_location.name if mv.to_location else None,
            quantity=mv.quantity,
            kind=mv.kind,
            order_id=mv.order_id,
            technician_id=mv.technician_id,
            consumption_kind=consumption_kind,
            created_at=mv.created_at,
        )
        for mv, consumption_kind in rows
    ]
    return items, int(total)


def get_inventory_stats(db: Session) -> InventoryStats:
    total_materials = db.execute(
        select(func.count(Material.id)).where(Material.deleted_at.is_(None))
    ).scalar_one()
    total_locations = db.execute(select(func.count(Location.id))).scalar_one()

    warehouse_rows = (
        select(func.count(Inventory.id))
        .join(Location, Location.id == Inventory.location_id)
        .where(Location.kind == LocationKind.warehouse)
    )
    low_stock = db.execute(
        warehouse_rows.where(Inventory.min_stock.is_not(None)).where(Inventory.quantity < Inventory.min_stock)
    ).scalar_one()
    out_of_stock = db.execute(warehouse_rows.where(Inventory.quantity == 0)).scalar_one()

    return InventoryStats(
        total_materials=total_materials,
        total_locations=total_locations,
        low_stock_count=low_stock,
        warehouse_out_of_stock_count=out_of_stock,
    )


def get_movement_stats(db: Session, *, now: datetime | None = None) -> MovementStats:
    """Movement counts for today, this week (Mon-Sun) and this month, in UTC."""
    now = _as_utc(now or utcnow())
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week = day - timedelta(days=day.weekday())
    month = day.replace(day=1)
    next_month = month.replace(year=month.year + 1, month=1) if month.month == 12 else month.replace(month=month.month + 1)

    def _count(start: datetime, end: datetime) -> int:
        return db.execute(
            select(func.count(InventoryMovement.id))
            .where(InventoryMovement.created_at >= start)
            .where(InventoryMovement.created_at < end)
        ).scalar_one()

    return MovementStats(
        today=_count(day, day + timedelta(days=1)),
        this_week=_count(week, week + timedelta(days=7)),
        this_month=_count(month, next_month),
    )
