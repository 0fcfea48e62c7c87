"""
Location registry: the places where stock lives.

There is exactly one WAREHOUSE (reference_id NULL), one TECHNICIAN location
per technician id and one CREW location per crew. CREW locations belong to
the crew registry and are created / deactivated together with their crew.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from fieldstock.app.core.config import settings
from fieldstock.app.db.models.core_types import LocationKind
from fieldstock.app.db.models.models_v1 import Inventory, InventoryMovement, Location
from fieldstock.app.db.transaction import atomic
from fieldstock.services.errors import ConflictError, InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)


def get_location(db: Session, location_id: int) -> Location:
    loc = db.get(Location, location_id)
    if not loc:
        raise NotFoundError(f"Location {location_id} not found")
    return loc


def get_warehouse(db: Session) -> Location | None:
    return (
        db.execute(select(Location).where(Location.kind == LocationKind.warehouse))
        .scalars()
        .first()
    )


def find_technician_location(db: Session, technician_id: str) -> Location | None:
    return db.execute(
        select(Location)
        .where(Location.kind == LocationKind.technician)
        .where(Location.reference_id == str(technician_id))
    ).scalar_one_or_none()


def find_crew_location(db: Session, crew_id: int) -> Location | None:
    return db.execute(
        select(Location)
        .where(Location.kind == LocationKind.crew)
        .where(Location.reference_id == str(crew_id))
    ).scalar_one_or_none()


def get_or_create_warehouse(db: Session, *, name: str | None = None) -> Location:
    with atomic(db):
        wh = get_warehouse(db)
        if wh:
            return wh

        wh = Location(kind=LocationKind.warehouse, reference_id=None, name=name or settings.warehouse_name)
        db.add(wh)
        db.flush()
        logger.info("Warehouse location created (id=%s)", wh.id)
        return wh


def create_location(
    db: Session,
    *,
    kind: LocationKind,
    name: str,
    reference_id: str | None = None,
) -> Location:
    if not name or not name.strip():
        raise InvalidRequestError("Location name is required")

    with atomic(db):
        if kind == LocationKind.warehouse:
            if get_warehouse(db):
                raise ConflictError("A warehouse location already exists")
            reference_id = None
        elif kind == LocationKind.technician:
            if not reference_id:
                raise InvalidRequestError("A technician location needs the technician id as reference")
            if find_technician_location(db, reference_id):
                raise ConflictError(f"Technician {reference_id} already has a location")
        else:
            raise InvalidRequestError("Crew locations are created together with their crew")

        loc = Location(kind=kind, reference_id=reference_id, name=name.strip(), active=True)
        db.add(loc)
        db.flush()
        logger.info("Location created (id=%s kind=%s ref=%s)", loc.id, kind.value, reference_id)
        return loc


def get_or_create_technician_location(db: Session, technician_id: str, technician_name: str | None = None) -> Location:
    with atomic(db):
        loc = find_technician_location(db, technician_id)
        if loc:
            return loc
        return create_location(
            db,
            kind=LocationKind.technician,
            name=technician_name or f"Technician {technician_id}",
            reference_id=str(technician_id),
        )


def list_locations(
    db: Session,
    *,
    kind: LocationKind | None = None,
    active: bool | None = None,
) -> list[Location]:
    stmt = select(Location)
    if kind is not None:
        stmt = stmt.where(Location.kind == kind)
    if active is not None:
        stmt = stmt.where(Location.active.is_(active))
    stmt = stmt.order_by(Location.kind.asc(), Location.name.asc())
    return list(db.execute(stmt).scalars().all())


def update_location(
    db: Session,
    location_id: int,
    *,
    name: str | None = None,
    active: bool | None = None,
) -> Location:
    with atomic(db):
        loc = get_location(db, location_id)
        if name is not None:
            if not name.strip():
                raise InvalidRequestError("Location name is required")
            loc.name = name.strip()
        if active is not None and active != loc.active:
            # crew locations follow their crew (create_crew / deactivate_crew)
            if loc.kind == LocationKind.crew:
                raise InvalidRequestError("Crew locations are activated and deactivated with their crew")
            loc.active = active
        db.flush()
        logger.info("Location %s updated", loc.id)
        return loc


def delete_location(db: Session, location_id: int) -> None:
    """
    Remove a location that holds no stock.

    Zero-quantity inventory rows go with it; movement rows keep their
    history with the location reference set to NULL.
    """
    with atomic(db):
        loc = get_location(db, location_id)

        if loc.kind == LocationKind.crew:
            raise InvalidRequestError("Crew locations are removed only together with their crew")

        stocked = db.execute(
            select(func.count(Inventory.id))
            .where(Inventory.location_id == loc.id)
            .where(Inventory.quantity > 0)
        ).scalar_one()
        if stocked:
            raise InvalidRequestError(
                f"Location {loc.id} still holds stock for {stocked} material(s)"
            )

        for inv in db.execute(select(Inventory).where(Inventory.location_id == loc.id)).scalars():
            db.delete(inv)

        db.execute(
            update(InventoryMovement)
            .where(InventoryMovement.from_location_id == loc.id)
            .values(from_location_id=None)
        )
        db.execute(
            update(InventoryMovement)
            .where(InventoryMovement.to_location_id == loc.id)
            .values(to_location_id=None)
        )

        db.delete(loc)
        db.flush()
        logger.info("Location %s deleted", location_id)
