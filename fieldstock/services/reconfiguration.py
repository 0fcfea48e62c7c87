"""
Crew reconfiguration: disband old crews, create new ones and move the old
crews' pooled material to its new home.

The destination of each old crew is decided by a small ordered rule
engine (``RESOLVERS``). The first resolver returning a decision wins. The
last one always answers, so material is never left behind: anything that
cannot be routed to a new crew goes to the warehouse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable, Sequence

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from fieldstock.app.core.config import settings
from fieldstock.app.db.models.core_types import MovementKind
from fieldstock.app.db.models.models_v1 import Crew, Inventory, Location, Material
from fieldstock.app.db.transaction import atomic
from fieldstock.app.schemas.crews import (
    CrewRead,
    ExecutedMovement,
    LeaderResolution,
    NewCrewConfig,
    PlannedMovement,
    ReconfigurePreview,
    ReconfigureResult,
    ReconfigureSummary,
)
from fieldstock.services.crews import create_crew, deactivate_crew
from fieldstock.services.errors import InvalidRequestError, NotFoundError
from fieldstock.services.inventory import create_inventory_row, lock_inventory_row, record_movement
from fieldstock.services.locations import find_crew_location, get_or_create_warehouse, get_warehouse
from fieldstock.services.quantities import ZERO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutingDecision:
    # index into the new crew configs, None for the warehouse
    target_index: int | None
    rule: str
    warning: str | None = None


Resolver = Callable[[Crew, Sequence[NewCrewConfig], Sequence[LeaderResolution]], "RoutingDecision | None"]


# ---------- Routing rules ----------
def route_leaderless(
    old_crew: Crew,
    configs: Sequence[NewCrewConfig],
    resolutions: Sequence[LeaderResolution],
) -> RoutingDecision | None:
    if old_crew.leader_technician_id:
        return None
    return RoutingDecision(
        None,
        "leaderless",
        f"Crew {old_crew.name} has no leader, its material moves to the warehouse",
    )


def route_by_leader_resolution(
    old_crew: Crew,
    configs: Sequence[NewCrewConfig],
    resolutions: Sequence[LeaderResolution],
) -> RoutingDecision | None:
    leader = old_crew.leader_technician_id
    for resolution in resolutions:
        if leader not in resolution.conflicting_leaders:
            continue
        for index, cfg in enumerate(configs):
            if cfg.leader_technician_id == resolution.selected_leader_id:
                return RoutingDecision(index, "leader_resolution")
    return None


def route_by_leader_membership(
    old_crew: Crew,
    configs: Sequence[NewCrewConfig],
    resolutions: Sequence[LeaderResolution],
) -> RoutingDecision | None:
    leader = old_crew.leader_technician_id
    for index, cfg in enumerate(configs):
        if cfg.leader_technician_id == leader or leader in cfg.technician_ids:
            return RoutingDecision(index, "leader_match")
    return None


def route_to_warehouse(
    old_crew: Crew,
    configs: Sequence[NewCrewConfig],
    resolutions: Sequence[LeaderResolution],
) -> RoutingDecision:
    return RoutingDecision(
        None,
        "fallback",
        f"Crew {old_crew.name}: could not determine destination, moved to warehouse",
    )


RESOLVERS: tuple[Resolver, ...] = (
    route_leaderless,
    route_by_leader_resolution,
    route_by_leader_membership,
    route_to_warehouse,
)


def resolve_destination(
    old_crew: Crew,
    configs: Sequence[NewCrewConfig],
    resolutions: Sequence[LeaderResolution] = (),
    resolvers: Sequence[Resolver] = RESOLVERS,
) -> RoutingDecision:
    for resolver in resolvers:
        decision = resolver(old_crew, configs, resolutions)
        if decision is not None:
            return decision
    return route_to_warehouse(old_crew, configs, resolutions)


# ---------- Input ----------
def _parse(model: type[BaseModel], raw_items: Iterable | None, label: str) -> list:
    parsed = []
    for raw in raw_items or ():
        try:
            parsed.append(raw if isinstance(raw, model) else model.model_validate(raw))
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid {label}: {exc}") from exc
    return parsed


def _load_old_crews(db: Session, old_crew_ids: Iterable[int]) -> list[Crew]:
    ids: list[int] = []
    for cid in old_crew_ids:
        if int(cid) not in ids:
            ids.append(int(cid))
    if not ids:
        raise InvalidRequestError("At least one crew to reconfigure is required")

    crews = {
        c.id: c
        for c in db.execute(
            select(Crew).options(selectinload(Crew.members)).where(Crew.id.in_(ids))
        ).scalars()
    }
    missing = [cid for cid in ids if cid not in crews]
    if missing:
        raise NotFoundError(f"Crews not found: {', '.join(str(cid) for cid in missing)}")
    return [crews[cid] for cid in ids]


def _crew_stock(db: Session, location: Location) -> list[Inventory]:
    stmt = (
        select(Inventory)
        .options(selectinload(Inventory.material))
        .where(Inventory.location_id == location.id)
        .where(Inventory.quantity > 0)
        .order_by(Inventory.material_id.asc())
    )
    return list(db.execute(stmt).scalars().all())


def _move_all(db: Session, material: Material, source: Location, destination: Location) -> tuple[Decimal, int | None]:
    """
    Move the whole quantity of one material from source to destination.

    Both rows are locked lowest location id first. A missing destination row
    is created without a minimum-stock threshold. Returns (quantity, movement id);
    the id is None when the source turned out to be empty once locked.
    """
    locked = {loc_id: lock_inventory_row(db, material.id, loc_id) for loc_id in sorted((source.id, destination.id))}
    src = locked[source.id]
    if src is None or src.quantity <= ZERO:
        return ZERO, None

    qty = src.quantity
    dst = locked[destination.id] or create_inventory_row(db, material, destination, with_threshold=False)
    src.quantity = ZERO
    dst.quantity = dst.quantity + qty

    mv = record_movement(
        db,
        material_id=material.id,
        kind=MovementKind.transfer,
        quantity=qty,
        from_location_id=source.id,
        to_location_id=destination.id,
    )
    return qty, mv.id


def _load_warnings(totals: dict, names: dict, threshold: Decimal) -> list[str]:
    return [
        f"Crew {names[key]} will hold {total} units of material, consider redistributing"
        for key, total in totals.items()
        if total > threshold
    ]


# ---------- Preview ----------
def preview_reconfigure(
    db: Session,
    *,
    old_crew_ids: Iterable[int],
    new_crews: Iterable[NewCrewConfig | dict],
    leader_resolutions: Iterable[LeaderResolution | dict] | None = None,
    load_warning_threshold: Decimal | None = None,
) -> ReconfigurePreview:
    """Compute the redistribution a reconfiguration would perform. Writes nothing."""
    configs = _parse(NewCrewConfig, new_crews, "crew configuration")
    resolutions = _parse(LeaderResolution, leader_resolutions, "leader resolution")
    threshold = settings.crew_load_warning_threshold if load_warning_threshold is None else load_warning_threshold

    old_crews = _load_old_crews(db, old_crew_ids)
    warehouse = get_warehouse(db)
    warehouse_name = warehouse.name if warehouse else settings.warehouse_name

    planned: list[PlannedMovement] = []
    warnings: list[str] = []
    totals: dict[str, Decimal] = {}
    names: dict[str, str] = {}

    for old in old_crews:
        location = find_crew_location(db, old.id)
        if not location:
            warnings.append(f"No stock location found for crew {old.name}")
            continue

        decision = resolve_destination(old, configs, resolutions)
        if decision.warning:
            warnings.append(decision.warning)

        if decision.target_index is None:
            to_ref, to_name = None, warehouse_name
        else:
            to_ref = f"new-{decision.target_index}"
            to_name = configs[decision.target_index].name

        for inv in _crew_stock(db, location):
            planned.append(
                PlannedMovement(
                    material_id=inv.material_id,
                    material_name=inv.material.name,
                    unit=inv.material.unit,
                    from_crew_id=old.id,
                    from_crew_name=old.name,
                    to_crew_ref=to_ref,
                    to_crew_name=to_name,
                    quantity=inv.quantity,
                )
            )
            if to_ref is not None:
                totals[to_ref] = totals.get(to_ref, ZERO) + inv.quantity
                names[to_ref] = to_name

    warnings.extend(_load_warnings(totals, names, threshold))

    return ReconfigurePreview(
        material_movements=planned,
        summary=ReconfigureSummary(
            total_materials_to_move=len({m.material_id for m in planned}),
            total_quantity=sum((m.quantity for m in planned), ZERO),
            crews_affected=len(old_crews),
        ),
        warnings=warnings,
    )


# ---------- Execution ----------
def reconfigure(
    db: Session,
    *,
    old_crew_ids: Iterable[int],
    new_crews: Iterable[NewCrewConfig | dict],
    leader_resolutions: Iterable[LeaderResolution | dict] | None = None,
    deactivate_old_crews: bool = True,
    load_warning_threshold: Decimal | None = None,
) -> ReconfigureResult:
    """
    Replace ``old_crew_ids`` with ``new_crews`` in one transaction.

    1. create the new crews (members of the old crews are not counted as taken
       when the old crews are being deactivated)
    2. move every positive stock row of each old crew to its routed destination
    3. deactivate the old crews if requested

    Any error leaves nothing persisted.
    """
    configs = _parse(NewCrewConfig, new_crews, "crew configuration")
    resolutions = _parse(LeaderResolution, leader_resolutions, "leader resolution")
    threshold = settings.crew_load_warning_threshold if load_warning_threshold is None else load_warning_threshold

    with atomic(db):
        old_crews = _load_old_crews(db, old_crew_ids)
        # old crews that stay active keep their members: counting them as taken
        # keeps a technician in one active crew at a time
        excluded = [c.id for c in old_crews] if deactivate_old_crews else []

        created = [
            create_crew(
                db,
                name=cfg.name,
                leader_technician_id=cfg.leader_technician_id,
                member_ids=cfg.technician_ids,
                description=cfg.description,
                exclude_crew_ids=excluded,
            )
            for cfg in configs
        ]
        new_locations = [find_crew_location(db, crew.id) for crew in created]

        executed: list[ExecutedMovement] = []
        warnings: list[str] = []
        totals: dict[int, Decimal] = {}
        names: dict[int, str] = {}

        for old in old_crews:
            source = find_crew_location(db, old.id)
            if not source:
                logger.warning("No location found for crew %s", old.id)
                warnings.append(f"No stock location found for crew {old.name}")
                continue

            decision = resolve_destination(old, configs, resolutions)
            if decision.warning:
                logger.warning("Reconfiguration: %s", decision.warning)
                warnings.append(decision.warning)

            if decision.target_index is None:
                target_crew = None
                destination = get_or_create_warehouse(db)
            else:
                target_crew = created[decision.target_index]
                destination = new_locations[decision.target_index]

            for material in [inv.material for inv in _crew_stock(db, source)]:
                qty, movement_id = _move_all(db, material, source, destination)
                if movement_id is None:
                    continue
                executed.append(
                    ExecutedMovement(
                        movement_id=movement_id,
                        material_id=material.id,
                        material_name=material.name,
                        unit=material.unit,
                        from_crew_id=old.id,
                        to_crew_id=target_crew.id if target_crew else None,
                        to_location_id=destination.id,
                        quantity=qty,
                    )
                )
                if target_crew is not None:
                    totals[target_crew.id] = totals.get(target_crew.id, ZERO) + qty
                    names[target_crew.id] = target_crew.name

        warnings.extend(_load_warnings(totals, names, threshold))

        deactivated: list[int] = []
        if deactivate_old_crews:
            for old in old_crews:
                deactivate_crew(db, old.id)
                deactivated.append(old.id)

        db.flush()
        result = ReconfigureResult(
            new_crews=[CrewRead.model_validate(crew) for crew in created],
            material_movements=executed,
            warnings=warnings,
            deactivated_crew_ids=deactivated,
        )
        logger.info(
            "Reconfiguration done: old=%s new=%s movements=%s warnings=%s",
            [c.id for c in old_crews],
            [c.id for c in created],
            len(executed),
            len(warnings),
        )
    return result
