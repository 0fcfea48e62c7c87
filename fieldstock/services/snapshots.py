"""
Order crew snapshots.

The first successful consumption on a service order freezes the crew the
technician belonged to at that moment. A snapshot is written once and
never updated, so later crew changes do not rewrite history.
"""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldstock.app.db.models.models_v1 import OrderCrewSnapshot
from fieldstock.app.db.transaction import atomic
from fieldstock.services.crews import get_active_crew_for_technician

logger = logging.getLogger(__name__)


def get_snapshot(db: Session, order_id: str) -> OrderCrewSnapshot | None:
    return db.execute(
        select(OrderCrewSnapshot).where(OrderCrewSnapshot.order_id == order_id)
    ).scalar_one_or_none()


def get_snapshots_for_orders(db: Session, order_ids: Iterable[str]) -> dict[str, OrderCrewSnapshot]:
    ids = sorted({str(oid) for oid in order_ids if oid})
    if not ids:
        return {}
    rows = db.execute(select(OrderCrewSnapshot).where(OrderCrewSnapshot.order_id.in_(ids))).scalars()
    return {snap.order_id: snap for snap in rows}


def get_or_create_snapshot(db: Session, *, order_id: str, employee_id: str) -> OrderCrewSnapshot:
    existing = get_snapshot(db, order_id)
    if existing:
        logger.debug("Snapshot already exists for order %s", order_id)
        return existing

    crew = get_active_crew_for_technician(db, employee_id)
    snap = OrderCrewSnapshot(order_id=order_id, employee_id=employee_id)
    if crew:
        snap.crew_id = crew.id
        snap.crew_name = crew.name
        snap.crew_member_ids = [m.technician_id for m in crew.members]
        snap.crew_members = [{"technician_id": m.technician_id, "role": m.role} for m in crew.members]

    try:
        with atomic(db):
            db.add(snap)
            db.flush()
    except IntegrityError:
        # another caller captured the same order first
        winner = get_snapshot(db, order_id)
        if winner is None:
            raise
        return winner

    logger.info(
        "Snapshot created for order %s (employee=%s crew=%s)",
        order_id,
        employee_id,
        snap.crew_id,
    )
    return snap
