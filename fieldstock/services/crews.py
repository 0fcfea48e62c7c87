"""
Crew registry.

A technician belongs to at most one ACTIVE crew. Membership is checked with
a fresh query on every call. Each crew owns one CREW location holding its
pooled material; the two are created and deactivated together.
"""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from fieldstock.app.db.models.core_types import LocationKind
from fieldstock.app.db.models.models_v1 import Crew, CrewMember, Location
from fieldstock.app.db.transaction import atomic
from fieldstock.services.errors import ConflictError, InvalidRequestError, NotFoundError
from fieldstock.services.locations import find_crew_location

logger = logging.getLogger(__name__)

LEADER_ROLE = "LEADER"

_UNSET = object()


def _crew_location_name(crew_name: str) -> str:
    return f"Crew: {crew_name}"


def _unique_ids(ids: Iterable[str | None]) -> list[str]:
    seen: list[str] = []
    for tid in ids:
        if tid is None:
            continue
        tid = str(tid).strip()
        if tid and tid not in seen:
            seen.append(tid)
    return seen


def _active_memberships(
    db: Session,
    technician_ids: list[str],
    *,
    exclude_crew_ids: Iterable[int] = (),
) -> list[tuple[CrewMember, Crew]]:
    if not technician_ids:
        return []
    stmt = (
        select(CrewMember, Crew)
        .join(Crew, Crew.id == CrewMember.crew_id)
        .where(Crew.active.is_(True))
        .where(CrewMember.technician_id.in_(technician_ids))
    )
    excluded = [int(cid) for cid in exclude_crew_ids]
    if excluded:
        stmt = stmt.where(Crew.id.not_in(excluded))
    return [(m, c) for m, c in db.execute(stmt.order_by(CrewMember.id.asc())).all()]


def _ensure_available(db: Session, technician_ids: list[str], *, exclude_crew_ids: Iterable[int] = ()) -> None:
    taken = _active_memberships(db, technician_ids, exclude_crew_ids=exclude_crew_ids)
    if taken:
        detail = ", ".join(f"{m.technician_id} ({c.name})" for m, c in taken)
        raise ConflictError(f"Technicians already in an active crew: {detail}")


def get_active_crew_for_technician(db: Session, technician_id: str) -> Crew | None:
    return (
        db.execute(
            select(Crew)
            .join(CrewMember, CrewMember.crew_id == Crew.id)
            .where(CrewMember.technician_id == str(technician_id))
            .where(Crew.active.is_(True))
            .order_by(Crew.id.asc())
        )
        .scalars()
        .first()
    )


def get_crew(db: Session, crew_id: int) -> Crew:
    crew = db.get(Crew, crew_id, options=[selectinload(Crew.members)])
    if not crew:
        raise NotFoundError(f"Crew {crew_id} not found")
    return crew


def list_crews(db: Session, *, active: bool | None = None, search: str | None = None) -> list[Crew]:
    stmt = select(Crew).options(selectinload(Crew.members))
    if active is not None:
        stmt = stmt.where(Crew.active.is_(active))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(Crew.name.ilike(pattern), Crew.description.ilike(pattern)))
    stmt = stmt.order_by(Crew.created_at.desc(), Crew.id.desc())
    return list(db.execute(stmt).scalars().all())


def create_crew(
    db: Session,
    *,
    name: str,
    leader_technician_id: str | None = None,
    member_ids: Iterable[str] = (),
    description: str | None = None,
    exclude_crew_ids: Iterable[int] = (),
) -> Crew:
    """
    Create a crew, its members and its CREW location.

    ``exclude_crew_ids`` lists crews whose members do not count as taken
    (crews about to be disbanded by a reconfiguration).
    """
    if not name or not name.strip():
        raise InvalidRequestError("Crew name is required")
    leader = str(leader_technician_id).strip() if leader_technician_id else None
    technician_ids = _unique_ids([leader, *member_ids])
    if not technician_ids:
        raise InvalidRequestError("A crew needs at least one member")

    with atomic(db):
        _ensure_available(db, technician_ids, exclude_crew_ids=exclude_crew_ids)

        crew = Crew(
            name=name.strip(),
            leader_technician_id=leader,
            description=description,
            active=True,
        )
        for tid in technician_ids:
            crew.members.append(CrewMember(technician_id=tid, role=LEADER_ROLE if tid == leader else None))
        db.add(crew)
        db.flush()

        location = Location(
            kind=LocationKind.crew,
            reference_id=str(crew.id),
            name=_crew_location_name(crew.name),
            active=True,
        )
        db.add(location)
        db.flush()
        logger.info("Crew created: %s (id=%s) with %s members", crew.name, crew.id, len(technician_ids))
    return crew


def update_crew(
    db: Session,
    crew_id: int,
    *,
    name: str | None = None,
    description=_UNSET,
    leader_technician_id: str | None = None,
) -> Crew:
    with atomic(db):
        crew = get_crew(db, crew_id)

        if name is not None:
            if not name.strip():
                raise InvalidRequestError("Crew name is required")
            crew.name = name.strip()
            location = find_crew_location(db, crew.id)
            if location:
                location.name = _crew_location_name(crew.name)

        if description is not _UNSET:
            crew.description = description

        leader = str(leader_technician_id).strip() if leader_technician_id else None
        if leader and leader != crew.leader_technician_id:
            if not crew.active:
                raise InvalidRequestError("Cannot change the leader of an inactive crew")
            _ensure_available(db, [leader], exclude_crew_ids=[crew.id])

            member = None
            for m in crew.members:
                if m.role == LEADER_ROLE:
                    m.role = None
                if m.technician_id == leader:
                    member = m
            if member is None:
                member = CrewMember(technician_id=leader)
                crew.members.append(member)
            member.role = LEADER_ROLE
            crew.leader_technician_id = leader

        db.flush()
        logger.info("Crew updated: %s", crew.id)
    return crew


def add_member(db: Session, crew_id: int, technician_id: str, *, role: str | None = None) -> CrewMember:
    technician_id = str(technician_id).strip() if technician_id else ""
    if not technician_id:
        raise InvalidRequestError("technician_id is required")

    with atomic(db):
        crew = get_crew(db, crew_id)
        if not crew.active:
            raise InvalidRequestError("Cannot add members to an inactive crew")
        if any(m.technician_id == technician_id for m in crew.members):
            raise ConflictError(f"Technician {technician_id} is already a member of this crew")
        _ensure_available(db, [technician_id])

        member = CrewMember(technician_id=technician_id, role=role)
        crew.members.append(member)
        db.flush()
        logger.info("Member added to crew %s: %s", crew.id, technician_id)
    return member


def remove_member(db: Session, crew_id: int, member_id: int) -> None:
    with atomic(db):
        crew = get_crew(db, crew_id)
        member = next((m for m in crew.members if m.id == member_id), None)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found in crew {crew_id}")
        if len(crew.members) <= 1:
            raise InvalidRequestError("Cannot remove the last member of a crew")

        if member.technician_id == crew.leader_technician_id:
            crew.leader_technician_id = None
        crew.members.remove(member)
        db.flush()
        logger.info("Member removed from crew %s: %s", crew.id, member.technician_id)


def deactivate_crew(db: Session, crew_id: int) -> Crew:
    """
    Mark the crew and its location inactive.

    Calling it again on an inactive crew still deactivates a location that
    was left active.
    """
    with atomic(db):
        crew = get_crew(db, crew_id)
        location = find_crew_location(db, crew.id)

        if not crew.active:
            if location and location.active:
                location.active = False
                db.flush()
                logger.info("Crew location deactivated: %s", location.id)
            return crew

        crew.active = False
        if location:
            location.active = False
        else:
            logger.warning("No location found for crew %s", crew.id)
        db.flush()
        logger.info("Crew deactivated: %s", crew.id)
    return crew
