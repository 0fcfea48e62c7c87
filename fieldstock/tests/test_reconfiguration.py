from decimal import Decimal

import pytest
from sqlalchemy import func, select

from fieldstock.app.db.models.core_types import MaterialOwnership, MovementKind
from fieldstock.app.db.models.models_v1 import Crew, Inventory, InventoryMovement, Location
from fieldstock.app.schemas.crews import LeaderResolution, NewCrewConfig
from fieldstock.services import crews, locations, reconfiguration
from fieldstock.services.errors import ConflictError, NotFoundError
from fieldstock.services.reconfiguration import RoutingDecision, resolve_destination


def _count(db_session, model):
    return db_session.execute(select(func.count(model.id))).scalar_one()


@pytest.fixture
def pooled(make_material):
    return make_material("Drop cable", unit="m", ownership=MaterialOwnership.pooled)


# ---------- routing rules ----------
def _old(leader, name="Old"):
    return Crew(name=name, leader_technician_id=leader, active=True)


def _cfg(name, leader, members=()):
    return NewCrewConfig(name=name, leader_technician_id=leader, technician_ids=list(members))


def test_leaderless_goes_to_warehouse():
    decision = resolve_destination(_old(None), [_cfg("A", "T-1")])

    assert decision.target_index is None
    assert decision.rule == "leaderless"
    assert decision.warning


def test_resolution_beats_leader_match():
    """
    GIVEN
    - T-1 leads the old crew and also leads new crew 0
    - a resolution gives contested leader T-1 to the crew led by T-7

    THEN
    - the resolution wins
    """
    configs = [_cfg("A", "T-1"), _cfg("B", "T-7", ["T-1"])]
    resolutions = [LeaderResolution(selected_leader_id="T-7", conflicting_leaders=["T-1", "T-2"])]

    decision = resolve_destination(_old("T-1"), configs, resolutions)

    assert decision == RoutingDecision(1, "leader_resolution")


def test_first_matching_resolution_wins():
    configs = [_cfg("A", "T-5"), _cfg("B", "T-7")]
    resolutions = [
        LeaderResolution(selected_leader_id="T-404", conflicting_leaders=["T-1"]),
        LeaderResolution(selected_leader_id="T-7", conflicting_leaders=["T-1"]),
        LeaderResolution(selected_leader_id="T-5", conflicting_leaders=["T-1"]),
    ]

    # the first resolution names no new crew, so scanning continues
    assert resolve_destination(_old("T-1"), configs, resolutions).target_index == 1


def test_leader_found_among_members():
    configs = [_cfg("A", "T-5", ["T-6"]), _cfg("B", "T-7", ["T-1"])]

    assert resolve_destination(_old("T-1"), configs) == RoutingDecision(1, "leader_match")


def test_no_match_falls_back_with_warning():
    decision = resolve_destination(_old("T-1", name="Gamma"), [_cfg("A", "T-5")])

    assert decision.target_index is None
    assert decision.rule == "fallback"
    assert "could not determine destination, moved to warehouse" in decision.warning


def test_custom_resolver_list():
    def always_first(old_crew, configs, resolutions):
        return RoutingDecision(0, "always_first")

    decision = resolve_destination(_old(None), [_cfg("A", "T-5")], resolvers=[always_first])

    assert decision.rule == "always_first"


# ---------- execution ----------
def test_reconfigure_moves_material_to_leader_crew(db_session, pooled, make_crew, stock, qty_at):
    """
    GIVEN
    - crew C1 (leader T, members T and X) holding 50 units
    - new crews {leader T, members Y} and {leader Z, members X}

    THEN
    - the crew led by T receives the 50 units
    - C1 and its location are inactive
    """
    c1, c1_loc = make_crew("C1", leader="T", members=["T", "X"])
    stock(pooled, c1_loc, 50)

    result = reconfiguration.reconfigure(
        db_session,
        old_crew_ids=[c1.id],
        new_crews=[
            {"name": "New T", "leader_technician_id": "T", "technician_ids": ["Y"]},
            {"name": "New Z", "leader_technician_id": "Z", "technician_ids": ["X"]},
        ],
    )

    new_t, new_z = result.new_crews
    t_loc = locations.find_crew_location(db_session, new_t.id)
    assert qty_at(pooled, t_loc) == Decimal("50")
    assert qty_at(pooled, c1_loc) == Decimal("0")
    assert [(m.to_crew_id, m.quantity) for m in result.material_movements] == [(new_t.id, Decimal("50"))]
    assert result.deactivated_crew_ids == [c1.id]
    assert result.warnings == []

    assert crews.get_crew(db_session, c1.id).active is False
    assert locations.get_location(db_session, c1_loc.id).active is False
    assert crews.get_active_crew_for_technician(db_session, "X").id == new_z.id

    mv = db_session.get(InventoryMovement, result.material_movements[0].movement_id)
    assert (mv.kind, mv.from_location_id, mv.to_location_id) == (MovementKind.transfer, c1_loc.id, t_loc.id)


def test_reconfigure_fallback_transfers_to_warehouse(db_session, pooled, make_material, make_crew, stock, qty_at):
    """
    GIVEN
    - an old crew whose leader is in none of the new crews

    THEN
    - every material is moved to the warehouse (created on demand) with a warning
    - the warehouse rows it creates carry no min_stock threshold
    """
    other = make_material("Splitter", min_stock=4, ownership=MaterialOwnership.pooled)
    old, old_loc = make_crew("Gamma", leader="T-1", members=["T-2"])
    stock(pooled, old_loc, 30)
    stock(other, old_loc, 2)

    result = reconfiguration.reconfigure(
        db_session,
        old_crew_ids=[old.id],
        new_crews=[_cfg("Delta", "T-8", ["T-2"])],
    )

    warehouse = locations.get_warehouse(db_session)
    assert warehouse is not None
    assert qty_at(pooled, warehouse) == Decimal("30")
    assert qty_at(other, warehouse) == Decimal("2")
    assert all(m.to_crew_id is None for m in result.material_movements)
    assert any("moved to warehouse" in w for w in result.warnings)
    warehouse_rows = db_session.execute(
        select(Inventory).where(Inventory.location_id == warehouse.id)
    ).scalars().all()
    assert {row.material_id for row in warehouse_rows} == {pooled.id, other.id}
    assert all(row.min_stock is None for row in warehouse_rows)


def test_reconfigure_after_leader_removed_goes_to_warehouse(db_session, pooled, make_crew, stock, qty_at):
    """
    GIVEN
    - a crew whose leader member was removed, leaving it without a leader
    - a new crew led by that former leader

    THEN
    - the crew material goes to the warehouse, not to the former leader's new crew
    - the warning names the missing leader
    """
    old, old_loc = make_crew("Alpha", leader="T-1", members=["T-2"])
    stock(pooled, old_loc, 12)
    leader_member = next(m for m in old.members if m.technician_id == "T-1")
    crews.remove_member(db_session, old.id, leader_member.id)

    preview = reconfiguration.preview_reconfigure(
        db_session,
        old_crew_ids=[old.id],
        new_crews=[_cfg("Beta", "T-1", ["T-2"])],
    )
    assert [m.to_crew_ref for m in preview.material_movements] == [None]

    result = reconfiguration.reconfigure(
        db_session,
        old_crew_ids=[old.id],
        new_crews=[_cfg("Beta", "T-1", ["T-2"])],
    )

    warehouse = locations.get_warehouse(db_session)
    beta_loc = locations.find_crew_location(db_session, result.new_crews[0].id)
    assert qty_at(pooled, warehouse) == Decimal("12")
    assert qty_at(pooled, beta_loc) == Decimal("0")
    assert [m.to_crew_id for m in result.material_movements] == [None]
    assert any("has no leader" in w for w in result.warnings)


def test_reconfigure_conflict_outside_set_persists_nothing(db_session, pooled, make_crew, stock, qty_at):
    old, old_loc = make_crew("Old", leader="T-1")
    make_crew("Other", leader="T-9")
    stock(pooled, old_loc, 10)
    crews_before = _count(db_session, Crew)
    locations_before = _count(db_session, Location)
    movements_before = _count(db_session, InventoryMovement)

    with pytest.raises(ConflictError):
        reconfiguration.reconfigure(
            db_session,
            old_crew_ids=[old.id],
            new_crews=[_cfg("Fine", "T-1"), _cfg("Clash", "T-2", ["T-9"])],
        )

    assert _count(db_session, Crew) == crews_before
    assert _count(db_session, Location) == locations_before
    assert _count(db_session, InventoryMovement) == movements_before
    assert qty_at(pooled, old_loc) == Decimal("10")
    assert crews.get_crew(db_session, old.id).active is True


def test_reconfigure_missing_old_crew(db_session, make_crew):
    old, _ = make_crew("Old", leader="T-1")

    with pytest.raises(NotFoundError):
        reconfiguration.reconfigure(db_session, old_crew_ids=[old.id, 999], new_crews=[_cfg("New", "T-1")])

    assert _count(db_session, Crew) == 1


def test_reconfigure_keeping_old_crews_still_checks_conflicts(db_session, make_crew):
    old, _ = make_crew("Old", leader="T-1")

    with pytest.raises(ConflictError):
        reconfiguration.reconfigure(
            db_session,
            old_crew_ids=[old.id],
            new_crews=[_cfg("New", "T-1")],
            deactivate_old_crews=False,
        )


def test_reconfigure_load_warning(db_session, pooled, make_crew, stock):
    old, old_loc = make_crew("Old", leader="T-1")
    stock(pooled, old_loc, 15)

    result = reconfiguration.reconfigure(
        db_session,
        old_crew_ids=[old.id],
        new_crews=[_cfg("Heavy", "T-1")],
        load_warning_threshold=Decimal("10"),
    )

    assert any("Heavy" in w and "consider redistributing" in w for w in result.warnings)


# ---------- preview ----------
def test_preview_leaderless_writes_nothing(db_session, pooled, make_crew, stock):
    """
    GIVEN
    - an old crew without leader holding 20 units

    THEN
    - the preview routes them to the warehouse with a warning
    - no crew, location or movement is written
    """
    old, old_loc = make_crew("Leaderless", members=["T-3"])
    stock(pooled, old_loc, 20)
    counts_before = [_count(db_session, m) for m in (Crew, Location, InventoryMovement)]

    preview = reconfiguration.preview_reconfigure(
        db_session,
        old_crew_ids=[old.id],
        new_crews=[_cfg("New", "T-3")],
    )

    (planned,) = preview.material_movements
    assert planned.to_crew_ref is None
    assert planned.to_crew_name == "Central Warehouse"
    assert planned.quantity == Decimal("20")
    assert preview.warnings and "no leader" in preview.warnings[0]
    assert preview.summary.total_quantity == Decimal("20")
    assert preview.summary.crews_affected == 1
    assert [_count(db_session, m) for m in (Crew, Location, InventoryMovement)] == counts_before


def test_preview_placeholders_and_summary(db_session, pooled, make_material, make_crew, stock):
    other = make_material("Clamp", ownership=MaterialOwnership.pooled)
    a, a_loc = make_crew("A", leader="T-1")
    b, b_loc = make_crew("B", leader="T-2")
    stock(pooled, a_loc, 5)
    stock(other, a_loc, 1)
    stock(pooled, b_loc, 7)

    preview = reconfiguration.preview_reconfigure(
        db_session,
        old_crew_ids=[a.id, b.id],
        new_crews=[_cfg("North", "T-2"), _cfg("South", "T-1")],
    )

    routed = {(m.from_crew_id, m.material_id): m.to_crew_ref for m in preview.material_movements}
    assert routed == {
        (a.id, pooled.id): "new-1",
        (a.id, other.id): "new-1",
        (b.id, pooled.id): "new-0",
    }
    assert preview.summary.total_materials_to_move == 2
    assert preview.summary.total_quantity == Decimal("13")
    assert preview.summary.crews_affected == 2
