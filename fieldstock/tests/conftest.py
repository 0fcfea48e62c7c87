import os
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from fieldstock.app.db.base import Base, create_schema
from fieldstock.app.db.models.core_types import LocationKind, MaterialOwnership
from fieldstock.app.db.models.models_v1 import Inventory
from fieldstock.services import catalog, crews, inventory, locations

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


@pytest.fixture(scope="function")
def engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        eng = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(eng, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    else:
        eng = create_engine(TEST_DATABASE_URL)

    create_schema(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    """
    Fresh schema per test.

    Services commit for real, so isolation comes from recreating the
    tables rather than from an enclosing transaction.
    """
    session = Session(bind=engine, autoflush=False)
    try:
        yield session
    finally:
        session.close()


# ---------- Factories ----------
@pytest.fixture
def warehouse(db_session):
    return locations.get_or_create_warehouse(db_session)


@pytest.fixture
def make_material(db_session):
    counter = {"n": 0}

    def _make(name=None, *, unit="unit", min_stock=0, category="GENERAL", ownership=MaterialOwnership.individual):
        counter["n"] += 1
        return catalog.create_material(
            db_session,
            name=name or f"Material {counter['n']}",
            unit=unit,
            min_stock=min_stock,
            category=category,
            ownership=ownership,
        )

    return _make


@pytest.fixture
def make_technician(db_session):
    def _make(technician_id, name=None):
        return locations.create_location(
            db_session,
            kind=LocationKind.technician,
            name=name or f"Tech {technician_id}",
            reference_id=technician_id,
        )

    return _make


@pytest.fixture
def make_crew(db_session):
    def _make(name, leader=None, members=()):
        crew = crews.create_crew(
            db_session,
            name=name,
            leader_technician_id=leader,
            member_ids=list(members),
        )
        return crew, locations.find_crew_location(db_session, crew.id)

    return _make


@pytest.fixture
def stock(db_session):
    """Put `qty` of a material at a location through an ADJUSTMENT."""

    def _stock(material, location, qty):
        return inventory.adjust(
            db_session,
            material_id=material.id,
            location_id=location.id,
            delta=Decimal(str(qty)),
        )

    return _stock


@pytest.fixture
def qty_at(db_session):
    """Current quantity of a material at a location, read straight from the table."""

    def _qty(material, location):
        value = db_session.execute(
            select(Inventory.quantity)
            .where(Inventory.material_id == material.id)
            .where(Inventory.location_id == location.id)
        ).scalar_one_or_none()
        return Decimal("0") if value is None else Decimal(value)

    return _qty
