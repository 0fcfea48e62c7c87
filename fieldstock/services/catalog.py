"""Material catalog."""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from fieldstock.app.core.config import settings
from fieldstock.app.db.models.core_types import MaterialOwnership
from fieldstock.app.db.models.models_v1 import Material, utcnow
from fieldstock.app.db.transaction import atomic
from fieldstock.services.errors import InvalidRequestError, NotFoundError
from fieldstock.services.quantities import to_quantity

logger = logging.getLogger(__name__)

_UNSET = object()


def _clean_name(value: str, field: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidRequestError(f"{field} is required")
    return str(value).strip()


def create_material(
    db: Session,
    *,
    name: str,
    unit: str,
    min_stock: Decimal | int | str = 0,
    category: str = "GENERAL",
    ownership: MaterialOwnership = MaterialOwnership.individual,
    images: list[str] | None = None,
) -> Material:
    material = Material(
        name=_clean_name(name, "name"),
        unit=_clean_name(unit, "unit"),
        min_stock=to_quantity(min_stock, field="min_stock"),
        category=_clean_name(category, "category").upper(),
        ownership=MaterialOwnership(ownership),
        images=list(images) if images else None,
    )
    with atomic(db):
        db.add(material)
        db.flush()
        logger.info("Material created (id=%s name=%s)", material.id, material.name)
    return material


def get_material(db: Session, material_id: int, *, include_deleted: bool = False) -> Material:
    material = db.get(Material, material_id)
    if not material or (material.deleted_at is not None and not include_deleted):
        raise NotFoundError(f"Material {material_id} not found")
    return material


def update_material(
    db: Session,
    material_id: int,
    *,
    name: str | None = None,
    unit: str | None = None,
    min_stock=None,
    category: str | None = None,
    ownership: MaterialOwnership | None = None,
    images=_UNSET,
) -> Material:
    with atomic(db):
        material = get_material(db, material_id)
        if name is not None:
            material.name = _clean_name(name, "name")
        if unit is not None:
            material.unit = _clean_name(unit, "unit")
        if min_stock is not None:
            material.min_stock = to_quantity(min_stock, field="min_stock")
        if category is not None:
            material.category = _clean_name(category, "category").upper()
        if ownership is not None:
            material.ownership = MaterialOwnership(ownership)
        if images is not _UNSET:
            material.images = list(images) if images else None
        db.flush()
        logger.info("Material %s updated", material.id)
        return material


def delete_material(db: Session, material_id: int) -> Material:
    """Soft delete: the row stays because movements reference it."""
    with atomic(db):
        material = get_material(db, material_id)
        material.deleted_at = utcnow()
        db.flush()
        logger.info("Material %s soft-deleted", material.id)
        return material


def list_materials(
    db: Session,
    *,
    page: int = 1,
    per_page: int | None = None,
    search: str | None = None,
) -> tuple[list[Material], int]:
    per_page = per_page or settings.default_page_size
    if page < 1 or per_page < 1:
        raise InvalidRequestError("page and per_page must be positive")

    stmt = select(Material).where(Material.deleted_at.is_(None))
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(Material.name.ilike(pattern), Material.category.ilike(pattern)))

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = (
        db.execute(
            stmt.order_by(Material.name.asc(), Material.id.asc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        .scalars()
        .all()
    )
    return list(items), int(total)
