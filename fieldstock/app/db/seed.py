from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from fieldstock.app.db.base import create_schema
from fieldstock.app.db.models.models_v1 import Location
from fieldstock.services.locations import get_or_create_warehouse

logger = logging.getLogger(__name__)


def run_seed(db: Session) -> Location:
    # 1) Central warehouse (the only location with a NULL reference)
    warehouse = get_or_create_warehouse(db)
    logger.info("Seed OK: warehouse=%s (id=%s)", warehouse.name, warehouse.id)
    return warehouse


def main() -> None:
    from fieldstock.app.db.session import SessionLocal, engine

    logging.basicConfig(level=logging.INFO)
    create_schema(engine)
    db = SessionLocal()
    try:
        run_seed(db)
    finally:
        db.close()


if __name__ == "__main__":
    main()
