"""
Transaction boundary shared by every mutating service function.

The outermost ``atomic`` block owns the transaction: it commits when the
block exits normally and rolls back on any exception. Inner blocks on the
same session join the outer transaction, so a composite operation
(crew reconfiguration, batch consumption) commits or rolls back as a unit.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_DEPTH_KEY = "fieldstock.atomic_depth"


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    depth = db.info.get(_DEPTH_KEY, 0)
    db.info[_DEPTH_KEY] = depth + 1

    if depth:
        try:
            yield db
        finally:
            db.info[_DEPTH_KEY] = depth
        return

    try:
        yield db
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error("Transaction rolled back: %s", exc)
        raise
    finally:
        db.info[_DEPTH_KEY] = 0
