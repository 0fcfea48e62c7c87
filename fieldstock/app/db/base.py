from __future__ import annotations

from sqlalchemy import Engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def create_schema(bind: Engine) -> None:
    """
    Create every table registered on Base.metadata (dev / tests only).
    Existing tables are left untouched.
    """
    # import for side effects: registers every model on Base.metadata
    from fieldstock.app.db.models import models_v1  # noqa: F401

    Base.metadata.create_all(bind=bind)
