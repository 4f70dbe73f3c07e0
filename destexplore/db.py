from __future__ import annotations

import os
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from sqlalchemy import create_engine, insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./destexplore.db")


@lru_cache(maxsize=1)
def _engine() -> Engine:
    eng = create_engine(DATABASE_URL, pool_pre_ping=True)
    # No migration tool yet; create missing tables on first use.
    Base.metadata.create_all(eng)
    return eng


def get_engine() -> Engine:
    """FastAPI dependency; tests override it with an in-memory engine."""
    return _engine()


def session(engine: Engine) -> Session:
    # Routes read ORM attributes after committing (response models, outbox
    # payloads). Keep them loaded instead of expiring on commit.
    return Session(engine, expire_on_commit=False)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes for timezone-aware columns; all stored times are UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def insert_ignore(s: Session, model, values: dict[str, Any], conflict_columns: list[str]) -> None:
    """
    INSERT ... ON CONFLICT DO NOTHING against a unique constraint.

    Concurrent writers racing on the same key end up with a single row; the
    caller selects it afterwards. Dialects without ON CONFLICT fall back to a
    savepoint that swallows the duplicate-key error.
    """
    dialect = s.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
        s.execute(stmt)
        return
    if dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
        s.execute(stmt)
        return
    try:
        with s.begin_nested():
            s.execute(insert(model).values(**values))
    except IntegrityError:
        pass
