"""Database bootstrap helpers shared by all services."""

from datetime import datetime, timezone

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from mentorsaga.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# JSONB on Postgres, plain JSON elsewhere (SQLite test databases).
JSONType = JSON().with_variant(postgresql.JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def _dialect_insert(db):
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def insert_ignore(db, model, values: dict):
    """INSERT ... ON CONFLICT DO NOTHING; returns the new primary key or None.

    No conflict target is given, so a clash on any unique key of the table
    counts as "already exists".
    """

    insert = _dialect_insert(db)
    pk = model.__table__.primary_key.columns.values()[0]
    stmt = insert(model).values(**values).on_conflict_do_nothing().returning(pk)
    return db.execute(stmt).scalar_one_or_none()


def upsert(db, model, values: dict, conflict_columns: list[str], update_columns: list[str]) -> None:
    """INSERT ... ON CONFLICT (cols) DO UPDATE for single-row-per-key tables."""

    insert = _dialect_insert(db)
    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    db.execute(stmt)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""

    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
