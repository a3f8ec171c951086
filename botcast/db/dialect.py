# botcast/db/dialect.py
"""Dialect-aware INSERT so ON CONFLICT works on PostgreSQL and on SQLite in tests."""
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def upsert_insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT insert not supported for dialect '{dialect}'")
