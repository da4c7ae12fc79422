"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine (SQLite by
default, any SQLAlchemy URL through `FORUM_DATABASE_URL`) and provides
small helpers used by the application, scripts and tests.
"""

from sqlmodel import SQLModel, create_engine, Session, select
from sqlalchemy import event

from .config import settings
from . import models

BASE_ROLES = ("USER", "ADMIN")

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=_connect_args)


if engine.dialect.name == "sqlite":
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_db_and_tables():
    """Create database tables and seed the base roles.

    This function is intended for local development and lightweight
    scripts; production deployments should rely on a proper migration
    tool (alembic) instead.
    """
    SQLModel.metadata.create_all(engine)
    seed_roles()
    ensure_roles()


def seed_roles():
    """Insert any missing base role (`USER`, `ADMIN`)."""
    with Session(engine) as session:
        existing = set(session.exec(select(models.Role.name)).all())
        for name in BASE_ROLES:
            if name not in existing:
                session.add(models.Role(name=name))
        session.commit()


def ensure_roles():
    """Fail fast when the base roles are not present.

    Registration assumes both roles exist; a missing role is a
    configuration problem, not something to discover per request.
    """
    with Session(engine) as session:
        existing = set(session.exec(select(models.Role.name)).all())
    missing = [name for name in BASE_ROLES if name not in existing]
    if missing:
        raise RuntimeError(f"required roles missing from database: {', '.join(missing)}")


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session
