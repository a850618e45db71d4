"""Database session management for SmartScan.

By default data is stored locally in ~/.smartscan/smartscan.db. The engine
is constructed once at startup and handed to every component.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .exceptions import ConflictError, StoreFailure
from .models import Base, Role, User

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_EMAIL = "admin@example.com"


def _json_serializer(value) -> str:
    # Keep non-ASCII readable so LIKE queries match Cyrillic text
    return json.dumps(value, ensure_ascii=False)


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def get_engine(url: str, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine."""
    kwargs = {}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    elif url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}

    engine = create_engine(url, echo=echo, json_serializer=_json_serializer, **kwargs)

    if url.startswith("sqlite"):
        # Enable foreign keys for SQLite
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # Built-in lower() folds ASCII only; icontains relies on it for Cyrillic too
            dbapi_connection.create_function("lower", 1, _unicode_lower, deterministic=True)

    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory."""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def transaction(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Get a database session with automatic commit/rollback.

    Store errors surface as ``StoreFailure`` (``ConflictError`` for unique
    key violations); domain errors raised inside the block pass through
    after the rollback.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise ConflictError(f"Constraint violated: {e.orig}") from e
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Store failure, transaction rolled back: %s", e)
        raise StoreFailure(f"Database operation failed: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def read_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Session for queries only. Store errors surface as ``StoreFailure``."""
    session = session_factory()
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error("Store failure while reading: %s", e)
        raise StoreFailure(f"Database query failed: {e}") from e
    finally:
        session.close()


def init_db(engine: Engine, seed: bool = True, admin_password_hash: str = "!") -> None:
    """Initialize the database, creating tables and optionally seeding an admin."""
    Base.metadata.create_all(engine)

    if seed:
        seed_admin(engine, password_hash=admin_password_hash)


def seed_admin(engine: Engine, email: str = DEFAULT_ADMIN_EMAIL, password_hash: str = "!") -> bool:
    """Create a single admin account when the user table is empty.

    Returns True when an account was created.
    """
    SessionLocal = get_session_factory(engine)
    with transaction(SessionLocal) as session:
        count = session.scalar(select(func.count()).select_from(User))
        if count:
            return False

        session.add(User(email=email, password_hash=password_hash, name="Administrator", role=Role.ADMIN))
        logger.info("Seeded default admin account %s", email)
        return True


def first_admin_email(engine: Engine) -> str | None:
    """Email of the oldest admin account, or None when there is none."""
    with read_session(get_session_factory(engine)) as session:
        return session.scalar(
            select(User.email)
            .where(User.role == Role.ADMIN)
            .order_by(User.created_at, User.id)
            .limit(1)
        )
