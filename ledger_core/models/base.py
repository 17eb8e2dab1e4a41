"""
Database engine, session management, and base model.

This module is the foundation for all database operations.
Every model inherits from Base. Every unit of work gets a
session from session_scope() or from a session factory.
"""

from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from ledger_core.config import get_settings


# --- Engine ---
# Created on first use so importing the models never opens
# a connection. pool_pre_ping=True tests connections before
# using them, which handles a restarted database or a stale
# pooled connection.
@lru_cache()
def get_engine():
    return create_engine(
        get_settings().DATABASE_URL,
        pool_pre_ping=True,
    )


# --- Session Factory ---
# autocommit=False means we explicitly control when changes
# are saved — every ledger operation is all-or-nothing.
# autoflush=False means SQL is only sent when a service
# flushes, so validation runs before anything is written.
def make_session_factory(engine=None) -> sessionmaker:
    return sessionmaker(
        bind=engine or get_engine(),
        autocommit=False,
        autoflush=False,
    )


# --- Base Model Class ---
# Every model (Account, LedgerEntry, Transaction, etc.)
# inherits from this class. SQLAlchemy uses it to track
# all models and generate the correct SQL for table creation.
class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(session_factory=None):
    """
    Run one unit of work.

    Commits when the block finishes, rolls back on any
    exception and re-raises it, and always closes the
    session so pooled connections are never leaked.
    """
    factory = session_factory or make_session_factory()
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
