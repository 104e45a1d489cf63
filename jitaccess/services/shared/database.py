"""
SQLAlchemy engine and session factory for the access service.
Routes, reconcilers and the sweeper all import from here.

DATABASE_URL defaults to a local SQLite file. init_engine() rebinds the
session factory to the URL from settings at startup.
"""

import os
from datetime import datetime, timezone

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./jitaccess.db")


def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # reconcilers run in worker threads
        return create_engine(url, connect_args={"check_same_thread": False})
    # pool_pre_ping=True drops dead connections automatically
    return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20)


engine = _make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, including on backends that drop tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_engine(url: str) -> Engine:
    """Point the module-level engine and SessionLocal at `url`."""
    global engine, DATABASE_URL
    DATABASE_URL = url
    engine = _make_engine(url)
    SessionLocal.configure(bind=engine)
    return engine


def get_db():
    """FastAPI dependency: yields a DB session and closes it when done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_all_tables(bind: Engine = None) -> None:
    """Create all ORM tables. Called at service startup."""
    from jitaccess.services.shared import models  # noqa: F401 - ensures models are registered
    Base.metadata.create_all(bind=bind or engine)
