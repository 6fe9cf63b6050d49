from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from oficina_nf.models import client, gateway, invoice, job, order  # noqa: F401
from oficina_nf.models.base import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT = 30


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create the SQLAlchemy engine for *database_url*.

    PostgreSQL gets a pre-pinged connection pool; SQLite (tests, local runs)
    gets a busy timeout so concurrent writers wait instead of failing.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )
    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory used with ``with factory.begin() as session:`` blocks.

    Objects stay readable after commit so services can return them.
    """
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create every table known to the ORM (idempotent)."""
    Base.metadata.create_all(engine)
    logger.info("Schema ready (%d tables)", len(Base.metadata.tables))
