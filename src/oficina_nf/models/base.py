from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import JSON, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP (without time zone) columns."""
    return datetime.now(UTC).replace(tzinfo=None)


JSONPayload = JSON().with_variant(JSONB(), "postgresql")

Money = Numeric(10, 2, asdecimal=True)


class Base(DeclarativeBase):
    pass
