"""
Defines a base model for SQLAlchemy ORM with common attributes.

This module provides a base class for SQLAlchemy models, including standard
attributes for identifying and timestamping database records. Identifiers are
time-ordered UUIDs so that rows sort in insertion order, which the message
pagination relies on to break timestamp ties deterministically.
"""

import os
import time
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import Column, DateTime, String, TypeDecorator
from sqlalchemy.dialects.postgresql import UUID as PostgreSQLUUID
from sqlalchemy.orm import declarative_base

Base = declarative_base()

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the column type."""
    return datetime.now(UTC).replace(tzinfo=None)


def ordered_uuid(timestamp: datetime | None = None) -> uuid.UUID:
    """Build a UUIDv7-layout identifier.

    The first 48 bits hold the Unix time in milliseconds and the following
    12 bits hold the sub-millisecond fraction, so two ids generated in order
    compare in order. The remaining 62 bits are random.
    """
    if timestamp is None:
        nanos = time.time_ns()
    else:
        nanos = ((timestamp.replace(tzinfo=UTC) - EPOCH) // timedelta(microseconds=1)) * 1_000
    millis, remainder = divmod(nanos, 1_000_000)
    sub_millis = (remainder * 4096) // 1_000_000
    rand = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)

    value = (millis & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= sub_millis << 64
    value |= 0b10 << 62
    value |= rand
    return uuid.UUID(int=value)


class UUID(TypeDecorator):
    """
    Platform-independent UUID type.
    Uses PostgreSQL's UUID type when available,
    otherwise uses CHAR(36), storing as string.
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PostgreSQLUUID())
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            return uuid.UUID(str(value))
        return value


class BaseModel(Base):
    """
    Base model class for database entities.

    Chat records are append-only, so only a creation timestamp is tracked.

    :ivar id: Time-ordered unique identifier for the record.
    :type id: UUID
    :ivar created_at: Timestamp representing when the record was created.
    :type created_at: datetime
    """
    __abstract__ = True

    id = Column(UUID(), primary_key=True, default=ordered_uuid)
    created_at = Column(DateTime, nullable=False, default=utcnow)
