"""Cursor (keyset) pagination utilities.

Rows are read newest-first on a composite ``(created_at, id)`` key so ties are
broken deterministically. A page asks for ``limit + 1`` rows to learn whether
more remain and is returned in chronological order. Cursors anchor on the
boundary row's key, never on an offset, so concurrent inserts cannot shift
rows between pages.
"""

import base64
import binascii
import json
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import ColumnElement

from app.exceptions.base import ValidationError

T = TypeVar("T")


class CursorDirection(str, Enum):
    OLDER = "older"
    NEWER = "newer"


class CursorParams(BaseModel):
    """Cursor pagination parameters."""

    cursor: str | None = Field(default=None, description="Opaque cursor from a previous page")
    limit: int = Field(default=20, ge=1, le=1000, description="Page size")


class Cursor(BaseModel):
    """Decoded cursor: the boundary row key and the direction to read in."""

    created_at: datetime
    id: UUID
    direction: CursorDirection = CursorDirection.OLDER

    def encode(self) -> str:
        raw = json.dumps(
            {"t": self.created_at.isoformat(), "id": str(self.id), "d": self.direction.value},
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "Cursor":
        try:
            padded = token + "=" * (-len(token) % 4)
            data = json.loads(base64.urlsafe_b64decode(padded.encode()))
            return cls(
                created_at=datetime.fromisoformat(data["t"]),
                id=UUID(data["id"]),
                direction=CursorDirection(data.get("d", CursorDirection.OLDER.value)),
            )
        except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise ValidationError("Invalid pagination cursor", details={"cursor": token}) from e


class CursorPage(BaseModel, Generic[T]):
    """One page of rows in chronological order plus navigation cursors."""

    items: list[T]
    prev_cursor: str | None = None
    next_cursor: str | None = None


def _older_than(created_col: ColumnElement, id_col: ColumnElement, cursor: Cursor) -> ColumnElement:
    return or_(
        created_col < cursor.created_at,
        and_(created_col == cursor.created_at, id_col < cursor.id),
    )


def _newer_than(created_col: ColumnElement, id_col: ColumnElement, cursor: Cursor) -> ColumnElement:
    return or_(
        created_col > cursor.created_at,
        and_(created_col == cursor.created_at, id_col > cursor.id),
    )


def _cursor_for(row: Any, direction: CursorDirection) -> str:
    return Cursor(created_at=row.created_at, id=row.id, direction=direction).encode()


async def paginate_by_cursor(
    db: AsyncSession,
    query: Select,
    *,
    created_col: ColumnElement,
    id_col: ColumnElement,
    params: CursorParams,
) -> CursorPage:
    """
    Paginate a SQLAlchemy query by keyset.

    Args:
        db: Database session
        query: SQLAlchemy select query, already filtered, without ordering
        created_col: Timestamp column of the key
        id_col: Id column of the key (tie breaker)
        params: Cursor and page size

    Returns:
        CursorPage with rows in chronological order. ``next_cursor`` reads
        older rows and is set while older rows remain; ``prev_cursor`` reads
        newer rows and is set whenever the page is non-empty.
    """
    cursor = Cursor.decode(params.cursor) if params.cursor else None

    if cursor is not None and cursor.direction == CursorDirection.NEWER:
        paged = (
            query.where(_newer_than(created_col, id_col, cursor))
            .order_by(created_col.asc(), id_col.asc())
            .limit(params.limit + 1)
        )
        rows = list((await db.execute(paged)).scalars().all())
        items = rows[: params.limit]
        if not items:
            # Nothing newer yet; hand the same cursor back so the client can poll
            return CursorPage(items=[], prev_cursor=params.cursor, next_cursor=None)
        return CursorPage(
            items=items,
            prev_cursor=_cursor_for(items[-1], CursorDirection.NEWER),
            next_cursor=_cursor_for(items[0], CursorDirection.OLDER),
        )

    paged = query
    if cursor is not None:
        paged = paged.where(_older_than(created_col, id_col, cursor))
    paged = paged.order_by(created_col.desc(), id_col.desc()).limit(params.limit + 1)

    rows = list((await db.execute(paged)).scalars().all())
    has_more = len(rows) > params.limit
    items = list(reversed(rows[: params.limit]))

    return CursorPage(
        items=items,
        prev_cursor=_cursor_for(items[-1], CursorDirection.NEWER) if items else None,
        next_cursor=_cursor_for(items[0], CursorDirection.OLDER) if has_more else None,
    )
