from __future__ import annotations

import datetime as dt

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import TypeDecorator

from src.utils.time import UTC, ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always hands back tz-aware UTC datetimes.

    Token expiry and `linked_at` comparisons are done against `utcnow()`, so a
    naive value coming back from SQLite would raise on comparison. Values are
    written as naive UTC and re-tagged on read.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
