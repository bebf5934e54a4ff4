from __future__ import annotations

import datetime as dt

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_epoch_ms(value: dt.datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)


def schwab_timestamp(value: dt.datetime) -> str:
    """
    Format a datetime the way the Schwab trader API expects entered-time filters:
    `YYYY-MM-DDTHH:MM:SS.mmmZ` in UTC.
    """
    v = ensure_utc(value)
    return v.strftime("%Y-%m-%dT%H:%M:%S.") + f"{v.microsecond // 1000:03d}Z"
