from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip().replace(",", "")
    if not s:
        return None
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def format_usd(value: Any, digits: int = 2, dash: str = "-") -> str:
    """
    CLI-friendly USD formatter.

    - `None` -> dash
    - numeric -> "$1,234.56"; negatives render as "-$1,234.56"
    """
    d = _to_decimal(value)
    if d is None:
        return dash
    digits = max(0, int(digits))
    q = Decimal(1) if digits == 0 else Decimal("1").scaleb(-digits)
    d = d.quantize(q, rounding=ROUND_HALF_UP)
    sign = "-" if d < 0 else ""
    return f"{sign}${abs(d):,.{digits}f}"
