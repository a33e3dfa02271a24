"""金额与时间的公共工具"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, str]) -> Decimal:
    """Quantize to cents with ROUND_HALF_UP. Floats are rejected."""
    if isinstance(value, float):
        raise TypeError("monetary amounts must not be floats")
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
