"""税率 / 税名 / 货币符号查询接口"""
from __future__ import annotations

from decimal import Decimal
from typing import Protocol, runtime_checkable


@runtime_checkable
class SettingsLookup(Protocol):
    async def get_tax_rate(self) -> Decimal:
        """Fraction, e.g. ``Decimal("0.15")`` for 15%."""
        ...

    async def get_tax_label(self) -> str:
        ...

    async def get_currency_symbol(self) -> str:
        ...
