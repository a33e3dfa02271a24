"""
系统设置读取 - 税率 / 税名 / 货币符号

Values live in ``system_settings`` keyed as ``taxRate`` (percent), ``taxName`` and
``currency``; missing keys fall back to ``settings.billing``.
"""
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import BillingSettings, settings
from core.logging_config import get_logger
from domain.billing.settings import SettingsLookup
from infrastructure.database import AsyncSessionLocal
from infrastructure.models.settings import SystemSettingModel


logger = get_logger(__name__)

CURRENCY_SYMBOLS = {
    "BDT": "TK ",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "INR": "₹",
}


class DatabaseSettingsLookup(SettingsLookup):
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        defaults: Optional[BillingSettings] = None,
    ):
        self._session_factory = session_factory
        self._defaults = defaults or settings.billing

    async def _get(self, key: str) -> Optional[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SystemSettingModel.value).where(SystemSettingModel.key == key)
            )
            return result.scalar_one_or_none()

    async def get_tax_rate(self) -> Decimal:
        raw = await self._get("taxRate")
        if raw in (None, ""):
            return self._defaults.default_tax_rate
        try:
            return Decimal(str(raw).strip()) / Decimal(100)
        except InvalidOperation:
            logger.warning("invalid_tax_rate_setting", value=raw)
            return self._defaults.default_tax_rate

    async def get_tax_label(self) -> str:
        return (await self._get("taxName")) or self._defaults.default_tax_label

    async def get_currency_symbol(self) -> str:
        code = ((await self._get("currency")) or self._defaults.default_currency).strip().upper()
        return CURRENCY_SYMBOLS.get(code, f"{code} ")
