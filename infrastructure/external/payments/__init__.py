"""
Factory for payment gateway clients.

Manual methods (bank transfer, cash, internal refunds) have no client: refunds against them are
settled out of band. A gateway without credentials is treated the same way.
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_gateway import GatewayClient
from core.logging_config import get_logger
from core.settings import gateway_settings

logger = get_logger(__name__)

MANUAL_GATEWAYS = {"manual", "bank_transfer", "bank transfer", "cash", "internal refund"}


def get_gateway_client(gateway: Optional[str]) -> Optional[GatewayClient]:
    name = (gateway or "").strip().lower()
    if not name or name in MANUAL_GATEWAYS:
        return None
    if name == "bkash":
        cfg = gateway_settings.bkash
        if not all((cfg.app_key, cfg.app_secret, cfg.username, cfg.password)):
            logger.warning("gateway_not_configured", gateway=name)
            return None
        from .bkash_client import BkashClient
        return BkashClient(cfg)
    return None
