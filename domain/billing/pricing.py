"""
续费定价

Service: recurring amount × period count. Domain: TLD renewal price (longest matching
suffix) × years, falling back to a configured default when no TLD matches.
"""
from __future__ import annotations

from decimal import Decimal
from typing import List, Union

from core.logging_config import get_logger
from domain.common.values import to_money
from domain.provisioning.entity import Domain, Service

from .repository import DomainTldRepository

logger = get_logger(__name__)


def tld_candidates(domain_name: str) -> List[str]:
    """All proper suffixes of a domain name, longest first: ``a.co.uk`` -> ``co.uk``, ``uk``."""
    labels = domain_name.strip().lower().strip(".").split(".")
    return [".".join(labels[i:]) for i in range(1, len(labels))]


class RenewalPricingResolver:
    def __init__(self, tld_repository: DomainTldRepository, default_domain_price: Decimal):
        self.tld_repository = tld_repository
        self.default_domain_price = to_money(default_domain_price)

    async def price_for_renewal(self, item: Union[Service, Domain], period: int) -> Decimal:
        if period < 1:
            raise ValueError(f"period must be >= 1, got {period}")
        if isinstance(item, Service):
            return to_money(item.amount * period)
        return to_money(await self.domain_renewal_price(item.domain_name) * period)

    async def domain_renewal_price(self, domain_name: str) -> Decimal:
        candidates = tld_candidates(domain_name)
        if candidates:
            matches = await self.tld_repository.find_by_tlds(candidates)
            if matches:
                best = max(matches, key=lambda t: len(t.tld))
                return best.renewal_price
        logger.info("tld_price_fallback", domain=domain_name, price=self.default_domain_price)
        return self.default_domain_price
