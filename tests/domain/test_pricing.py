from decimal import Decimal

import pytest

from domain.billing.entity import DomainTld
from domain.billing.pricing import RenewalPricingResolver, tld_candidates
from domain.provisioning.entity import BillingCycle, Domain, DomainStatus, Service, ServiceStatus


class StubTldRepository:
    def __init__(self, prices: dict[str, str]):
        self.prices = {k: DomainTld(k, Decimal(v)) for k, v in prices.items()}
        self.queries: list[list[str]] = []

    async def find_by_tlds(self, tlds):
        self.queries.append(list(tlds))
        return [self.prices[t] for t in tlds if t in self.prices]


def _domain(name: str) -> Domain:
    return Domain(id=1, client_id=1, domain_name=name, status=DomainStatus.ACTIVE)


def test_tld_candidates_longest_first():
    assert tld_candidates("shop.example.co.uk") == ["example.co.uk", "co.uk", "uk"]
    assert tld_candidates("Example.COM.") == ["com"]


@pytest.mark.asyncio
async def test_longest_matching_suffix_wins():
    repo = StubTldRepository({"uk": "5.00", "co.uk": "9.50"})
    resolver = RenewalPricingResolver(repo, Decimal("15"))

    assert await resolver.price_for_renewal(_domain("shop.co.uk"), 1) == Decimal("9.50")
    assert await resolver.price_for_renewal(_domain("shop.org.uk"), 3) == Decimal("15.00")
    assert repo.queries[0] == ["co.uk", "uk"]


@pytest.mark.asyncio
async def test_unknown_tld_uses_default_price():
    resolver = RenewalPricingResolver(StubTldRepository({}), Decimal("15"))
    assert await resolver.price_for_renewal(_domain("acme.dev"), 2) == Decimal("30.00")


@pytest.mark.asyncio
async def test_service_price_is_amount_times_periods():
    service = Service(id=1, client_id=1, product_name="VPS", amount=Decimal("12.34"),
                      billing_cycle=BillingCycle.MONTHLY, status=ServiceStatus.ACTIVE)
    resolver = RenewalPricingResolver(StubTldRepository({}), Decimal("15"))
    assert await resolver.price_for_renewal(service, 3) == Decimal("37.02")
    with pytest.raises(ValueError):
        await resolver.price_for_renewal(service, 0)
