"""
Default subscription tier catalog.

The billing subsystem is the source of truth for tiers; this catalog is the
reference data the ledger uses when no external catalog is injected.
"""
from typing import Dict, Iterable, Optional

from consensus_ai.models.domain import BillingType, SubscriptionTier

DEFAULT_TIERS = (
    SubscriptionTier(
        name="pay_as_you_go",
        display_name="Pay As You Go",
        billing_type=BillingType.PAY_PER_USE,
        included_tokens=25_000,
        included_reports=None,
        price=15.0,
        overage_rate=0.001,
    ),
    SubscriptionTier(
        name="starter",
        display_name="Starter",
        billing_type=BillingType.METERED_SUBSCRIPTION,
        included_tokens=50_000,
        included_reports=3,
        price=29.0,
        overage_rate=0.001,
    ),
    SubscriptionTier(
        name="professional",
        display_name="Professional",
        billing_type=BillingType.METERED_SUBSCRIPTION,
        included_tokens=150_000,
        included_reports=10,
        price=79.0,
        overage_rate=0.0008,
    ),
    SubscriptionTier(
        name="business",
        display_name="Business",
        billing_type=BillingType.METERED_SUBSCRIPTION,
        included_tokens=500_000,
        included_reports=30,
        price=199.0,
        overage_rate=0.0006,
    ),
)


class TierCatalog:
    """Lookup of immutable tiers by name."""

    def __init__(self, tiers: Iterable[SubscriptionTier] = DEFAULT_TIERS):
        self._tiers: Dict[str, SubscriptionTier] = {tier.name: tier for tier in tiers}

    def get(self, name: str) -> Optional[SubscriptionTier]:
        return self._tiers.get(name)

    def require(self, name: str) -> SubscriptionTier:
        tier = self._tiers.get(name)
        if tier is None:
            raise KeyError(f"unknown subscription tier: {name}")
        return tier

    def names(self):
        return list(self._tiers)
