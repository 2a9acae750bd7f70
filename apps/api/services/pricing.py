"""Credit packages and subscription plans."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from config import settings
from models.wallet import SubscriptionTier


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    description: str
    credits: int
    price: int  # cents
    currency: str = "usd"
    popular: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PricingPlan:
    id: SubscriptionTier
    name: str
    description: str
    monthly_price: int  # dollars
    annual_price: int  # dollars
    currency: str = "usd"
    popular: bool = False

    @property
    def subscription_credits(self) -> int:
        limits = {
            SubscriptionTier.FREE: settings.SUBSCRIPTION_FREE_CREDITS,
            SubscriptionTier.STARTER: settings.SUBSCRIPTION_STARTER_CREDITS,
            SubscriptionTier.PRO: settings.SUBSCRIPTION_PRO_CREDITS,
            SubscriptionTier.MAX: settings.SUBSCRIPTION_MAX_CREDITS,
        }
        return int(limits[self.id])

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["id"] = self.id.value
        payload["subscription_credits"] = self.subscription_credits
        return payload


# One-time purchases land in the bonus pool
CREDIT_PACKAGES = (
    CreditPackage("small", "Small Pack", "Try it out", credits=100, price=500),
    CreditPackage("medium", "Medium Pack", "Best for regular users", credits=250, price=1000, popular=True),
    CreditPackage("large", "Large Pack", "For power users", credits=600, price=2000),
)

PRICING_PLANS = (
    PricingPlan(SubscriptionTier.FREE, "Free", "Get started for free", monthly_price=0, annual_price=0),
    PricingPlan(SubscriptionTier.STARTER, "Starter", "For indie creators", monthly_price=12, annual_price=108),
    PricingPlan(SubscriptionTier.PRO, "Pro", "For power users", monthly_price=24, annual_price=228, popular=True),
    PricingPlan(SubscriptionTier.MAX, "Max", "For agencies & teams", monthly_price=240, annual_price=2400),
)


def get_credit_package(package_id: str) -> Optional[CreditPackage]:
    return next((pkg for pkg in CREDIT_PACKAGES if pkg.id == package_id), None)


def get_pricing_plan(plan_id: str) -> Optional[PricingPlan]:
    return next((plan for plan in PRICING_PLANS if plan.id.value == plan_id), None)


def get_annual_price(monthly_price: int) -> int:
    """Annual price for a known monthly price, else twelve months."""
    for plan in PRICING_PLANS:
        if plan.monthly_price and plan.monthly_price == monthly_price:
            return plan.annual_price
    return monthly_price * 12


def get_price_in_cents(monthly_price: int, interval: str = "month") -> int:
    if interval == "year":
        return get_annual_price(monthly_price) * 100
    return monthly_price * 100
