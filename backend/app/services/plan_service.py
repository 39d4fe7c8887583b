"""Plan tiers: product mapping, priority ordering and usage limits"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings, TIER_PRIORITY
from app.models.stripe_product import StripeProduct
from app.services.stripe_service import _get_stripe_value, get_subscription_product_id

logger = logging.getLogger(__name__)

PLAN_NAMES = {
    "free": "Free",
    "pro": "Pro",
    "ultra_pro": "Ultra Pro",
}


@dataclass(frozen=True)
class PlanInfo:
    tier: str
    plan_name: str


@dataclass(frozen=True)
class SelectedSubscription:
    """The subscription chosen to represent a customer's entitlement"""
    subscription: Any
    subscription_id: str
    product_id: str
    tier: str
    plan_name: str

    @property
    def priority(self) -> int:
        return tier_priority(self.tier)


def tier_priority(tier: str) -> int:
    return TIER_PRIORITY.get(tier, 0)


def usage_limit_for_tier(tier: str) -> int:
    return settings.TIER_USAGE_LIMITS.get(tier, 0)


def load_product_plans(db: Session) -> Dict[str, PlanInfo]:
    """Product id -> plan, from STRIPE_PRODUCT_TIERS overlaid by the stripe_products table"""
    plans = {
        product_id: PlanInfo(tier=tier, plan_name=PLAN_NAMES[tier])
        for product_id, tier in settings.STRIPE_PRODUCT_TIERS.items()
    }
    for product in db.query(StripeProduct).all():
        if product.plan_tier not in TIER_PRIORITY:
            logger.warning(f"Ignoring stripe_products row {product.stripe_product_id} with unknown tier '{product.plan_tier}'")
            continue
        plans[product.stripe_product_id] = PlanInfo(tier=product.plan_tier, plan_name=product.plan_name)
    return plans


def select_highest_tier(subscriptions: Iterable[Any], product_plans: Dict[str, PlanInfo]) -> Optional[SelectedSubscription]:
    """Pick the subscription with the highest tier priority.

    Ties at the same tier go to the lexicographically smallest subscription id,
    so the result does not depend on the order Stripe lists them in.
    Subscriptions for unmapped products are skipped.
    """
    candidates: List[SelectedSubscription] = []
    for subscription in subscriptions:
        subscription_id = _get_stripe_value(subscription, "id")
        product_id = get_subscription_product_id(subscription)
        plan = product_plans.get(product_id)
        if plan is None:
            logger.warning(f"Skipping subscription {subscription_id}: product {product_id} has no plan mapping")
            continue
        candidates.append(SelectedSubscription(
            subscription=subscription,
            subscription_id=subscription_id,
            product_id=product_id,
            tier=plan.tier,
            plan_name=plan.plan_name,
        ))

    if not candidates:
        return None

    return min(candidates, key=lambda c: (-c.priority, c.subscription_id))
