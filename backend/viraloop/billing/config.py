import re
from decimal import Decimal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from viraloop.utils.config import config

CURRENT_SUBSCRIPTION_VERSION = 1

# Price of one credit in dollars, used for one-off credit purchases
PRICE_PER_CREDIT = 0.1

ENTITLED_STATUSES = frozenset({"active", "trialing"})
PAID_PLAN_KEYS = frozenset({"growth", "pro", "ultra"})


class PlanKey(str, Enum):
    TRIAL = "trial"
    GROWTH = "growth"
    PRO = "pro"
    ULTRA = "ultra"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    ONE_TIME = "one_time"


class LedgerEntryType(str, Enum):
    RECURRING = "recurring"
    TOPUP = "topup"
    SPENDING = "spending"
    TRIAL = "trial"
    SPIN = "spin"


class StripeEventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"

    @classmethod
    def parse(cls, value: str) -> Optional["StripeEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


# Credit cost of each paid feature action
CREDITS_REQUIRED: Dict[str, int] = {
    "image_generation": 3,
    "video_generation_kling": 10,
    "video_generation_veo_fast": 15,
    "video_generation_veo_quality": 30,
    "tts_generation": 2,
    "influencer_creation": 5,
}

# Monthly credit grant per plan. The welcome grant skips one-time plans.
SUBSCRIPTION_CREDITS: Dict[PlanKey, int] = {
    PlanKey.TRIAL: 20,
    PlanKey.GROWTH: 300,
    PlanKey.PRO: 700,
    PlanKey.ULTRA: 1000,
}

ONE_TIME_PLANS = frozenset({PlanKey.TRIAL})

ALL_PLATFORMS = ["tiktok", "instagram", "youtube"]


@dataclass(frozen=True)
class PlanLimits:
    influencers: int = 0
    images: int = 0
    videos: int = 0
    platforms: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'influencers': self.influencers,
            'images': self.images,
            'videos': self.videos,
            'platforms': list(self.platforms),
        }


NO_LIMITS = PlanLimits()


@dataclass(frozen=True)
class Plan:
    key: PlanKey
    name: str
    period: BillingPeriod
    price_id: str
    limits: PlanLimits


def _paid_limits(key: PlanKey, influencers: int) -> PlanLimits:
    credits = SUBSCRIPTION_CREDITS[key]
    return PlanLimits(
        influencers=influencers,
        images=credits // CREDITS_REQUIRED["image_generation"],
        videos=credits // CREDITS_REQUIRED["video_generation_veo_fast"],
        platforms=list(ALL_PLATFORMS),
    )


TRIAL_LIMITS = PlanLimits(influencers=1, images=1, videos=1, platforms=["tiktok"])

_INFLUENCER_LIMITS = {
    PlanKey.GROWTH: 5,
    PlanKey.PRO: 15,
    PlanKey.ULTRA: 50,
}


def _build_plans() -> List[Plan]:
    plans = [
        Plan(PlanKey.TRIAL, "Trial", BillingPeriod.ONE_TIME, config.STRIPE_TRIAL_PRICE_ID, TRIAL_LIMITS),
    ]
    for key, label in ((PlanKey.GROWTH, "Growth"), (PlanKey.PRO, "Pro"), (PlanKey.ULTRA, "Ultra")):
        limits = _paid_limits(key, _INFLUENCER_LIMITS[key])
        prefix = f"STRIPE_{key.value.upper()}"
        plans.append(Plan(key, f"{label} (monthly)", BillingPeriod.MONTHLY, getattr(config, f"{prefix}_MONTHLY_PRICE_ID"), limits))
        plans.append(Plan(key, f"{label} (annual)", BillingPeriod.ANNUAL, getattr(config, f"{prefix}_ANNUAL_PRICE_ID"), limits))
    return plans


PLANS: List[Plan] = _build_plans()
PLANS_BY_PRICE_ID: Dict[str, Plan] = {plan.price_id: plan for plan in PLANS}

TRIAL_PLAN_NAME = "Trial"


def get_plan_by_price_id(price_id: Optional[str]) -> Optional[Plan]:
    if not price_id:
        return None
    return PLANS_BY_PRICE_ID.get(price_id)


def get_plan_from_price_id(price_id: Optional[str]) -> str:
    """Display name for a price id. Unknown or missing ids fall back to the trial plan."""
    plan = get_plan_by_price_id(price_id)
    return plan.name if plan else TRIAL_PLAN_NAME


def get_plan_limits_from_price_id(price_id: Optional[str]) -> PlanLimits:
    """Feature caps for a price id; zeros when the id is unknown."""
    plan = get_plan_by_price_id(price_id)
    return plan.limits if plan else NO_LIMITS


_PERIOD_SUFFIX_RE = re.compile(r"\s*\(.*?\)\s*")


def normalize_plan_name(plan_name: Optional[str]) -> str:
    """'Growth (monthly)' -> 'growth'."""
    if not plan_name:
        return ""
    return _PERIOD_SUFFIX_RE.sub(" ", plan_name).strip().lower()


@dataclass(frozen=True)
class KnownPlan:
    key: PlanKey
    credits: int

    @property
    def recurring(self) -> bool:
        return self.key not in ONE_TIME_PLANS


@dataclass(frozen=True)
class UnknownPlan:
    raw_name: Optional[str]
    normalized: str


PlanCredits = Union[KnownPlan, UnknownPlan]


def get_credits_for_plan(plan_name: Optional[str]) -> PlanCredits:
    normalized = normalize_plan_name(plan_name)
    try:
        key = PlanKey(normalized)
    except ValueError:
        return UnknownPlan(raw_name=plan_name, normalized=normalized)
    return KnownPlan(key=key, credits=SUBSCRIPTION_CREDITS[key])


def is_entitled(subscription: Optional[Dict], now: datetime) -> bool:
    """The single entitlement predicate: still valid and in an entitled status."""
    if not subscription:
        return False
    valid_until = subscription.get('subscription_valid_until')
    return (
        valid_until is not None
        and valid_until > now
        and subscription.get('stripe_subscription_status') in ENTITLED_STATUSES
    )


def credits_for_purchase(amount_cents: int) -> int:
    """Whole credits bought with ``amount_cents``."""
    return int(Decimal(amount_cents) / 100 / Decimal(str(PRICE_PER_CREDIT)))
