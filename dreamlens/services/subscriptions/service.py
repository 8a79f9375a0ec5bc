import math
from dataclasses import dataclass

from sqlalchemy.orm import Session

from dreamlens.models.subscription import Subscription


QUALITY_ORDER: dict[str, int] = {"1K": 1, "2K": 2, "4K": 3}


@dataclass(frozen=True)
class SubscriptionLimits:
    daily_generations: float  # math.inf для premium
    max_history: float
    quality: str

    def as_dict(self) -> dict:
        return {
            "dailyGenerations": None if math.isinf(self.daily_generations) else int(self.daily_generations),
            "maxHistory": None if math.isinf(self.max_history) else int(self.max_history),
            "quality": self.quality,
        }


PLAN_LIMITS: dict[str, SubscriptionLimits] = {
    "premium": SubscriptionLimits(daily_generations=math.inf, max_history=math.inf, quality="4K"),
    "pro": SubscriptionLimits(daily_generations=50, max_history=100, quality="2K"),
    "free": SubscriptionLimits(daily_generations=0, max_history=10, quality="1K"),
}


def get_subscription_limits(plan: str | None) -> SubscriptionLimits:
    """Unknown plans get free limits."""
    return PLAN_LIMITS.get((plan or "free").strip().lower(), PLAN_LIMITS["free"])


def is_quality_allowed(plan_quality: str, requested: str) -> bool:
    """1K < 2K < 4K; unknown requested quality is never allowed for free."""
    requested_rank = QUALITY_ORDER.get((requested or "").upper())
    if requested_rank is None:
        return False
    return requested_rank <= QUALITY_ORDER.get(plan_quality.upper(), 1)


class SubscriptionService:
    def __init__(self, db: Session):
        self.db = db

    def get_user_subscription(self, user_id: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == "active")
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def get_user_plan(self, user_id: str) -> str:
        subscription = self.get_user_subscription(user_id)
        return subscription.plan if subscription else "free"
