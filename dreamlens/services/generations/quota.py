"""
Бесплатная квота: по плану подписки и числу генераций за сегодня решаем,
списывать токены или нет.
"""
import math
from dataclasses import dataclass

from sqlalchemy.orm import Session

from dreamlens.services.generations.service import GenerationService
from dreamlens.services.subscriptions.service import (
    SubscriptionLimits,
    SubscriptionService,
    get_subscription_limits,
    is_quality_allowed,
)
from dreamlens.services.tokens.pricing import clamp_batch_size, get_batch_token_cost


@dataclass(frozen=True)
class FreeQuota:
    plan: str
    limits: SubscriptionLimits
    used_today: int
    remaining: float

    @property
    def max_quality(self) -> str:
        return self.limits.quality

    def as_dict(self) -> dict:
        unlimited = math.isinf(self.remaining)
        return {
            "remaining": None if unlimited else int(self.remaining),
            "total": None if math.isinf(self.limits.daily_generations) else int(self.limits.daily_generations),
            "maxQuality": self.max_quality,
            "unlimited": unlimited,
        }


@dataclass(frozen=True)
class ChargeDecision:
    is_free: bool
    cost: int  # 0 for free path
    full_cost: int  # what the batch would cost in tokens
    image_count: int
    quota: FreeQuota


class QuotaService:
    def __init__(
        self,
        db: Session,
        subscriptions: SubscriptionService | None = None,
        generations: GenerationService | None = None,
    ):
        self.db = db
        self.subscriptions = subscriptions or SubscriptionService(db)
        self.generations = generations or GenerationService(db)

    def get_free_generations(self, user_id: str) -> FreeQuota:
        plan = self.subscriptions.get_user_plan(user_id)
        limits = get_subscription_limits(plan)
        used_today = self.generations.count_generations_today(user_id)
        remaining = max(0, limits.daily_generations - used_today)
        return FreeQuota(plan=plan, limits=limits, used_today=used_today, remaining=remaining)

    def decide(self, user_id: str, quality: str, image_count: int = 1) -> ChargeDecision:
        """
        Free when the remaining daily quota covers the whole batch and the plan allows
        the requested quality; otherwise the whole batch is charged.
        """
        count = clamp_batch_size(image_count)
        quota = self.get_free_generations(user_id)
        full_cost = get_batch_token_cost(quality, count)
        is_free = quota.remaining >= count and is_quality_allowed(quota.max_quality, quality)
        return ChargeDecision(
            is_free=is_free,
            cost=0 if is_free else full_cost,
            full_cost=full_cost,
            image_count=count,
            quota=quota,
        )
