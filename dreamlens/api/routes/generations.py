import math

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from dreamlens.api.deps import get_current_user, get_db
from dreamlens.models.user import User
from dreamlens.services.generations.service import MAX_HISTORY_LIMIT, GenerationService
from dreamlens.services.subscriptions.service import SubscriptionService, get_subscription_limits


router = APIRouter(prefix="/api/generations", tags=["generations"])


@router.get("")
def list_generations(
    limit: int | None = Query(None, ge=1, le=MAX_HISTORY_LIMIT),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    """История генераций: не больше, чем позволяет план (maxHistory), и не больше 100."""
    plan_limit = get_subscription_limits(SubscriptionService(db).get_user_plan(user.id)).max_history
    cap = MAX_HISTORY_LIMIT if math.isinf(plan_limit) else int(plan_limit)
    effective = min(limit or cap, cap, MAX_HISTORY_LIMIT)
    items = GenerationService(db).list_generations(user.id, limit=effective)
    return {
        "success": True,
        "data": [
            {
                "id": g.id,
                "status": g.status,
                "imageUrl": g.image_url,
                "trend": g.trend,
                "quality": g.quality,
                "errorMessage": g.error_message,
                "createdAt": g.created_at.isoformat() if g.created_at else None,
            }
            for g in items
        ],
    }
