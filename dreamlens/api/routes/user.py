from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dreamlens.api.deps import get_current_user, get_db
from dreamlens.models.user import User
from dreamlens.services.generations.quota import QuotaService
from dreamlens.services.subscriptions.service import SubscriptionService


router = APIRouter(prefix="/api/user", tags=["user"])


@router.get("")
def get_user(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    subscriptions = SubscriptionService(db)
    subscription = subscriptions.get_user_subscription(user.id)
    quota = QuotaService(db, subscriptions=subscriptions).get_free_generations(user.id)
    return {
        "success": True,
        "data": {
            "id": user.id,
            "authType": user.identity_source,
            "telegramId": user.telegram_id,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "username": user.username,
            "photoUrl": user.photo_url,
            "languageCode": user.language_code,
            "createdAt": user.created_at.isoformat() if user.created_at else None,
            "subscription": {
                "plan": quota.plan,
                "status": subscription.status if subscription else None,
                "currentPeriodEnd": (
                    subscription.current_period_end.isoformat()
                    if subscription and subscription.current_period_end
                    else None
                ),
            },
            "limits": quota.limits.as_dict(),
            "usage": {"generationsToday": quota.used_today, "freeGenerations": quota.as_dict()},
        },
    }
