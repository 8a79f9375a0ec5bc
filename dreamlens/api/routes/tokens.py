from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from dreamlens.api.deps import get_cache, get_current_user, get_db
from dreamlens.core.errors import BadRequest, NotFound
from dreamlens.models.user import User
from dreamlens.services.bonus.service import BonusService
from dreamlens.services.cache import TTLCache
from dreamlens.services.generations.quota import QuotaService
from dreamlens.services.tokens.service import TokenService


router = APIRouter(prefix="/api/tokens", tags=["tokens"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _no_cache(response: Response) -> None:
    for key, value in NO_CACHE_HEADERS.items():
        response.headers[key] = value


@router.get("")
def get_tokens(
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
) -> dict:
    _no_cache(response)
    info = TokenService(db, cache).get_token_info(user.id)
    quota = QuotaService(db).get_free_generations(user.id)
    return {
        "success": True,
        "data": {
            "balance": info.balance,
            "lastBonusDate": info.last_bonus_date.isoformat() if info.last_bonus_date else None,
            "serverDate": info.server_date.isoformat(),
            "canClaimBonus": info.can_claim_bonus,
            "freeGenerations": quota.as_dict(),
            "plan": quota.plan,
        },
    }


@router.post("")
def claim_daily_bonus(
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
) -> dict:
    """Ежедневное колесо: 1..10 токенов раз в сутки (по дате сервера БД)."""
    _no_cache(response)
    bonus = BonusService(db, cache)
    if bonus.ledger.get_token_balance(user.id) is None:
        raise NotFound("Запись токенов не найдена", code="tokens_not_found")
    claim = bonus.claim_daily_bonus(user.id)
    if not claim.claimed:
        raise BadRequest("Ежедневный бонус уже получен сегодня", code="bonus_already_claimed")
    return {
        "success": True,
        "data": {
            "tokensAwarded": claim.amount,
            "newBalance": claim.new_balance,
            "message": f"Получено {claim.amount} токенов!",
        },
    }
