"""
BonusService: ежедневный бонус («колесо») и приветственный бонус.

Оба гранта идемпотентны на уровне SQL:
- ежедневный: условный UPDATE по last_bonus_date <> CURRENT_DATE;
- приветственный: наличие транзакции с описанием-маркером («свидетель»).
"""
import logging
import random
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from dreamlens.services.cache import TTLCache
from dreamlens.services.tokens.ledger import TokenLedger
from dreamlens.utils.metrics import bonus_claims_total

logger = logging.getLogger(__name__)

DAILY_BONUS_MIN = 1
DAILY_BONUS_MAX = 10

WELCOME_BONUS_AMOUNT = 5
WELCOME_BONUS_DESCRIPTION = "Welcome bonus"
# Анонимные (device) пользователи стартового бонуса не получают: иначе новые device_id = бесплатные токены
ANONYMOUS_WELCOME_AMOUNT = 0
ANONYMOUS_WELCOME_DESCRIPTION = "Welcome Pack (anonymous)"


@dataclass(frozen=True)
class BonusClaim:
    claimed: bool
    amount: int
    new_balance: int | None = None


def welcome_bonus_for(identity_source: str) -> tuple[int, str]:
    """(amount, sentinel description) for an identity source."""
    if identity_source in ("telegram", "clerk"):
        return WELCOME_BONUS_AMOUNT, WELCOME_BONUS_DESCRIPTION
    return ANONYMOUS_WELCOME_AMOUNT, ANONYMOUS_WELCOME_DESCRIPTION


class BonusService:
    def __init__(
        self,
        db: Session,
        cache: TTLCache,
        ledger: TokenLedger | None = None,
        rng: Callable[[int, int], int] = random.randint,
    ):
        self.db = db
        self.ledger = ledger or TokenLedger(db, cache)
        self._rng = rng

    def claim_daily_bonus(self, user_id: str) -> BonusClaim:
        amount = self._rng(DAILY_BONUS_MIN, DAILY_BONUS_MAX)
        new_balance = self.ledger.claim_daily_bonus_atomic(user_id, amount)
        if new_balance is None:
            bonus_claims_total.labels(result="already_claimed").inc()
            logger.info("daily_bonus_already_claimed", extra={"user_id": user_id})
            return BonusClaim(claimed=False, amount=0)
        bonus_claims_total.labels(result="claimed").inc()
        logger.info("daily_bonus_claimed", extra={"user_id": user_id, "amount": amount, "new_balance": new_balance})
        return BonusClaim(claimed=True, amount=amount, new_balance=new_balance)

    def ensure_welcome_bonus(self, user_id: str, identity_source: str) -> bool:
        """
        Returns True only for the call that actually granted the bonus.
        Fast path: the witness transaction already exists, no write at all.
        """
        amount, description = welcome_bonus_for(identity_source)
        self.ledger.get_or_create_token_balance(user_id)
        if self.ledger.has_transaction(user_id, description):
            return False
        awarded = self.ledger.ensure_welcome_bonus_atomic(user_id, amount, description)
        if awarded:
            logger.info(
                "welcome_bonus_awarded",
                extra={"user_id": user_id, "amount": amount, "auth_type": identity_source},
            )
        return awarded
