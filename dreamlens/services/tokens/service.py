import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from dreamlens.services.cache import TTLCache
from dreamlens.services.tokens.ledger import TokenLedger
from dreamlens.utils.metrics import balance_rejected_total, token_refunds_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpendResult:
    success: bool
    new_balance: int


@dataclass(frozen=True)
class TokenInfo:
    balance: int
    last_bonus_date: date | None
    server_date: date
    can_claim_bonus: bool


class TokenService:
    def __init__(self, db: Session, cache: TTLCache, ledger: TokenLedger | None = None):
        self.db = db
        self.ledger = ledger or TokenLedger(db, cache)

    def get_balance(self, user_id: str) -> int:
        row = self.ledger.get_token_balance(user_id)
        return row.balance if row else 0

    def get_token_info(self, user_id: str) -> TokenInfo:
        # Обычное чтение идёт через кэш; строку создаём только если её ещё нет
        row = self.ledger.get_token_balance(user_id)
        if row is None:
            row = self.ledger.get_or_create_token_balance(user_id)
        server_date = self.ledger.current_date()
        return TokenInfo(
            balance=row.balance,
            last_bonus_date=row.last_bonus_date,
            server_date=server_date,
            can_claim_bonus=row.last_bonus_date != server_date,
        )

    def spend(self, user_id: str, amount: int, description: str = "Token spent") -> SpendResult:
        """
        Списание: быстрый отказ по кэшированному балансу, затем атомарное
        списание с условием balance >= amount (второй одновременный запрос не уведёт баланс в минус).
        """
        if amount <= 0:
            raise ValueError("spend amount must be positive")
        row = self.ledger.get_token_balance(user_id)
        if row is None:
            return SpendResult(success=False, new_balance=0)
        if row.balance < amount:
            balance_rejected_total.inc()
            logger.info(
                "token_spend_rejected",
                extra={"user_id": user_id, "amount": amount, "balance": row.balance},
            )
            return SpendResult(success=False, new_balance=row.balance)

        new_balance = self.ledger.spend_atomic(user_id, amount, description)
        if new_balance is None:
            # Кэш был устаревшим или параллельное списание успело раньше
            balance_rejected_total.inc()
            fresh = self.ledger.get_token_balance(user_id)
            return SpendResult(success=False, new_balance=fresh.balance if fresh else 0)
        return SpendResult(success=True, new_balance=new_balance)

    def add_tokens(
        self,
        user_id: str,
        amount: int,
        tx_type: str = "purchase",
        description: str = "Tokens added",
        commit: bool = True,
    ) -> int:
        """Unconditional credit; creates the token row first if it is missing."""
        self.ledger.get_or_create_token_balance(user_id, commit=commit)
        return self.ledger.apply_delta(user_id, amount, tx_type, description, commit=commit)

    def refund(self, user_id: str, amount: int, description: str, reason: str = "generation") -> int | None:
        if amount <= 0:
            return None
        new_balance = self.add_tokens(user_id, amount, "refund", description)
        token_refunds_total.labels(reason=reason).inc()
        logger.info(
            "tokens_refunded",
            extra={"user_id": user_id, "amount": amount, "description": description, "new_balance": new_balance},
        )
        return new_balance
