"""
TokenLedger: атомарные операции с балансом токенов.

Каждая мутация выполняется одним SQL-запросом (цепочка CTE), изменение баланса и запись в
token_transactions либо применяются вместе, либо не применяются вовсе.
Параллельные вызовы для одного пользователя сериализуются блокировкой строки
user_tokens, которую берёт UPDATE.

Кэш баланса инвалидируется после каждой мутации.
"""
import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from dreamlens.core.config import settings
from dreamlens.models.user_tokens import UserTokens
from dreamlens.services.cache import TTLCache, token_balance_key
from dreamlens.services.retry import retry_call
from dreamlens.utils.metrics import token_operations_total

logger = logging.getLogger(__name__)

DAILY_BONUS_DESCRIPTION = "Daily wheel bonus"


class TokenRecordNotFound(Exception):
    """User has no user_tokens row; create it with get_or_create_token_balance first."""

    def __init__(self, user_id: str):
        super().__init__(f"User tokens not found: {user_id}")
        self.user_id = user_id


@dataclass(frozen=True)
class TokenBalance:
    user_id: str
    balance: int
    last_bonus_date: date | None


_APPLY_DELTA_SQL = text(
    """
    WITH updated_balance AS (
        UPDATE user_tokens
        SET balance = balance + :amount, updated_at = NOW()
        WHERE user_id = :user_id
        RETURNING balance AS new_balance
    ), inserted_transaction AS (
        INSERT INTO token_transactions (user_id, amount, type, description)
        SELECT :user_id, :amount, :tx_type, :description
        WHERE EXISTS (SELECT 1 FROM updated_balance)
        RETURNING id
    )
    SELECT new_balance FROM updated_balance
    """
)

# Same chain with the balance check folded into the UPDATE: no check-then-act window.
_SPEND_SQL = text(
    """
    WITH updated_balance AS (
        UPDATE user_tokens
        SET balance = balance - :cost, updated_at = NOW()
        WHERE user_id = :user_id AND balance >= :cost
        RETURNING balance AS new_balance
    ), inserted_transaction AS (
        INSERT INTO token_transactions (user_id, amount, type, description)
        SELECT :user_id, -:cost, 'generation', :description
        WHERE EXISTS (SELECT 1 FROM updated_balance)
        RETURNING id
    )
    SELECT new_balance FROM updated_balance
    """
)

_DAILY_BONUS_SQL = text(
    """
    WITH updated_balance AS (
        UPDATE user_tokens
        SET balance = balance + :amount,
            last_bonus_date = CURRENT_DATE,
            updated_at = NOW()
        WHERE user_id = :user_id
          AND (last_bonus_date IS NULL OR last_bonus_date <> CURRENT_DATE)
        RETURNING balance AS new_balance
    ), inserted_transaction AS (
        INSERT INTO token_transactions (user_id, amount, type, description)
        SELECT :user_id, :amount, 'bonus', :description
        WHERE EXISTS (SELECT 1 FROM updated_balance)
        RETURNING id
    )
    SELECT new_balance FROM updated_balance
    """
)

_WELCOME_BONUS_SQL = text(
    """
    WITH bonus_check AS (
        SELECT NOT EXISTS (
            SELECT 1 FROM token_transactions
            WHERE user_id = :user_id AND description = :description
        ) AS should_award
    ), bonus_awarded AS (
        UPDATE user_tokens
        SET balance = balance + :amount, updated_at = NOW()
        WHERE user_id = :user_id AND (SELECT should_award FROM bonus_check)
        RETURNING true AS awarded
    ), transaction_inserted AS (
        INSERT INTO token_transactions (user_id, amount, type, description)
        SELECT :user_id, :amount, 'bonus', :description
        WHERE EXISTS (SELECT 1 FROM bonus_awarded)
        RETURNING id
    )
    SELECT COALESCE((SELECT awarded FROM bonus_awarded), false) AS awarded
    """
)

_GET_OR_CREATE_SQL = text(
    """
    INSERT INTO user_tokens (user_id, balance)
    VALUES (:user_id, 0)
    ON CONFLICT (user_id) DO UPDATE SET updated_at = NOW()
    RETURNING user_id, balance, last_bonus_date
    """
)


class TokenLedger:
    def __init__(self, db: Session, cache: TTLCache, cache_ttl: float | None = None):
        self.db = db
        self.cache = cache
        self.cache_ttl = settings.token_balance_cache_ttl if cache_ttl is None else cache_ttl

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_balance(self, user_id: str) -> TokenBalance | None:
        row = self.db.execute(
            text("SELECT user_id, balance, last_bonus_date FROM user_tokens WHERE user_id = :user_id"),
            {"user_id": user_id},
        ).mappings().first()
        if row is None:
            return None
        return TokenBalance(user_id=row["user_id"], balance=row["balance"], last_bonus_date=row["last_bonus_date"])

    def get_token_balance(self, user_id: str) -> TokenBalance | None:
        """Read-through cache; a missing row is cached as None for the same TTL."""
        return self.cache.get_or_set(
            token_balance_key(user_id),
            lambda: retry_call(
                lambda: self._load_balance(user_id),
                max_attempts=settings.retry_max_attempts,
                initial_delay=settings.retry_initial_delay,
                max_delay=settings.retry_max_delay,
                retryable=lambda e: isinstance(e, OperationalError),
                on_retry=lambda attempt, e: self.db.rollback(),
            ),
            ttl=self.cache_ttl,
        )

    def has_transaction(self, user_id: str, description: str) -> bool:
        found = self.db.execute(
            text(
                "SELECT 1 FROM token_transactions "
                "WHERE user_id = :user_id AND description = :description LIMIT 1"
            ),
            {"user_id": user_id, "description": description},
        ).first()
        return found is not None

    def get_transaction_sum(self, user_id: str) -> int:
        total = self.db.execute(
            text("SELECT COALESCE(SUM(amount), 0) FROM token_transactions WHERE user_id = :user_id"),
            {"user_id": user_id},
        ).scalar()
        return int(total or 0)

    def current_date(self) -> date:
        """Database CURRENT_DATE: bonus days follow the server clock, not the client."""
        return self.db.execute(text("SELECT CURRENT_DATE")).scalar()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def invalidate(self, user_id: str) -> None:
        self.cache.delete(token_balance_key(user_id))

    def _finish(self, user_id: str, commit: bool) -> None:
        if commit:
            self.db.commit()
        self.invalidate(user_id)

    def get_or_create_token_balance(self, user_id: str, commit: bool = True) -> TokenBalance:
        row = self.db.execute(_GET_OR_CREATE_SQL, {"user_id": user_id}).mappings().one()
        self._finish(user_id, commit)
        return TokenBalance(user_id=row["user_id"], balance=row["balance"], last_bonus_date=row["last_bonus_date"])

    def apply_delta(self, user_id: str, amount: int, tx_type: str, description: str, commit: bool = True) -> int:
        """
        balance += amount and one token_transactions row, in one statement.
        Does not check balance >= 0: spends go through spend_atomic.
        """
        new_balance = self.db.execute(
            _APPLY_DELTA_SQL,
            {"user_id": user_id, "amount": amount, "tx_type": tx_type, "description": description},
        ).scalar()
        self._finish(user_id, commit)
        if new_balance is None:
            raise TokenRecordNotFound(user_id)
        token_operations_total.labels(type=tx_type).inc()
        logger.info(
            "token_delta_applied",
            extra={"user_id": user_id, "amount": amount, "tx_type": tx_type, "new_balance": new_balance},
        )
        return new_balance

    def spend_atomic(self, user_id: str, cost: int, description: str, commit: bool = True) -> int | None:
        """Debit cost only if balance >= cost. Returns new balance or None when rejected."""
        new_balance = self.db.execute(
            _SPEND_SQL,
            {"user_id": user_id, "cost": cost, "description": description},
        ).scalar()
        self._finish(user_id, commit)
        if new_balance is None:
            return None
        token_operations_total.labels(type="generation").inc()
        logger.info(
            "token_spent",
            extra={"user_id": user_id, "amount": -cost, "new_balance": new_balance, "description": description},
        )
        return new_balance

    def claim_daily_bonus_atomic(self, user_id: str, amount: int, commit: bool = True) -> int | None:
        """Grant once per database day. Returns new balance, or None if already claimed today."""
        new_balance = self.db.execute(
            _DAILY_BONUS_SQL,
            {"user_id": user_id, "amount": amount, "description": DAILY_BONUS_DESCRIPTION},
        ).scalar()
        self._finish(user_id, commit)
        if new_balance is None:
            return None
        token_operations_total.labels(type="bonus").inc()
        return new_balance

    def ensure_welcome_bonus_atomic(self, user_id: str, amount: int, description: str, commit: bool = True) -> bool:
        """
        Grant the one-time bonus identified by description.
        The row lock is taken first so the NOT EXISTS check in the next statement
        sees any grant committed by a concurrent request.
        """
        locked = (
            self.db.query(UserTokens.id)
            .filter(UserTokens.user_id == user_id)
            .with_for_update()
            .one_or_none()
        )
        if locked is None:
            self._finish(user_id, commit)
            raise TokenRecordNotFound(user_id)
        awarded = bool(
            self.db.execute(
                _WELCOME_BONUS_SQL,
                {"user_id": user_id, "amount": amount, "description": description},
            ).scalar()
        )
        self._finish(user_id, commit)
        if awarded:
            token_operations_total.labels(type="bonus").inc()
        return awarded
