from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, text

from dreamlens.db.base import Base


TRANSACTION_TYPES = ("purchase", "bonus", "generation", "refund")


class TokenTransaction(Base):
    """Append-only журнал: сумма amount по пользователю равна его балансу."""

    __tablename__ = "token_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()), server_default=text("gen_random_uuid()::text"))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # со знаком: списание < 0
    type = Column(String(50), nullable=False, index=True)  # purchase / bonus / generation / refund
    description = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("NOW()"),
        index=True,
    )
