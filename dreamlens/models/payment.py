"""
Payment model: платежи YooKassa.
external_payment_id уникален: по нему webhook идемпотентно переводит платёж в succeeded.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, text

from dreamlens.db.base import Base


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()), server_default=text("gen_random_uuid()::text"))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    external_payment_id = Column(String(255), unique=True, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="RUB")
    status = Column(String(50), nullable=False, index=True)  # pending / waiting_for_capture / succeeded / canceled
    token_package = Column(String(50), nullable=True)  # small / medium / large
    tokens_amount = Column(Integer, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("NOW()"),
    )
