from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, text

from dreamlens.db.base import Base


class UsageLog(Base):
    """Журнал действий пользователя; по action='generation' считается дневная квота."""

    __tablename__ = "usage_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()), server_default=text("gen_random_uuid()::text"))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True, index=True)  # IPv6 до 45 символов
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("NOW()"),
        index=True,
    )
