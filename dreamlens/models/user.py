from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, String, Text, text

from dreamlens.db.base import Base


IDENTITY_SOURCES = ("telegram", "clerk", "device")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "clerk_id IS NOT NULL OR telegram_id IS NOT NULL OR device_id IS NOT NULL",
            name="ck_users_identity_present",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()), server_default=text("gen_random_uuid()::text"))
    # Приоритет идентичности: telegram > clerk > device
    telegram_id = Column(String(255), unique=True, nullable=True, index=True)
    clerk_id = Column(String(255), unique=True, nullable=True, index=True)  # legacy, новые не создаются
    device_id = Column(String(255), unique=True, nullable=True, index=True)  # анонимный пользователь
    email = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    username = Column(String(255), nullable=True)
    photo_url = Column(Text, nullable=True)
    language_code = Column(String(10), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("NOW()"),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        server_default=text("NOW()"),
    )

    @property
    def identity_source(self) -> str:
        if self.telegram_id:
            return "telegram"
        if self.clerk_id:
            return "clerk"
        return "device"

    @property
    def is_anonymous(self) -> bool:
        return self.identity_source == "device"
