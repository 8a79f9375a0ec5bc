import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from dreamlens.models.user import User
from dreamlens.services.auth.identity import PROFILE_FIELDS, Identity

logger = logging.getLogger(__name__)

_ID_COLUMNS = {"telegram": "telegram_id", "clerk": "clerk_id", "device": "device_id"}

_COUNT_ANONYMOUS_SQL = text(
    "SELECT COUNT(*) FROM users "
    "WHERE clerk_id IS NULL AND telegram_id IS NULL AND device_id IS NOT NULL"
)
_DELETE_ANONYMOUS_SQL = text(
    "DELETE FROM users "
    "WHERE clerk_id IS NULL AND telegram_id IS NULL AND device_id IS NOT NULL"
)


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def get_by_identity(self, source: str, external_id: str) -> User | None:
        column = getattr(User, _ID_COLUMNS[source])
        return self.db.query(User).filter(column == external_id).one_or_none()

    def get_by_id(self, user_id: str) -> User | None:
        return self.db.query(User).filter(User.id == user_id).one_or_none()

    def get_or_create(self, identity: Identity) -> User:
        """
        INSERT ... ON CONFLICT DO NOTHING, затем SELECT: два параллельных первых
        запроса одного пользователя получают одну и ту же строку.
        Профиль Telegram обновляется только непустыми значениями.
        """
        if identity.source not in _ID_COLUMNS:
            raise ValueError(f"unknown identity source: {identity.source}")
        column = _ID_COLUMNS[identity.source]
        profile = {k: identity.profile.get(k) for k in PROFILE_FIELDS}

        self.db.execute(
            text(
                f"INSERT INTO users ({column}, first_name, last_name, username, photo_url, language_code) "
                "VALUES (:external_id, :first_name, :last_name, :username, :photo_url, :language_code) "
                f"ON CONFLICT ({column}) DO NOTHING"
            ),
            {"external_id": identity.external_id, **profile},
        )
        if any(v is not None for v in profile.values()):
            self.db.execute(
                text(
                    "UPDATE users SET "
                    "first_name = COALESCE(:first_name, first_name), "
                    "last_name = COALESCE(:last_name, last_name), "
                    "username = COALESCE(:username, username), "
                    "photo_url = COALESCE(:photo_url, photo_url), "
                    "language_code = COALESCE(:language_code, language_code), "
                    "updated_at = NOW() "
                    f"WHERE {column} = :external_id"
                ),
                {"external_id": identity.external_id, **profile},
            )
        self.db.commit()

        user = self.get_by_identity(identity.source, identity.external_id)
        if user is None:
            raise LookupError(f"user not found after upsert: {identity.source}")
        return user

    def cleanup_anonymous_users(self, dry_run: bool = False) -> int:
        """Delete device-only users; tokens, generations and logs go with them (ON DELETE CASCADE)."""
        if dry_run:
            return int(self.db.execute(_COUNT_ANONYMOUS_SQL).scalar() or 0)
        deleted = self.db.execute(_DELETE_ANONYMOUS_SQL).rowcount
        self.db.commit()
        logger.info("anonymous_users_deleted", extra={"count": deleted})
        return deleted
