import hmac
import logging

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from dreamlens.api.deps import get_db
from dreamlens.core.config import settings
from dreamlens.core.errors import Forbidden
from dreamlens.services.users.service import UserService

logger = logging.getLogger(__name__)


def require_admin_secret(x_admin_secret: str | None = Header(None)) -> None:
    expected = settings.admin_secret
    if not expected or not x_admin_secret or not hmac.compare_digest(expected, x_admin_secret):
        logger.warning("admin_secret_rejected")
        raise Forbidden()


router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_secret)])


@router.post("/cleanup-users")
def cleanup_users(dry_run: bool = Query(False, alias="dryRun"), db: Session = Depends(get_db)) -> dict:
    """Удаление анонимных (device) пользователей вместе с их данными."""
    count = UserService(db).cleanup_anonymous_users(dry_run=dry_run)
    logger.info("admin_cleanup_users", extra={"count": count, "dry_run": dry_run})
    return {"success": True, "data": {"dryRun": dry_run, "deleted": 0 if dry_run else count, "matched": count}}
