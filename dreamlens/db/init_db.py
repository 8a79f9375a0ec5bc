"""
Create all tables (local/dev bootstrap; production schema is managed by migrations).
Usage: python -m dreamlens.db.init_db
"""
import logging

from sqlalchemy import text

from dreamlens.core.logging import configure_logging
from dreamlens.db.base import Base
from dreamlens.db.session import engine
from dreamlens.models import generation, payment, subscription, token_transaction, usage_log, user, user_tokens  # noqa: F401

logger = logging.getLogger(__name__)


def init_db() -> None:
    with engine.begin() as conn:
        # gen_random_uuid() is built in since PostgreSQL 13; pgcrypto covers older servers
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS pgcrypto"))
    Base.metadata.create_all(bind=engine)
    logger.info("database_initialized", extra={"count": len(Base.metadata.tables)})


if __name__ == "__main__":
    configure_logging()
    init_db()
