"""
Engine and session factory. One sync Session per request (get_db); services own
commit/rollback, get_db only rolls back what an exception left open.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from dreamlens.core.config import settings


def build_engine(url: str | None = None):
    return create_engine(
        url or settings.database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=settings.db_pool_recycle_seconds,
        connect_args={
            "connect_timeout": settings.db_connect_timeout,
            "application_name": "dreamlens-api",
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        },
    )


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
