"""
Concurrency checks for the ledger statements on a real PostgreSQL.
Run with TEST_DATABASE_URL=postgresql+psycopg2://... (the schema is created and dropped).
"""
import os
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from dreamlens.db.base import Base
from dreamlens.models import generation, payment, subscription, token_transaction, usage_log, user, user_tokens  # noqa: F401
from dreamlens.services.cache import TTLCache
from dreamlens.services.tokens.ledger import TokenLedger

DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="TEST_DATABASE_URL not set")

WORKERS = 10


@pytest.fixture(scope="module")
def session_factory():
    engine = create_engine(DATABASE_URL, pool_size=WORKERS + 2)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def user_id(session_factory):
    db = session_factory()
    try:
        uid = db.execute(
            text("INSERT INTO users (device_id) VALUES ('device_' || md5(random()::text)) RETURNING id")
        ).scalar()
        db.commit()
        TokenLedger(db, TTLCache()).get_or_create_token_balance(uid)
        return uid
    finally:
        db.close()


def _run_concurrently(session_factory, fn, times=WORKERS):
    def worker(_):
        db = session_factory()
        try:
            return fn(TokenLedger(db, TTLCache()))
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=times) as pool:
        return list(pool.map(worker, range(times)))


def _state(session_factory, uid):
    db = session_factory()
    try:
        balance = db.execute(text("SELECT balance FROM user_tokens WHERE user_id = :u"), {"u": uid}).scalar()
        total = db.execute(
            text("SELECT COALESCE(SUM(amount), 0) FROM token_transactions WHERE user_id = :u"), {"u": uid}
        ).scalar()
        count = db.execute(text("SELECT COUNT(*) FROM token_transactions WHERE user_id = :u"), {"u": uid}).scalar()
        return balance, total, count
    finally:
        db.close()


def test_concurrent_deltas_are_all_applied(session_factory, user_id):
    _run_concurrently(session_factory, lambda ledger: ledger.apply_delta(user_id, 1, "purchase", "test"))
    balance, total, count = _state(session_factory, user_id)
    assert balance == WORKERS
    assert total == balance
    assert count == WORKERS


def test_daily_bonus_granted_once(session_factory, user_id):
    results = _run_concurrently(session_factory, lambda ledger: ledger.claim_daily_bonus_atomic(user_id, 3))
    assert sum(1 for r in results if r is not None) == 1
    balance, total, count = _state(session_factory, user_id)
    assert balance == 3 == total
    assert count == 1


def test_welcome_bonus_granted_once(session_factory, user_id):
    results = _run_concurrently(
        session_factory, lambda ledger: ledger.ensure_welcome_bonus_atomic(user_id, 5, "Welcome bonus")
    )
    assert results.count(True) == 1
    balance, total, count = _state(session_factory, user_id)
    assert balance == 5 == total
    assert count == 1


def test_concurrent_spends_never_overdraw(session_factory, user_id):
    db = session_factory()
    try:
        TokenLedger(db, TTLCache()).apply_delta(user_id, 5, "purchase", "seed")
    finally:
        db.close()

    results = _run_concurrently(session_factory, lambda ledger: ledger.spend_atomic(user_id, 2, "Generation: 2K quality"))
    assert sum(1 for r in results if r is not None) == 2
    balance, total, _ = _state(session_factory, user_id)
    assert balance == 1
    assert total == balance
