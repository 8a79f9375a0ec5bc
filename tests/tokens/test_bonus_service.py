"""BonusService: daily wheel amounts and welcome-bonus witness logic."""
import unittest
from unittest.mock import MagicMock

from dreamlens.services.bonus.service import (
    ANONYMOUS_WELCOME_DESCRIPTION,
    DAILY_BONUS_MAX,
    DAILY_BONUS_MIN,
    WELCOME_BONUS_DESCRIPTION,
    BonusClaim,
    BonusService,
    welcome_bonus_for,
)


class TestDailyBonus(unittest.TestCase):
    def setUp(self):
        self.ledger = MagicMock()
        self.rng_calls = []

        def rng(low, high):
            self.rng_calls.append((low, high))
            return 7

        self.service = BonusService(MagicMock(), cache=None, ledger=self.ledger, rng=rng)

    def test_claim(self):
        self.ledger.claim_daily_bonus_atomic.return_value = 12
        self.assertEqual(self.service.claim_daily_bonus("u1"), BonusClaim(claimed=True, amount=7, new_balance=12))
        self.ledger.claim_daily_bonus_atomic.assert_called_once_with("u1", 7)
        self.assertEqual(self.rng_calls, [(DAILY_BONUS_MIN, DAILY_BONUS_MAX)])

    def test_already_claimed(self):
        self.ledger.claim_daily_bonus_atomic.return_value = None
        claim = self.service.claim_daily_bonus("u1")
        self.assertFalse(claim.claimed)
        self.assertEqual(claim.amount, 0)


class TestWelcomeBonus(unittest.TestCase):
    def setUp(self):
        self.ledger = MagicMock()
        self.service = BonusService(MagicMock(), cache=None, ledger=self.ledger)

    def test_witness_short_circuits(self):
        self.ledger.has_transaction.return_value = True
        self.assertFalse(self.service.ensure_welcome_bonus("u1", "telegram"))
        self.ledger.get_or_create_token_balance.assert_called_once_with("u1")
        self.ledger.ensure_welcome_bonus_atomic.assert_not_called()

    def test_telegram_user_gets_bonus(self):
        self.ledger.has_transaction.return_value = False
        self.ledger.ensure_welcome_bonus_atomic.return_value = True
        self.assertTrue(self.service.ensure_welcome_bonus("u1", "telegram"))
        self.ledger.ensure_welcome_bonus_atomic.assert_called_once_with("u1", 5, WELCOME_BONUS_DESCRIPTION)

    def test_device_user_gets_zero_pack(self):
        self.ledger.has_transaction.return_value = False
        self.ledger.ensure_welcome_bonus_atomic.return_value = True
        self.service.ensure_welcome_bonus("u1", "device")
        self.ledger.ensure_welcome_bonus_atomic.assert_called_once_with("u1", 0, ANONYMOUS_WELCOME_DESCRIPTION)

    def test_lost_race_returns_false(self):
        self.ledger.has_transaction.return_value = False
        self.ledger.ensure_welcome_bonus_atomic.return_value = False
        self.assertFalse(self.service.ensure_welcome_bonus("u1", "telegram"))


def test_welcome_bonus_by_source():
    assert welcome_bonus_for("telegram") == (5, "Welcome bonus")
    assert welcome_bonus_for("clerk") == (5, "Welcome bonus")
    assert welcome_bonus_for("device") == (0, "Welcome Pack (anonymous)")
