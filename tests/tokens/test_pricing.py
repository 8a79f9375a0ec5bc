import pytest

from dreamlens.services.tokens.pricing import (
    clamp_batch_size,
    get_batch_discount,
    get_batch_token_cost,
    get_partial_refund,
    get_token_cost,
)


@pytest.mark.parametrize("quality, cost", [("1K", 1), ("2K", 2), ("4K", 3), ("hd", 2), ("UHD", 3), ("8K", 1), (None, 1)])
def test_token_cost(quality, cost):
    assert get_token_cost(quality) == cost


@pytest.mark.parametrize(
    "quality, count, cost",
    [
        ("1K", 1, 1),
        ("1K", 2, 2),
        ("1K", 5, 4),
        ("2K", 3, 6),
        ("4K", 2, 6),
        ("4K", 4, 11),
        ("4K", 5, 12),
    ],
)
def test_batch_cost_rounds_up(quality, count, cost):
    assert get_batch_token_cost(quality, count) == cost


def test_batch_size_is_clamped():
    assert clamp_batch_size(0) == 1
    assert clamp_batch_size(None) == 1
    assert clamp_batch_size(9) == 5
    assert get_batch_token_cost("1K", 9) == get_batch_token_cost("1K", 5)


def test_batch_discount():
    assert [get_batch_discount(n) for n in range(1, 6)] == [0, 5, 10, 15, 20]


class TestPartialRefund:
    def test_floor_of_failed_share(self):
        assert get_partial_refund(6, 1, 3) == 2
        assert get_partial_refund(5, 2, 3) == 3
        assert get_partial_refund(4, 4, 4) == 4

    def test_nothing_to_refund(self):
        assert get_partial_refund(4, 0, 2) == 0
        assert get_partial_refund(4, 1, 0) == 0
