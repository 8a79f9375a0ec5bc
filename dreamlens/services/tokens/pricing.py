"""
Стоимость генерации в токенах.
Качество: 1K=1, 2K=2, 4K=3 (принимаются и enum-имена STD/HD/UHD).
Пакет из нескольких изображений дешевле: множители ниже, итог округляется вверх.
"""
import math

TOKEN_COSTS: dict[str, int] = {
    "1K": 1,
    "2K": 2,
    "4K": 3,
    "STD": 1,
    "HD": 2,
    "UHD": 3,
}
DEFAULT_TOKEN_COST = 1

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 5
BATCH_MULTIPLIERS: dict[int, float] = {
    1: 1.0,
    2: 1.9,
    3: 2.7,
    4: 3.4,
    5: 4.0,
}


def get_token_cost(quality: str | None) -> int:
    return TOKEN_COSTS.get((quality or "").strip().upper(), DEFAULT_TOKEN_COST)


def clamp_batch_size(image_count: int | None) -> int:
    if not image_count:
        return MIN_BATCH_SIZE
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, int(image_count)))


def get_batch_token_cost(quality: str | None, image_count: int | None) -> int:
    count = clamp_batch_size(image_count)
    # round() guards against float noise like 2 * 2.7 = 5.4000000000000004
    return math.ceil(round(get_token_cost(quality) * BATCH_MULTIPLIERS[count], 6))


def get_batch_discount(image_count: int | None) -> int:
    """Discount percent relative to buying images one by one: 0, 5, 10, 15, 20."""
    count = clamp_batch_size(image_count)
    return round((1 - BATCH_MULTIPLIERS[count] / count) * 100)


def get_partial_refund(cost: int, failed: int, total: int) -> int:
    """floor(cost * failed / total); nothing to refund for an empty batch."""
    if total <= 0 or failed <= 0:
        return 0
    return (cost * min(failed, total)) // total


def get_pricing_table() -> dict:
    """Цены для мастера генерации: стоимость за качество и пакеты 1..5 со скидкой."""
    qualities = ("1K", "2K", "4K")
    return {
        "qualities": {q: get_token_cost(q) for q in qualities},
        "batches": [
            {
                "imageCount": n,
                "discount": get_batch_discount(n),
                "costs": {q: get_batch_token_cost(q, n) for q in qualities},
            }
            for n in range(MIN_BATCH_SIZE, MAX_BATCH_SIZE + 1)
        ],
    }
