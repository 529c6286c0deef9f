import random
from decimal import Decimal

from aviator_crash.engine import CrashPointGenerator, GameConfig


class ZeroRandom(random.Random):
    def random(self):
        return 0.0


def test_draw_always_above_one():
    generator = CrashPointGenerator(random.Random(1234))
    for _ in range(5000):
        assert generator.draw() > Decimal("1.00")


def test_draw_stays_inside_outer_bands():
    generator = CrashPointGenerator(random.Random(99))
    points = [generator.draw() for _ in range(5000)]
    assert min(points) >= GameConfig.MIN_CRASH
    assert max(points) < Decimal("15.00")


def test_draw_is_deterministic_for_fixed_source():
    first = CrashPointGenerator(random.Random(42))
    second = CrashPointGenerator(random.Random(42))
    assert [first.draw() for _ in range(100)] == [second.draw() for _ in range(100)]


def test_draw_has_two_decimal_places():
    generator = CrashPointGenerator(random.Random(7))
    for _ in range(200):
        assert generator.draw().as_tuple().exponent == -2


def test_floor_draw_is_clamped():
    assert CrashPointGenerator(ZeroRandom()).draw() == GameConfig.MIN_CRASH


def test_band_weights():
    generator = CrashPointGenerator(random.Random(2024))
    n = 20000
    points = [generator.draw() for _ in range(n)]

    low = sum(1 for p in points if p < 3) / n
    mid = sum(1 for p in points if 3 <= p < 7) / n
    high = sum(1 for p in points if p >= 7) / n

    assert abs(low - 0.50) < 0.02
    assert abs(mid - 0.30) < 0.02
    assert abs(high - 0.20) < 0.02
