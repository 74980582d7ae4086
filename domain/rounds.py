from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional, Tuple, Union


ROUND_SECONDS = 30
REVEAL_SECONDS = 3

ODD = "odd"
EVEN = "even"
PARITY_CHOICES = (ODD, EVEN)
PARITY_MULTIPLIER = Decimal("2.0")

MIN_MULTIPLIER = Decimal("1.00")
MAX_MULTIPLIER = Decimal("5.00")
RISING_DURATION_SECONDS = 70
CURVE_TICK_SECONDS = 0.05
FAILURE_TICK_SECONDS = 1.0
FAILURE_CHANCE_PER_SECOND = 0.05

ROULETTE_MIN_STAKE = Decimal("1000")
MISS = "miss"

Instant = Union[datetime, float, int, None]


def epoch_seconds(now: Instant = None) -> int:
    """Whole seconds since the Unix epoch for `now` (defaults to the wall clock)."""

    if now is None:
        now = time.time()
    if isinstance(now, datetime):
        now = now.timestamp()
    return math.floor(now)


def current_round_index(now: Instant = None) -> int:
    return epoch_seconds(now) // ROUND_SECONDS


def time_until_next_round(now: Instant = None) -> int:
    """Seconds left in the current round, always within [1, ROUND_SECONDS]."""

    left = ROUND_SECONDS - epoch_seconds(now) % ROUND_SECONDS
    return max(1, min(ROUND_SECONDS, left))


def parity_outcome_for(round_index: int) -> str:
    """
    The parity result of a round.

    The round index is the only seed, so every caller (including one that
    asks about a future round, or a settlement run much later) gets the
    same label.
    """

    draw = random.Random(round_index).random()
    return ODD if draw < 0.5 else EVEN


def multiplier_at(elapsed: float) -> float:
    """
    Rising-multiplier curve value `elapsed` seconds after the game started.

    Logarithmic ease from MIN_MULTIPLIER at 0 s to MAX_MULTIPLIER at
    RISING_DURATION_SECONDS, flat afterwards.
    """

    progress = min(max(elapsed, 0.0) / RISING_DURATION_SECONDS, 1.0)
    low = float(MIN_MULTIPLIER)
    high = float(MAX_MULTIPLIER)
    return low + (high - low) * math.log10(1 + 9 * progress)


def quantize_multiplier(value: float) -> Decimal:
    """Two-place multiplier, truncated so a payout never exceeds the curve."""

    quantized = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    return min(max(quantized, MIN_MULTIPLIER), MAX_MULTIPLIER)


def curve_point(elapsed: float) -> Tuple[float, float]:
    """A (progress, multiplier) sample of the curve for display."""

    progress = min(max(elapsed, 0.0) / RISING_DURATION_SECONDS, 1.0)
    return progress, multiplier_at(elapsed)


@dataclass(frozen=True)
class RouletteSlot:
    label: str
    multiplier: Decimal

    @property
    def is_win(self) -> bool:
        return self.multiplier > 0


ROULETTE_PAYTABLE: List[RouletteSlot] = [
    RouletteSlot(MISS, Decimal("0")),
    RouletteSlot("x2", Decimal("2")),
    RouletteSlot(MISS, Decimal("0")),
    RouletteSlot("x3", Decimal("3")),
    RouletteSlot(MISS, Decimal("0")),
    RouletteSlot("x4", Decimal("4")),
    RouletteSlot(MISS, Decimal("0")),
    RouletteSlot("x5", Decimal("5")),
]


def spin_roulette_slot(rng: Optional[random.Random] = None) -> RouletteSlot:
    """One independent uniform pick over the paytable."""

    return (rng or random).choice(ROULETTE_PAYTABLE)
