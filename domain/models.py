from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional


INITIAL_BALANCE = Decimal("100000.00")
CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce `value` to a two-place `Decimal`."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GameKind(str, Enum):
    PARITY = "parity"
    RISING_MULTIPLIER = "rising_multiplier"
    ROULETTE = "roulette"
    FIXED_ODDS = "fixed_odds"


class WagerStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"


class MatchStatus(str, Enum):
    UPCOMING = "upcoming"
    LIVE = "live"
    FINISHED = "finished"


class MatchSide(str, Enum):
    HOME = "home"
    DRAW = "draw"
    AWAY = "away"


@dataclass
class Account:
    """
    A player's balance cell.

    The balance is only ever changed through the wager engine, which
    writes it back with a compare-and-set against the stored value.
    """

    id: str
    display_name: str
    balance: Decimal = INITIAL_BALANCE
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Wager:
    """
    A single bet record.

    Everything except `status` and `result` is fixed when the wager is
    written. `payout` is the amount credited if the wager is won, so it
    records the odds that were locked in at bet time.
    """

    account_id: str
    game: GameKind
    choice: str
    stake: Decimal
    multiplier: Decimal
    payout: Decimal
    status: WagerStatus = WagerStatus.PENDING
    result: str = ""
    placed_at: datetime = field(default_factory=utcnow)
    round_index: Optional[int] = None
    match_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.status is WagerStatus.PENDING


@dataclass
class Match:
    """A fixture from the read-only sports catalog."""

    id: str
    league: str
    home_team: str
    away_team: str
    kickoff: datetime
    home_odds: Decimal
    draw_odds: Decimal
    away_odds: Decimal
    status: MatchStatus = MatchStatus.UPCOMING
    home_score: Optional[int] = None
    away_score: Optional[int] = None

    @property
    def title(self) -> str:
        return f"{self.home_team} vs {self.away_team}"

    @property
    def is_biddable(self) -> bool:
        return self.status is MatchStatus.UPCOMING

    def odds_for(self, side: MatchSide) -> Decimal:
        return {
            MatchSide.HOME: self.home_odds,
            MatchSide.DRAW: self.draw_odds,
            MatchSide.AWAY: self.away_odds,
        }[side]

    def winning_side(self) -> Optional[MatchSide]:
        """Return the side that won, or None while the match is undecided."""

        if self.status is not MatchStatus.FINISHED:
            return None
        if self.home_score is None or self.away_score is None:
            return None
        if self.home_score > self.away_score:
            return MatchSide.HOME
        if self.home_score < self.away_score:
            return MatchSide.AWAY
        return MatchSide.DRAW
