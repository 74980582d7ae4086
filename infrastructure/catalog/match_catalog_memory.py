from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from domain.models import Match, MatchStatus, utcnow
from domain.repositories import MatchFeed


def default_matches(now: Optional[datetime] = None) -> List[Match]:
    """A small set of upcoming fixtures used when no other catalog is wired in."""

    now = now or utcnow()
    fixtures = [
        ("1", "Premier League", "Manchester United", "Liverpool", timedelta(hours=2), "2.50", "3.10", "2.80"),
        ("2", "Premier League", "Arsenal", "Chelsea", timedelta(hours=5), "1.95", "3.30", "3.90"),
        ("3", "La Liga", "Real Madrid", "Barcelona", timedelta(days=1), "2.20", "3.50", "3.00"),
        ("4", "Bundesliga", "Bayern Munich", "Borussia Dortmund", timedelta(days=1, hours=5), "1.75", "3.80", "4.50"),
        ("5", "Serie A", "Inter", "Milan", timedelta(days=2), "2.10", "3.20", "3.50"),
        ("6", "Ligue 1", "Paris Saint-Germain", "Marseille", timedelta(days=2, hours=4), "1.85", "3.40", "4.20"),
    ]
    return [
        Match(
            id=match_id,
            league=league,
            home_team=home,
            away_team=away,
            kickoff=now + offset,
            home_odds=Decimal(home_odds),
            draw_odds=Decimal(draw_odds),
            away_odds=Decimal(away_odds),
        )
        for match_id, league, home, away, offset, home_odds, draw_odds, away_odds in fixtures
    ]


class InMemoryMatchCatalog(MatchFeed):
    """
    Process-local fixture catalog.

    The engine only reads from it. `update_odds` and `record_result` are the
    feed side: they replace a match wholesale, so readers never see a
    half-updated fixture.
    """

    def __init__(self, matches: Optional[Iterable[Match]] = None) -> None:
        self._lock = threading.Lock()
        self._matches: Dict[str, Match] = {
            m.id: m for m in (default_matches() if matches is None else matches)
        }

    def get_match(self, match_id: str) -> Optional[Match]:
        with self._lock:
            return self._matches.get(str(match_id))

    def list_matches(self) -> List[Match]:
        with self._lock:
            return list(self._matches.values())

    def update_odds(self, match_id: str, home: Decimal, draw: Decimal, away: Decimal) -> Match:
        with self._lock:
            match = replace(self._matches[match_id], home_odds=home, draw_odds=draw, away_odds=away)
            self._matches[match_id] = match
            return match

    def set_status(self, match_id: str, status: MatchStatus) -> Match:
        with self._lock:
            match = replace(self._matches[match_id], status=status)
            self._matches[match_id] = match
            return match

    def record_result(self, match_id: str, home_score: int, away_score: int) -> Match:
        with self._lock:
            match = replace(
                self._matches[match_id],
                status=MatchStatus.FINISHED,
                home_score=home_score,
                away_score=away_score,
            )
            self._matches[match_id] = match
            return match
