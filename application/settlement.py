from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from domain.models import GameKind, Match, MatchSide, Wager, WagerStatus
from domain.repositories import AccountRepository, LedgerError, WagerRepository
from domain.rounds import current_round_index, parity_outcome_for

from .ledger import apply_delta


logger = logging.getLogger(__name__)


@dataclass
class SettlementReport:
    """What a single settlement pass did."""

    won: List[int] = field(default_factory=list)
    lost: List[int] = field(default_factory=list)
    credited: Decimal = Decimal("0.00")

    @property
    def settled(self) -> int:
        return len(self.won) + len(self.lost)


def _settle_wager(
    wager: Wager,
    outcome: str,
    is_win: bool,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    report: SettlementReport,
) -> None:
    status = WagerStatus.WON if is_win else WagerStatus.LOST

    # The conditional update is the claim: whoever flips the row from
    # Pending is the only one allowed to credit it.
    if not wager_repo.mark_settled(wager.id, status, outcome):
        logger.debug("Wager %s was settled by someone else", wager.id)
        return

    if not is_win:
        report.lost.append(wager.id)
        return

    try:
        _, error = apply_delta(account_repo, wager.account_id, wager.payout)
    except LedgerError:
        error = "ledger failure"
        logger.exception("Crediting wager %s failed", wager.id)

    if error:
        # Put the wager back so a later pass credits it.
        wager_repo.mark_settled(wager.id, WagerStatus.PENDING, "", expected=WagerStatus.WON)
        logger.warning("Wager %s left pending: %s", wager.id, error)
        return

    report.won.append(wager.id)
    report.credited += wager.payout


def settle_parity_wagers(
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    now: Optional[datetime] = None,
) -> SettlementReport:
    """
    Settle every Pending parity wager whose round has elapsed.

    A wager placed in round `r` is decided by the draw of round `r + 1`;
    the round it was placed in is still open when the wager is taken.
    Safe to call redundantly and concurrently.
    """

    report = SettlementReport()
    current_round = current_round_index(now)

    for wager in wager_repo.list_pending_wagers(GameKind.PARITY):
        if wager.round_index is None or wager.round_index >= current_round:
            continue
        outcome = parity_outcome_for(wager.round_index + 1)
        _settle_wager(wager, outcome, wager.choice == outcome, account_repo, wager_repo, report)

    if report.settled:
        logger.info(
            "Settled %d parity wagers (%d won, %s credited)",
            report.settled,
            len(report.won),
            report.credited,
        )
    return report


def settle_fixed_odds_match(
    match: Match,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
) -> SettlementReport:
    """Settle the Pending fixed-odds wagers on a finished match."""

    report = SettlementReport()
    winner: Optional[MatchSide] = match.winning_side()
    if winner is None:
        return report

    for wager in wager_repo.list_pending_wagers(GameKind.FIXED_ODDS):
        if wager.match_id != match.id:
            continue
        _settle_wager(wager, winner.value, wager.choice == winner.value, account_repo, wager_repo, report)

    logger.info("Settled %d wagers on match %s (%s)", report.settled, match.id, winner.value)
    return report


class SettlementSweeper:
    """
    Owns the parity sweep for the whole process.

    `sweep()` may be called from any thread; overlapping calls are skipped
    rather than queued. `run()` is the background ticker.
    """

    def __init__(
        self,
        account_repo: AccountRepository,
        wager_repo: WagerRepository,
        interval: float = 1.0,
    ) -> None:
        self._account_repo = account_repo
        self._wager_repo = wager_repo
        self._interval = interval
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    def sweep(self, now: Optional[datetime] = None) -> Optional[SettlementReport]:
        if not self._lock.acquire(blocking=False):
            return None
        try:
            return settle_parity_wagers(self._account_repo, self._wager_repo, now)
        except LedgerError:
            logger.exception("Parity sweep failed")
            return None
        finally:
            self._lock.release()

    async def run(self) -> None:
        while True:
            await asyncio.to_thread(self.sweep)
            await asyncio.sleep(self._interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="settlement-sweeper")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
