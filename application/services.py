from __future__ import annotations

import functools
import logging
import random
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

from domain.models import (
    INITIAL_BALANCE,
    Account,
    GameKind,
    Match,
    MatchSide,
    MatchStatus,
    Wager,
    WagerStatus,
    to_money,
    utcnow,
)
from domain.repositories import (
    AccountRepository,
    LedgerError,
    MatchCatalog,
    MatchFeed,
    WagerRepository,
)
from domain.rounds import (
    MAX_MULTIPLIER,
    MIN_MULTIPLIER,
    PARITY_CHOICES,
    PARITY_MULTIPLIER,
    ROULETTE_MIN_STAKE,
    current_round_index,
    spin_roulette_slot,
)

from .ledger import ACCOUNT_NOT_FOUND, apply_delta, reverse_delta
from .settlement import SettlementReport, settle_fixed_odds_match, settle_parity_wagers


logger = logging.getLogger(__name__)

LEDGER_FAILURE = "Something went wrong, your balance was not changed."
FAIL_LABEL = "fail"
MIN_ODDS = Decimal("1.01")


@dataclass
class OperationResult:
    """Generic result type for simple operations."""

    success: bool
    error_message: Optional[str] = None
    balance: Optional[Decimal] = None


@dataclass
class WagerResult:
    """Result of an operation that writes (or removes) a wager."""

    success: bool
    error_message: Optional[str] = None
    balance: Optional[Decimal] = None
    wager: Optional[Wager] = None


@dataclass
class SpinResult:
    """
    Everything a client needs to show a roulette spin.

    The resulting balance is included so nobody has to re-query it.
    """

    success: bool
    is_win: bool = False
    label: str = ""
    multiplier: Decimal = Decimal("0")
    payout: Decimal = Decimal("0.00")
    balance: Optional[Decimal] = None
    message: str = ""
    wager: Optional[Wager] = None

    @classmethod
    def fail(cls, message: str, balance: Optional[Decimal] = None) -> "SpinResult":
        return cls(success=False, message=message, balance=balance)


@dataclass
class HistoryResult:
    success: bool
    error_message: Optional[str] = None
    wagers: List[Wager] = field(default_factory=list)
    balance: Optional[Decimal] = None


@dataclass
class BetSlipSelection:
    match_id: str
    side: str
    stake: Decimal


@dataclass
class MatchUpdateResult:
    """Outcome of a feed-side change to a match, with its settlement if any."""

    success: bool
    error_message: Optional[str] = None
    match: Optional[Match] = None
    report: Optional[SettlementReport] = None


def _ledger_guarded(on_failure: Callable[[], object]):
    """Turn a `LedgerError` escaping an engine operation into a failed result."""

    def decorate(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except LedgerError:
                logger.exception("Ledger failure in %s", func.__name__)
                return on_failure()

        return wrapper

    return decorate


def _parse_stake(stake) -> Optional[Decimal]:
    try:
        value = to_money(stake)
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def _record_or_reverse(
    wager_repo: WagerRepository,
    account_repo: AccountRepository,
    wager: Wager,
    applied_delta: Decimal,
) -> Optional[Wager]:
    """
    Persist `wager`; if that fails, undo the balance change already made
    for it and return None.
    """

    try:
        return wager_repo.append_wager(wager)
    except LedgerError:
        logger.exception("Could not record %s wager for %s, reversing", wager.game.value, wager.account_id)
        try:
            reverse_delta(account_repo, wager.account_id, applied_delta)
        except LedgerError:
            logger.exception("Reversal of %s for %s failed", applied_delta, wager.account_id)
        return None


def _sweep_quietly(account_repo: AccountRepository, wager_repo: WagerRepository, now=None) -> None:
    try:
        settle_parity_wagers(account_repo, wager_repo, now)
    except LedgerError:
        logger.exception("Opportunistic parity sweep failed")


@_ledger_guarded(lambda: OperationResult(success=False, error_message=LEDGER_FAILURE))
def open_account(account_id: str, display_name: str, account_repo: AccountRepository) -> OperationResult:
    """
    Return the existing account for `account_id`, creating it with the
    starting balance if it does not exist yet.
    """

    account = account_repo.find_account(account_id)
    if account is None:
        account = Account(id=account_id, display_name=display_name, balance=INITIAL_BALANCE)
        account_repo.add_account(account)
        logger.info("Opened account %s (%s)", account_id, display_name)
        account = account_repo.find_account(account_id) or account
    return OperationResult(success=True, balance=account.balance)


@_ledger_guarded(lambda: OperationResult(success=False, error_message=LEDGER_FAILURE))
def get_balance(
    account_id: str,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
) -> OperationResult:
    _sweep_quietly(account_repo, wager_repo)
    account = account_repo.find_account(account_id)
    if account is None:
        return OperationResult(success=False, error_message=ACCOUNT_NOT_FOUND)
    return OperationResult(success=True, balance=account.balance)


@_ledger_guarded(lambda: WagerResult(success=False, error_message=LEDGER_FAILURE))
def place_parity_wager(
    account_id: str,
    choice: str,
    stake,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    now: Optional[datetime] = None,
) -> WagerResult:
    """
    Take a parity wager on the current round.

    The wager stays Pending until the next round's draw is known; a sweep
    runs straight afterwards so anything already decidable is settled.
    """

    if choice not in PARITY_CHOICES:
        return WagerResult(success=False, error_message="Choose odd or even.")
    amount = _parse_stake(stake)
    if amount is None:
        return WagerResult(success=False, error_message="Stake must be greater than zero.")

    now = now or utcnow()
    balance, error = apply_delta(account_repo, account_id, -amount)
    if error:
        return WagerResult(success=False, error_message=error)

    wager = _record_or_reverse(
        wager_repo,
        account_repo,
        Wager(
            account_id=account_id,
            game=GameKind.PARITY,
            choice=choice,
            stake=amount,
            multiplier=PARITY_MULTIPLIER,
            payout=to_money(amount * PARITY_MULTIPLIER),
            placed_at=now,
            round_index=current_round_index(now),
        ),
        -amount,
    )
    if wager is None:
        return WagerResult(success=False, error_message=LEDGER_FAILURE)

    _sweep_quietly(account_repo, wager_repo, now)
    return WagerResult(success=True, balance=balance, wager=wager)


@_ledger_guarded(lambda: OperationResult(success=False, error_message=LEDGER_FAILURE))
def start_rising_multiplier_game(
    account_id: str,
    stake,
    account_repo: AccountRepository,
) -> OperationResult:
    """
    Take the stake for a rising-multiplier game.

    Losing is the default: nothing is recorded until the game is stopped
    or fails.
    """

    amount = _parse_stake(stake)
    if amount is None:
        return OperationResult(success=False, error_message="Stake must be greater than zero.")

    balance, error = apply_delta(account_repo, account_id, -amount)
    if error:
        return OperationResult(success=False, error_message=error)
    return OperationResult(success=True, balance=balance)


@_ledger_guarded(lambda: WagerResult(success=False, error_message=LEDGER_FAILURE))
def stop_rising_multiplier_game(
    account_id: str,
    stake,
    multiplier,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
) -> WagerResult:
    amount = _parse_stake(stake)
    if amount is None:
        return WagerResult(success=False, error_message="Stake must be greater than zero.")
    try:
        locked = Decimal(str(multiplier)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return WagerResult(success=False, error_message="Invalid multiplier.")
    if not locked.is_finite():
        return WagerResult(success=False, error_message="Invalid multiplier.")
    if locked < MIN_MULTIPLIER or locked > MAX_MULTIPLIER:
        return WagerResult(success=False, error_message="Multiplier out of range.")

    payout = to_money(amount * locked)
    balance, error = apply_delta(account_repo, account_id, payout)
    if error:
        return WagerResult(success=False, error_message=error)

    wager = _record_or_reverse(
        wager_repo,
        account_repo,
        Wager(
            account_id=account_id,
            game=GameKind.RISING_MULTIPLIER,
            choice=f"{locked:.2f}",
            stake=amount,
            multiplier=locked,
            payout=payout,
            status=WagerStatus.WON,
            result=f"x{locked:.2f}",
        ),
        payout,
    )
    if wager is None:
        return WagerResult(success=False, error_message=LEDGER_FAILURE)
    return WagerResult(success=True, balance=balance, wager=wager)


@_ledger_guarded(lambda: WagerResult(success=False, error_message=LEDGER_FAILURE))
def fail_rising_multiplier_game(
    account_id: str,
    stake,
    wager_repo: WagerRepository,
) -> WagerResult:
    """Record a failed game. The stake was already taken at start."""

    amount = _parse_stake(stake)
    if amount is None:
        return WagerResult(success=False, error_message="Stake must be greater than zero.")

    wager = wager_repo.append_wager(
        Wager(
            account_id=account_id,
            game=GameKind.RISING_MULTIPLIER,
            choice=FAIL_LABEL,
            stake=amount,
            multiplier=Decimal("0"),
            payout=Decimal("0.00"),
            status=WagerStatus.LOST,
            result=FAIL_LABEL,
        )
    )
    return WagerResult(success=True, wager=wager)


@_ledger_guarded(lambda: SpinResult.fail(LEDGER_FAILURE))
def spin_roulette(
    account_id: str,
    stake,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    rng: Optional[random.Random] = None,
) -> SpinResult:
    amount = _parse_stake(stake)
    if amount is None or amount < ROULETTE_MIN_STAKE:
        return SpinResult.fail(f"Minimum stake is {ROULETTE_MIN_STAKE}.")

    slot = spin_roulette_slot(rng)
    payout = to_money(amount * slot.multiplier)

    # Stake and payout land in one balance write; the account still has to
    # cover the stake on its own.
    balance, error = apply_delta(account_repo, account_id, payout - amount, required=amount)
    if error:
        account = account_repo.find_account(account_id)
        return SpinResult.fail(error, account.balance if account else None)

    wager = _record_or_reverse(
        wager_repo,
        account_repo,
        Wager(
            account_id=account_id,
            game=GameKind.ROULETTE,
            choice=slot.label,
            stake=amount,
            multiplier=slot.multiplier,
            payout=payout,
            status=WagerStatus.WON if slot.is_win else WagerStatus.LOST,
            result=slot.label,
        ),
        payout - amount,
    )
    if wager is None:
        return SpinResult.fail(LEDGER_FAILURE)

    if slot.is_win:
        message = f"{slot.label}! You won {payout}."
    else:
        message = "Miss. Better luck next spin."
    return SpinResult(
        success=True,
        is_win=slot.is_win,
        label=slot.label,
        multiplier=slot.multiplier,
        payout=payout,
        balance=balance,
        message=message,
        wager=wager,
    )


@_ledger_guarded(lambda: WagerResult(success=False, error_message=LEDGER_FAILURE))
def place_fixed_odds_wager(
    account_id: str,
    match_id: str,
    side: str,
    stake,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    match_catalog: MatchCatalog,
) -> WagerResult:
    """
    Bet on one side of a catalog match at its current odds.

    The odds are copied into the wager, so later catalog changes do not
    affect it.
    """

    try:
        chosen = MatchSide(side)
    except ValueError:
        return WagerResult(success=False, error_message="Choose home, draw or away.")
    amount = _parse_stake(stake)
    if amount is None:
        return WagerResult(success=False, error_message="Stake must be greater than zero.")

    match = match_catalog.get_match(match_id)
    if match is None:
        return WagerResult(success=False, error_message="Match not found.")
    if not match.is_biddable:
        return WagerResult(success=False, error_message="Betting on this match is closed.")

    odds = match.odds_for(chosen)
    balance, error = apply_delta(account_repo, account_id, -amount)
    if error:
        return WagerResult(success=False, error_message=error)

    wager = _record_or_reverse(
        wager_repo,
        account_repo,
        Wager(
            account_id=account_id,
            game=GameKind.FIXED_ODDS,
            choice=chosen.value,
            stake=amount,
            multiplier=odds,
            payout=to_money(amount * odds),
            match_id=match.id,
        ),
        -amount,
    )
    if wager is None:
        return WagerResult(success=False, error_message=LEDGER_FAILURE)
    return WagerResult(success=True, balance=balance, wager=wager)


def place_bet_slip(
    account_id: str,
    selections: List[BetSlipSelection],
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    match_catalog: MatchCatalog,
) -> List[WagerResult]:
    """Place each selection with a stake; selections left at zero are skipped."""

    results = []
    for selection in selections:
        if _parse_stake(selection.stake) is None:
            continue
        results.append(
            place_fixed_odds_wager(
                account_id,
                selection.match_id,
                selection.side,
                selection.stake,
                account_repo,
                wager_repo,
                match_catalog,
            )
        )
    return results


@_ledger_guarded(lambda: WagerResult(success=False, error_message=LEDGER_FAILURE))
def cancel_pending_fixed_odds_wager(
    account_id: str,
    wager_id: int,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
) -> WagerResult:
    wager = wager_repo.get_wager(wager_id)
    if wager is None or wager.account_id != account_id or wager.game is not GameKind.FIXED_ODDS:
        return WagerResult(success=False, error_message="Wager not found.")
    if not wager.is_pending:
        return WagerResult(success=False, error_message="Only pending wagers can be cancelled.")

    if not wager_repo.delete_pending_wager(wager_id):
        return WagerResult(success=False, error_message="Only pending wagers can be cancelled.")

    try:
        balance, error = apply_delta(account_repo, account_id, wager.stake)
    except LedgerError:
        logger.exception("Refund of wager %s failed", wager_id)
        error = LEDGER_FAILURE
    if error:
        try:
            restored = wager_repo.append_wager(replace(wager, id=None))
        except LedgerError:
            logger.critical(
                "Wager %s of %s was deleted but its stake %s was not refunded and it could not be restored",
                wager_id,
                account_id,
                wager.stake,
            )
            return WagerResult(success=False, error_message=LEDGER_FAILURE)
        logger.warning(
            "Refund of wager %s failed (%s); restored it as wager %s", wager_id, error, restored.id
        )
        return WagerResult(
            success=False,
            error_message=f"{error} Your bet is still open as #{restored.id}.",
            wager=restored,
        )

    logger.info("Cancelled wager %s for %s, refunded %s", wager_id, account_id, wager.stake)
    return WagerResult(success=True, balance=balance, wager=wager)


@_ledger_guarded(lambda: HistoryResult(success=False, error_message=LEDGER_FAILURE))
def get_wager_history(
    account_id: str,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    game: Optional[GameKind] = None,
) -> HistoryResult:
    _sweep_quietly(account_repo, wager_repo)
    account = account_repo.find_account(account_id)
    if account is None:
        return HistoryResult(success=False, error_message=ACCOUNT_NOT_FOUND)
    wagers = wager_repo.list_wagers_for_account(account_id, game)
    return HistoryResult(success=True, wagers=wagers, balance=account.balance)


def get_rankings(account_repo: AccountRepository, limit: Optional[int] = None) -> List[Account]:
    """Accounts ordered from richest to poorest."""

    try:
        accounts = account_repo.list_accounts()
    except LedgerError:
        logger.exception("Could not load rankings")
        return []
    ranked = sorted(accounts, key=lambda a: a.balance, reverse=True)
    return ranked[:limit] if limit is not None else ranked


def list_open_matches(match_catalog: MatchCatalog) -> List[Match]:
    matches = [
        m for m in match_catalog.list_matches()
        if m.status in (MatchStatus.UPCOMING, MatchStatus.LIVE)
    ]
    return sorted(matches, key=lambda m: m.kickoff)


def _parse_odds(value) -> Optional[Decimal]:
    try:
        odds = Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    if not odds.is_finite() or odds < MIN_ODDS:
        return None
    return odds


def update_match_odds(match_id: str, home, draw, away, match_feed: MatchFeed) -> MatchUpdateResult:
    """
    Reprice a match that is still open for betting.

    Wagers already taken keep the odds they were placed at.
    """

    match = match_feed.get_match(match_id)
    if match is None:
        return MatchUpdateResult(success=False, error_message="Match not found.")
    if not match.is_biddable:
        return MatchUpdateResult(success=False, error_message="Betting on this match is closed.")

    prices = [_parse_odds(value) for value in (home, draw, away)]
    if any(price is None for price in prices):
        return MatchUpdateResult(success=False, error_message=f"Odds must be at least {MIN_ODDS}.")

    match = match_feed.update_odds(match.id, *prices)
    logger.info("Odds of match %s set to %s / %s / %s", match.id, *prices)
    return MatchUpdateResult(success=True, match=match)


def start_match(match_id: str, match_feed: MatchFeed) -> MatchUpdateResult:
    """Close betting on a match that has kicked off."""

    match = match_feed.get_match(match_id)
    if match is None:
        return MatchUpdateResult(success=False, error_message="Match not found.")
    if match.status is not MatchStatus.UPCOMING:
        return MatchUpdateResult(success=False, error_message="Match has already started.")
    match = match_feed.set_status(match.id, MatchStatus.LIVE)
    logger.info("Match %s is live", match.id)
    return MatchUpdateResult(success=True, match=match)


@_ledger_guarded(lambda: MatchUpdateResult(success=False, error_message=LEDGER_FAILURE))
def record_match_result(
    match_id: str,
    home_score,
    away_score,
    match_feed: MatchFeed,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
) -> MatchUpdateResult:
    """
    Finish a match and settle its pending wagers.

    Recording the same score again only re-runs settlement, which picks up
    wagers a failed earlier run left pending. A different score for a
    finished match is refused.
    """

    try:
        home_goals, away_goals = int(home_score), int(away_score)
    except (TypeError, ValueError):
        return MatchUpdateResult(success=False, error_message="Scores must be whole numbers.")
    if home_goals < 0 or away_goals < 0:
        return MatchUpdateResult(success=False, error_message="Scores must be whole numbers.")

    match = match_feed.get_match(match_id)
    if match is None:
        return MatchUpdateResult(success=False, error_message="Match not found.")
    if match.status is MatchStatus.FINISHED and (match.home_score, match.away_score) != (home_goals, away_goals):
        return MatchUpdateResult(success=False, error_message="Match already has a different result.")

    match = match_feed.record_result(match.id, home_goals, away_goals)
    report = settle_fixed_odds_match(match, account_repo, wager_repo)
    return MatchUpdateResult(success=True, match=match, report=report)
