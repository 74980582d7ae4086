from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

from application.services import BetSlipSelection, MatchUpdateResult, WagerResult
from domain.models import Account, GameKind, Match, Wager, WagerStatus


HELP_TEXT = (
    "{p}balance                   - show your balance\n"
    "{p}parity <odd|even> <stake> - bet on the current 30s round\n"
    "{p}crash <stake>             - start a rising-multiplier game\n"
    "{p}stop                      - cash out the running game\n"
    "{p}roulette <stake>          - spin the wheel (min 1000)\n"
    "{p}matches                   - list open matches\n"
    "{p}bet <match> <home|draw|away> <stake> - bet on a match\n"
    "{p}slip <match>:<side>:<stake> ... - several match bets at once\n"
    "{p}cancel <wager id>         - cancel a pending match bet\n"
    "{p}history [game]            - your recent wagers\n"
    "{p}rank                      - richest players\n"
)

ADMIN_HELP_TEXT = (
    "{p}odds <match> <home> <draw> <away> - reprice an upcoming match\n"
    "{p}kickoff <match>           - close betting on a match\n"
    "{p}result <match> <home> <away> - record the score and settle bets\n"
)

_STATUS_LABELS = {
    WagerStatus.PENDING: "pending",
    WagerStatus.WON: "won",
    WagerStatus.LOST: "lost",
}


def format_money(amount: Optional[Decimal]) -> str:
    if amount is None:
        return "-"
    return f"{amount:,.2f}"


def parse_game(name: Optional[str]) -> Optional[GameKind]:
    if not name:
        return None
    aliases = {
        "parity": GameKind.PARITY,
        "crash": GameKind.RISING_MULTIPLIER,
        "rising": GameKind.RISING_MULTIPLIER,
        "roulette": GameKind.ROULETTE,
        "sports": GameKind.FIXED_ODDS,
        "bets": GameKind.FIXED_ODDS,
    }
    return aliases.get(name.lower())


def describe_wager(wager: Wager) -> str:
    line = (
        f"#{wager.id} {wager.game.value} {wager.choice} "
        f"stake {format_money(wager.stake)} x{wager.multiplier} "
        f"[{_STATUS_LABELS[wager.status]}]"
    )
    if wager.result:
        line += f" -> {wager.result}"
    return line


def describe_history(wagers: List[Wager], limit: int = 10) -> str:
    if not wagers:
        return "No wagers yet."
    return "\n".join(describe_wager(w) for w in wagers[:limit])


def describe_match(match: Match) -> str:
    return (
        f"[{match.id}] {match.league}: {match.title} "
        f"({match.kickoff:%Y-%m-%d %H:%M} UTC) "
        f"home {match.home_odds} / draw {match.draw_odds} / away {match.away_odds}"
    )


def describe_rankings(accounts: Iterable[Account]) -> str:
    lines = [
        f"{position}. {account.display_name}: {format_money(account.balance)}"
        for position, account in enumerate(accounts, start=1)
    ]
    return "\n".join(lines) if lines else "No players yet."


def parse_bet_slip(tokens: Iterable[str]) -> List[BetSlipSelection]:
    """
    Parse `match:side:stake` tokens into bet slip selections.

    Raises ValueError on the first malformed token.
    """

    selections = []
    for token in tokens:
        parts = token.split(":")
        if len(parts) != 3:
            raise ValueError(f"Invalid bet slip entry: {token}")
        match_id, side, stake = parts
        try:
            amount = Decimal(stake.replace(",", ""))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid bet slip entry: {token}") from exc
        selections.append(BetSlipSelection(match_id, side.lower(), amount))
    if not selections:
        raise ValueError("Empty bet slip")
    return selections


def describe_slip_results(results: List[WagerResult]) -> str:
    if not results:
        return "Nothing to place: every stake was zero."
    lines = []
    for result in results:
        if result.success:
            lines.append(
                f"#{result.wager.id} match {result.wager.match_id} {result.wager.choice} "
                f"at {result.wager.multiplier}: potential payout {format_money(result.wager.payout)}"
            )
        else:
            lines.append(f"Not placed: {result.error_message}")
    balances = [r.balance for r in results if r.success]
    if balances:
        lines.append(f"Balance: {format_money(balances[-1])}")
    return "\n".join(lines)


def describe_match_update(result: MatchUpdateResult) -> str:
    if not result.success:
        return result.error_message
    text = describe_match(result.match)
    if result.report is not None:
        text += (
            f"\nFinal score {result.match.home_score}-{result.match.away_score}: "
            f"{len(result.report.won)} bets won, {len(result.report.lost)} lost, "
            f"{format_money(result.report.credited)} paid out."
        )
    return text
