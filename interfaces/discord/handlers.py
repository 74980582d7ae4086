from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, FrozenSet, Optional

import discord
from discord.ext import commands

from application.services import (
    cancel_pending_fixed_odds_wager,
    get_balance,
    get_rankings,
    get_wager_history,
    list_open_matches,
    open_account,
    place_bet_slip,
    place_fixed_odds_wager,
    record_match_result,
    spin_roulette,
    start_match,
    update_match_odds,
)
from application.sessions import GameSessionRegistry, SessionEvent
from domain.models import WagerStatus
from domain.repositories import AccountRepository, MatchFeed, WagerRepository
from interfaces.formatting import (
    ADMIN_HELP_TEXT,
    HELP_TEXT,
    describe_history,
    describe_match,
    describe_match_update,
    describe_rankings,
    describe_slip_results,
    format_money,
    parse_bet_slip,
    parse_game,
)


logger = logging.getLogger(__name__)


def _account_id(user: discord.abc.User) -> str:
    return f"discord:{user.id}"


def _parse_amount(text: str) -> Optional[Decimal]:
    try:
        return Decimal(text.replace(",", ""))
    except InvalidOperation:
        return None


def create_discord_bot(
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    match_catalog: MatchFeed,
    sessions: GameSessionRegistry,
    admin_ids: FrozenSet[str] = frozenset(),
) -> commands.Bot:
    """
    Configure and return a Discord bot with the same commands as the
    Telegram interface, using `!` as the prefix.
    """

    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.members = True

    # Disable the default help command so we can provide our own `!help`.
    bot = commands.Bot(command_prefix="!", intents=intents, help_command=None)

    # Channel each account last played in; session events are posted there.
    channels: Dict[str, discord.abc.Messageable] = {}

    async def notify(event: SessionEvent) -> None:
        channel = channels.get(event.account_id)
        if channel is None:
            return
        mention = f"<@{event.account_id.split(':', 1)[1]}>"
        if event.kind == "failed":
            await channel.send(f"{mention} the graph crashed at x{event.multiplier}. {event.message}")
        elif event.kind == "round" and event.settled:
            won = [w for w in event.settled if w.status is WagerStatus.WON]
            payout = sum((w.payout for w in won), Decimal("0.00"))
            await channel.send(
                f"{mention} round {event.round_index} came up {event.outcome}: "
                f"{len(won)}/{len(event.settled)} bets won, paid {format_money(payout)}. "
                f"Balance: {format_money(event.balance)}"
            )

    sessions.on_event = notify

    async def ensure_account(ctx: commands.Context) -> str:
        account_id = _account_id(ctx.author)
        channels[account_id] = ctx.channel
        await asyncio.to_thread(
            open_account, account_id, ctx.author.display_name or ctx.author.name, account_repo
        )
        return account_id

    @bot.event
    async def on_ready():
        logger.info("Discord bot logged in as %s (id=%s)", bot.user, bot.user.id)

    @bot.event
    async def on_member_remove(member: discord.Member):
        await sessions.discard(_account_id(member))

    @bot.command(name="start")
    async def start_cmd(ctx: commands.Context):
        account_id = await ensure_account(ctx)
        result = await asyncio.to_thread(get_balance, account_id, account_repo, wager_repo)
        await ctx.send(
            "Welcome to the wager hall!\n"
            f"Your balance is {format_money(result.balance)}.\n"
            "Type !help to see available commands."
        )

    @bot.command(name="help")
    async def help_cmd(ctx: commands.Context):
        text = HELP_TEXT.format(p="!")
        if _account_id(ctx.author) in admin_ids:
            text += ADMIN_HELP_TEXT.format(p="!")
        await ctx.send(f"```\n{text}```")

    @bot.command(name="balance")
    async def balance_cmd(ctx: commands.Context):
        account_id = await ensure_account(ctx)
        result = await asyncio.to_thread(get_balance, account_id, account_repo, wager_repo)
        await ctx.send(f"Balance: {format_money(result.balance)}" if result.success else result.error_message)

    @bot.command(name="parity")
    async def parity_cmd(ctx: commands.Context, choice: str, stake: str):
        amount = _parse_amount(stake)
        if amount is None:
            await ctx.send("Stake must be a number.")
            return
        account_id = await ensure_account(ctx)
        session = await sessions.parity(account_id)
        result = await session.place_wager(choice.lower(), amount)
        if not result.success:
            await ctx.send(result.error_message)
            return
        await ctx.send(
            f"Bet #{result.wager.id}: {choice.lower()} for {format_money(amount)} "
            f"({session.time_left}s left in round {result.wager.round_index}). "
            f"Balance: {format_money(result.balance)}"
        )

    @bot.command(name="crash")
    async def crash_cmd(ctx: commands.Context, stake: str):
        amount = _parse_amount(stake)
        if amount is None:
            await ctx.send("Stake must be a number.")
            return
        account_id = await ensure_account(ctx)
        result = await sessions.rising(account_id).start(amount)
        if not result.success:
            await ctx.send(result.error_message)
            return
        await ctx.send(
            f"The multiplier is rising! Send `!stop` to cash out. "
            f"Balance: {format_money(result.balance)}"
        )

    @bot.command(name="stop")
    async def stop_cmd(ctx: commands.Context):
        account_id = await ensure_account(ctx)
        result = await sessions.rising(account_id).stop()
        if not result.success:
            await ctx.send(result.error_message)
            return
        await ctx.send(
            f"Cashed out at x{result.multiplier}: {format_money(result.payout)}. "
            f"Balance: {format_money(result.balance)}"
        )

    @bot.command(name="roulette")
    async def roulette_cmd(ctx: commands.Context, stake: str):
        amount = _parse_amount(stake)
        if amount is None:
            await ctx.send("Stake must be a number.")
            return
        account_id = await ensure_account(ctx)
        result = await asyncio.to_thread(spin_roulette, account_id, amount, account_repo, wager_repo)
        text = result.message
        if result.balance is not None:
            text += f" Balance: {format_money(result.balance)}"
        await ctx.send(text)

    @bot.command(name="matches")
    async def matches_cmd(ctx: commands.Context):
        matches = list_open_matches(match_catalog)
        await ctx.send("\n".join(describe_match(m) for m in matches) if matches else "No open matches.")

    @bot.command(name="bet")
    async def bet_cmd(ctx: commands.Context, match_id: str, side: str, stake: str):
        amount = _parse_amount(stake)
        if amount is None:
            await ctx.send("Stake must be a number.")
            return
        account_id = await ensure_account(ctx)
        result = await asyncio.to_thread(
            place_fixed_odds_wager,
            account_id,
            match_id,
            side.lower(),
            amount,
            account_repo,
            wager_repo,
            match_catalog,
        )
        if not result.success:
            await ctx.send(result.error_message)
            return
        await ctx.send(
            f"Bet #{result.wager.id} on {result.wager.choice} at {result.wager.multiplier}, "
            f"potential payout {format_money(result.wager.payout)}. "
            f"Balance: {format_money(result.balance)}"
        )

    @bot.command(name="cancel")
    async def cancel_cmd(ctx: commands.Context, wager_id: int):
        account_id = await ensure_account(ctx)
        result = await asyncio.to_thread(
            cancel_pending_fixed_odds_wager, account_id, wager_id, account_repo, wager_repo
        )
        if not result.success:
            await ctx.send(result.error_message)
            return
        await ctx.send(f"Bet #{wager_id} cancelled. Balance: {format_money(result.balance)}")

    @bot.command(name="slip")
    async def slip_cmd(ctx: commands.Context, *entries: str):
        try:
            selections = parse_bet_slip(entries)
        except ValueError:
            await ctx.send("Usage: !slip <match>:<home|draw|away>:<stake> ...")
            return
        account_id = await ensure_account(ctx)
        results = await asyncio.to_thread(
            place_bet_slip, account_id, selections, account_repo, wager_repo, match_catalog
        )
        await ctx.send(describe_slip_results(results))

    def bookmaker_only():
        async def predicate(ctx: commands.Context) -> bool:
            if _account_id(ctx.author) in admin_ids:
                return True
            await ctx.send("Only the bookmaker can do that.")
            return False

        return commands.check(predicate)

    @bot.command(name="odds")
    @bookmaker_only()
    async def odds_cmd(ctx: commands.Context, match_id: str, home: str, draw: str, away: str):
        await ctx.send(describe_match_update(update_match_odds(match_id, home, draw, away, match_catalog)))

    @bot.command(name="kickoff")
    @bookmaker_only()
    async def kickoff_cmd(ctx: commands.Context, match_id: str):
        await ctx.send(describe_match_update(start_match(match_id, match_catalog)))

    @bot.command(name="result")
    @bookmaker_only()
    async def result_cmd(ctx: commands.Context, match_id: str, home_goals: int, away_goals: int):
        result = await asyncio.to_thread(
            record_match_result, match_id, home_goals, away_goals, match_catalog, account_repo, wager_repo
        )
        await ctx.send(describe_match_update(result))

    @bot.command(name="history")
    async def history_cmd(ctx: commands.Context, game: Optional[str] = None):
        account_id = await ensure_account(ctx)
        result = await asyncio.to_thread(
            get_wager_history, account_id, account_repo, wager_repo, parse_game(game)
        )
        if not result.success:
            await ctx.send(result.error_message)
            return
        await ctx.send(describe_history(result.wagers) + f"\nBalance: {format_money(result.balance)}")

    @bot.command(name="rank", aliases=["list"])
    async def rank_cmd(ctx: commands.Context):
        accounts = await asyncio.to_thread(get_rankings, account_repo, 10)
        await ctx.send(describe_rankings(accounts))

    @bot.event
    async def on_command_error(ctx: commands.Context, error: commands.CommandError):
        if isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await ctx.send("Missing or invalid arguments. Type !help for usage.")
            return
        if isinstance(error, (commands.CommandNotFound, commands.CheckFailure)):
            return
        logger.error("Command %s failed", ctx.command, exc_info=error)

    return bot
