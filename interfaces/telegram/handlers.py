from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Dict, FrozenSet, Optional

from telebot.async_telebot import AsyncTeleBot
from telebot.types import InlineKeyboardButton, InlineKeyboardMarkup

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
from interfaces.telegram.callback_data import (
    encode_cancel_wager,
    encode_crash_stop,
    encode_parity_choice,
    parse_cancel_wager,
    parse_crash_stop,
    parse_parity_choice,
)


def _account_id(user) -> str:
    """Telegram users map onto accounts by their numeric ID."""

    return f"telegram:{user.id}"


def _display_name(user) -> str:
    return " ".join(part for part in (user.first_name, user.last_name) if part) or str(user.id)


def _parse_amount(text: str) -> Optional[Decimal]:
    try:
        return Decimal(text.replace(",", ""))
    except InvalidOperation:
        return None


def create_telegram_bot(
    bot_token: str,
    account_repo: AccountRepository,
    wager_repo: WagerRepository,
    match_catalog: MatchFeed,
    sessions: GameSessionRegistry,
    admin_ids: FrozenSet[str] = frozenset(),
) -> AsyncTeleBot:
    """
    Configure and return an AsyncTeleBot wired to the application layer.

    This module contains only Telegram-specific concerns: parsing commands
    and button presses and turning results and session events into
    messages.
    """

    bot = AsyncTeleBot(bot_token)

    # Where to deliver session events for each account.
    chats: Dict[str, int] = {}

    async def notify(event: SessionEvent) -> None:
        chat_id = chats.get(event.account_id)
        if chat_id is None:
            return
        if event.kind == "failed":
            await bot.send_message(
                chat_id,
                f"The graph crashed at x{event.multiplier}. {event.message} Your stake is lost.",
            )
        elif event.kind == "round" and event.settled:
            lines = [f"Round {event.round_index} came up {event.outcome}."]
            for wager in event.settled:
                if wager.status is WagerStatus.WON:
                    lines.append(f"#{wager.id} {wager.choice}: won {format_money(wager.payout)}")
                else:
                    lines.append(f"#{wager.id} {wager.choice}: lost")
            lines.append(f"Balance: {format_money(event.balance)}")
            await bot.send_message(chat_id, "\n".join(lines))

    sessions.on_event = notify

    async def ensure_account(message) -> str:
        account_id = _account_id(message.from_user)
        chats[account_id] = message.chat.id
        await asyncio.to_thread(
            open_account, account_id, _display_name(message.from_user), account_repo
        )
        return account_id

    @bot.message_handler(commands=["start", "hello"])
    async def handle_start(message):
        account_id = await ensure_account(message)
        result = await asyncio.to_thread(get_balance, account_id, account_repo, wager_repo)
        await bot.send_message(
            message.chat.id,
            "Welcome to the wager hall!\n"
            f"Your balance is {format_money(result.balance)}.\n"
            "Type /help to see available commands.",
        )

    @bot.message_handler(commands=["help"])
    async def handle_help(message):
        text = HELP_TEXT.format(p="/")
        if _account_id(message.from_user) in admin_ids:
            text += ADMIN_HELP_TEXT.format(p="/")
        await bot.send_message(message.chat.id, text)

    @bot.message_handler(commands=["balance"])
    async def handle_balance(message):
        account_id = await ensure_account(message)
        result = await asyncio.to_thread(get_balance, account_id, account_repo, wager_repo)
        text = f"Balance: {format_money(result.balance)}" if result.success else result.error_message
        await bot.send_message(message.chat.id, text)

    @bot.message_handler(commands=["parity"])
    async def handle_parity(message):
        parts = message.text.split()
        account_id = await ensure_account(message)

        if len(parts) == 2:
            # Only a stake: offer the two choices as buttons.
            stake = _parse_amount(parts[1])
            if stake is None:
                await bot.send_message(message.chat.id, "Stake must be a number.")
                return
            markup = InlineKeyboardMarkup(row_width=2)
            markup.add(
                InlineKeyboardButton("odd", callback_data=encode_parity_choice("odd", stake)),
                InlineKeyboardButton("even", callback_data=encode_parity_choice("even", stake)),
            )
            session = await sessions.parity(account_id)
            await bot.send_message(
                message.chat.id,
                f"Round {session.round_index}, {session.time_left}s left. Pick a side:",
                reply_markup=markup,
            )
            return

        if len(parts) < 3:
            await bot.send_message(message.chat.id, "Usage: /parity <odd|even> <stake>")
            return
        stake = _parse_amount(parts[2])
        if stake is None:
            await bot.send_message(message.chat.id, "Stake must be a number.")
            return
        await _place_parity(message.chat.id, account_id, parts[1].lower(), stake)

    async def _place_parity(chat_id: int, account_id: str, choice: str, stake: Decimal) -> None:
        session = await sessions.parity(account_id)
        result = await session.place_wager(choice, stake)
        if not result.success:
            await bot.send_message(chat_id, result.error_message)
            return
        await bot.send_message(
            chat_id,
            f"Bet #{result.wager.id}: {choice} for {format_money(stake)} in round "
            f"{result.wager.round_index}. Settles when round {result.wager.round_index + 1} "
            f"is drawn. Balance: {format_money(result.balance)}",
        )

    @bot.callback_query_handler(func=lambda call: call.data.startswith("parity:"))
    async def handle_parity_choice(call):
        try:
            choice, stake = parse_parity_choice(call.data)
        except ValueError:
            await bot.answer_callback_query(call.id, "Invalid selection.")
            return
        account_id = _account_id(call.from_user)
        chats[account_id] = call.message.chat.id
        await bot.answer_callback_query(call.id)
        await _place_parity(call.message.chat.id, account_id, choice, stake)

    @bot.message_handler(commands=["crash"])
    async def handle_crash(message):
        parts = message.text.split()
        if len(parts) < 2 or _parse_amount(parts[1]) is None:
            await bot.send_message(message.chat.id, "Usage: /crash <stake>")
            return

        account_id = await ensure_account(message)
        result = await sessions.rising(account_id).start(_parse_amount(parts[1]))
        if not result.success:
            await bot.send_message(message.chat.id, result.error_message)
            return

        markup = InlineKeyboardMarkup()
        markup.add(InlineKeyboardButton("STOP", callback_data=encode_crash_stop(account_id)))
        await bot.send_message(
            message.chat.id,
            f"The multiplier is rising! Balance: {format_money(result.balance)}\n"
            "Press STOP (or send /stop) to cash out.",
            reply_markup=markup,
        )

    async def _stop(chat_id: int, account_id: str) -> None:
        result = await sessions.rising(account_id).stop()
        if result.success:
            await bot.send_message(
                chat_id,
                f"Cashed out at x{result.multiplier}: {format_money(result.payout)}. "
                f"Balance: {format_money(result.balance)}",
            )
        else:
            await bot.send_message(chat_id, result.error_message)

    @bot.message_handler(commands=["stop"])
    async def handle_stop(message):
        account_id = await ensure_account(message)
        await _stop(message.chat.id, account_id)

    @bot.callback_query_handler(func=lambda call: call.data.startswith("stop:"))
    async def handle_stop_button(call):
        try:
            account_id = parse_crash_stop(call.data)
        except ValueError:
            await bot.answer_callback_query(call.id, "Invalid selection.")
            return
        if account_id != _account_id(call.from_user):
            await bot.answer_callback_query(call.id, "That is not your game.")
            return
        await bot.answer_callback_query(call.id)
        await _stop(call.message.chat.id, account_id)

    @bot.message_handler(commands=["roulette"])
    async def handle_roulette(message):
        parts = message.text.split()
        stake = _parse_amount(parts[1]) if len(parts) > 1 else None
        if stake is None:
            await bot.send_message(message.chat.id, "Usage: /roulette <stake>")
            return
        account_id = await ensure_account(message)
        result = await asyncio.to_thread(spin_roulette, account_id, stake, account_repo, wager_repo)
        text = result.message
        if result.balance is not None:
            text += f"\nBalance: {format_money(result.balance)}"
        await bot.send_message(message.chat.id, text)

    @bot.message_handler(commands=["matches"])
    async def handle_matches(message):
        matches = list_open_matches(match_catalog)
        if not matches:
            await bot.send_message(message.chat.id, "No open matches.")
            return
        await bot.send_message(message.chat.id, "\n".join(describe_match(m) for m in matches))

    @bot.message_handler(commands=["bet"])
    async def handle_bet(message):
        parts = message.text.split()
        if len(parts) < 4 or _parse_amount(parts[3]) is None:
            await bot.send_message(message.chat.id, "Usage: /bet <match> <home|draw|away> <stake>")
            return
        account_id = await ensure_account(message)
        result = await asyncio.to_thread(
            place_fixed_odds_wager,
            account_id,
            parts[1],
            parts[2].lower(),
            _parse_amount(parts[3]),
            account_repo,
            wager_repo,
            match_catalog,
        )
        if not result.success:
            await bot.send_message(message.chat.id, result.error_message)
            return

        markup = InlineKeyboardMarkup()
        markup.add(InlineKeyboardButton("cancel", callback_data=encode_cancel_wager(result.wager.id)))
        await bot.send_message(
            message.chat.id,
            f"Bet #{result.wager.id} on {result.wager.choice} at {result.wager.multiplier}, "
            f"potential payout {format_money(result.wager.payout)}. "
            f"Balance: {format_money(result.balance)}",
            reply_markup=markup,
        )

    async def _cancel(chat_id: int, account_id: str, wager_id: int) -> None:
        result = await asyncio.to_thread(
            cancel_pending_fixed_odds_wager, account_id, wager_id, account_repo, wager_repo
        )
        if result.success:
            await bot.send_message(
                chat_id, f"Bet #{wager_id} cancelled. Balance: {format_money(result.balance)}"
            )
        else:
            await bot.send_message(chat_id, result.error_message)

    @bot.message_handler(commands=["cancel"])
    async def handle_cancel(message):
        parts = message.text.split()
        if len(parts) < 2 or not parts[1].lstrip("#").isdigit():
            await bot.send_message(message.chat.id, "Usage: /cancel <wager id>")
            return
        account_id = await ensure_account(message)
        await _cancel(message.chat.id, account_id, int(parts[1].lstrip("#")))

    @bot.callback_query_handler(func=lambda call: call.data.startswith("cancel:"))
    async def handle_cancel_button(call):
        try:
            wager_id = parse_cancel_wager(call.data)
        except ValueError:
            await bot.answer_callback_query(call.id, "Invalid selection.")
            return
        await bot.answer_callback_query(call.id)
        await _cancel(call.message.chat.id, _account_id(call.from_user), wager_id)

    @bot.message_handler(commands=["slip"])
    async def handle_slip(message):
        try:
            selections = parse_bet_slip(message.text.split()[1:])
        except ValueError:
            await bot.send_message(message.chat.id, "Usage: /slip <match>:<home|draw|away>:<stake> ...")
            return
        account_id = await ensure_account(message)
        results = await asyncio.to_thread(
            place_bet_slip, account_id, selections, account_repo, wager_repo, match_catalog
        )
        await bot.send_message(message.chat.id, describe_slip_results(results))

    async def _admin_only(message) -> bool:
        if _account_id(message.from_user) in admin_ids:
            return True
        await bot.send_message(message.chat.id, "Only the bookmaker can do that.")
        return False

    @bot.message_handler(commands=["odds"])
    async def handle_odds(message):
        if not await _admin_only(message):
            return
        parts = message.text.split()
        if len(parts) < 5:
            await bot.send_message(message.chat.id, "Usage: /odds <match> <home> <draw> <away>")
            return
        result = update_match_odds(parts[1], parts[2], parts[3], parts[4], match_catalog)
        await bot.send_message(message.chat.id, describe_match_update(result))

    @bot.message_handler(commands=["kickoff"])
    async def handle_kickoff(message):
        if not await _admin_only(message):
            return
        parts = message.text.split()
        if len(parts) < 2:
            await bot.send_message(message.chat.id, "Usage: /kickoff <match>")
            return
        await bot.send_message(message.chat.id, describe_match_update(start_match(parts[1], match_catalog)))

    @bot.message_handler(commands=["result"])
    async def handle_result(message):
        if not await _admin_only(message):
            return
        parts = message.text.split()
        if len(parts) < 4:
            await bot.send_message(message.chat.id, "Usage: /result <match> <home goals> <away goals>")
            return
        result = await asyncio.to_thread(
            record_match_result, parts[1], parts[2], parts[3], match_catalog, account_repo, wager_repo
        )
        await bot.send_message(message.chat.id, describe_match_update(result))

    @bot.message_handler(commands=["history"])
    async def handle_history(message):
        parts = message.text.split()
        game = parse_game(parts[1]) if len(parts) > 1 else None
        account_id = await ensure_account(message)
        result = await asyncio.to_thread(get_wager_history, account_id, account_repo, wager_repo, game)
        if not result.success:
            await bot.send_message(message.chat.id, result.error_message)
            return
        await bot.send_message(
            message.chat.id,
            describe_history(result.wagers) + f"\nBalance: {format_money(result.balance)}",
        )

    @bot.message_handler(commands=["rank", "list"])
    async def handle_rank(message):
        accounts = await asyncio.to_thread(get_rankings, account_repo, 10)
        await bot.send_message(message.chat.id, describe_rankings(accounts))

    return bot
