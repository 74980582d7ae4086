import random
import threading
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from application.ledger import INSUFFICIENT_BALANCE
from application.services import (
    FAIL_LABEL,
    LEDGER_FAILURE,
    BetSlipSelection,
    cancel_pending_fixed_odds_wager,
    fail_rising_multiplier_game,
    get_balance,
    get_rankings,
    get_wager_history,
    list_open_matches,
    open_account,
    place_bet_slip,
    place_fixed_odds_wager,
    place_parity_wager,
    record_match_result,
    spin_roulette,
    start_match,
    start_rising_multiplier_game,
    stop_rising_multiplier_game,
    update_match_odds,
)
from application.settlement import settle_fixed_odds_match, settle_parity_wagers
from domain.models import GameKind, MatchStatus, WagerStatus
from domain.rounds import EVEN, ODD, parity_outcome_for
from infrastructure.catalog.match_catalog_memory import InMemoryMatchCatalog
from memory_repositories import InMemoryAccountRepository, InMemoryWagerRepository


ROUND_100 = datetime.fromtimestamp(3000, tz=timezone.utc)
ROUND_101 = datetime.fromtimestamp(3030, tz=timezone.utc)


class SlotPicker:
    """Stands in for an RNG and always lands on one paytable slot."""

    def __init__(self, index: int):
        self.index = index

    def choice(self, seq):
        return seq[self.index]


class ApplicationServicesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.account_repo = InMemoryAccountRepository()
        self.wager_repo = InMemoryWagerRepository()
        self.catalog = InMemoryMatchCatalog()
        open_account("telegram:12345", "John Doe", self.account_repo)

    def balance(self) -> Decimal:
        return self.account_repo.balance_of("telegram:12345")

    def test_open_account_starts_with_initial_balance_once(self):
        result = open_account("telegram:12345", "Someone Else", self.account_repo)
        self.assertTrue(result.success)
        self.assertEqual(result.balance, Decimal("100000.00"))
        self.assertEqual(len(self.account_repo.accounts), 1)
        self.assertEqual(self.account_repo.find_account("telegram:12345").display_name, "John Doe")

    def test_get_balance_for_unknown_account(self):
        result = get_balance("discord:1", self.account_repo, self.wager_repo)
        self.assertFalse(result.success)

    def test_parity_wager_is_settled_by_next_round_draw(self):
        winning = parity_outcome_for(101)
        result = place_parity_wager(
            "telegram:12345", winning, 1000, self.account_repo, self.wager_repo, now=ROUND_100
        )
        self.assertTrue(result.success)
        self.assertEqual(result.wager.round_index, 100)
        self.assertEqual(result.wager.status, WagerStatus.PENDING)
        self.assertEqual(result.balance, Decimal("99000.00"))

        report = settle_parity_wagers(self.account_repo, self.wager_repo, now=ROUND_101)

        self.assertEqual(report.won, [result.wager.id])
        self.assertEqual(self.balance(), Decimal("101000.00"))
        wager = self.wager_repo.get_wager(result.wager.id)
        self.assertEqual(wager.status, WagerStatus.WON)
        self.assertEqual(wager.result, winning)

    def test_losing_parity_wager_keeps_stake(self):
        losing = ODD if parity_outcome_for(101) == EVEN else EVEN
        result = place_parity_wager(
            "telegram:12345", losing, 1000, self.account_repo, self.wager_repo, now=ROUND_100
        )
        settle_parity_wagers(self.account_repo, self.wager_repo, now=ROUND_101)

        self.assertEqual(self.wager_repo.get_wager(result.wager.id).status, WagerStatus.LOST)
        self.assertEqual(self.balance(), Decimal("99000.00"))

    def test_parity_wager_rejects_bad_input(self):
        bad_choice = place_parity_wager("telegram:12345", "red", 10, self.account_repo, self.wager_repo)
        zero_stake = place_parity_wager("telegram:12345", ODD, 0, self.account_repo, self.wager_repo)
        self.assertFalse(bad_choice.success)
        self.assertFalse(zero_stake.success)
        self.assertEqual(self.wager_repo.wagers, {})
        self.assertEqual(self.balance(), Decimal("100000.00"))

    def test_insufficient_balance_leaves_nothing_behind(self):
        result = place_parity_wager(
            "telegram:12345", ODD, 200000, self.account_repo, self.wager_repo, now=ROUND_100
        )
        self.assertFalse(result.success)
        self.assertEqual(result.error_message, INSUFFICIENT_BALANCE)
        self.assertEqual(self.wager_repo.wagers, {})
        self.assertEqual(self.balance(), Decimal("100000.00"))

    def test_failed_wager_write_reverses_the_debit(self):
        self.wager_repo.fail_appends = True
        result = place_parity_wager(
            "telegram:12345", ODD, 500, self.account_repo, self.wager_repo, now=ROUND_100
        )
        self.assertFalse(result.success)
        self.assertEqual(result.error_message, LEDGER_FAILURE)
        self.assertEqual(self.balance(), Decimal("100000.00"))

    def test_balance_store_failure_is_reported_not_raised(self):
        self.account_repo.fail_writes = True
        result = start_rising_multiplier_game("telegram:12345", 100, self.account_repo)
        self.assertFalse(result.success)
        self.assertEqual(result.error_message, LEDGER_FAILURE)

    def test_roulette_win_applies_stake_and_payout(self):
        result = spin_roulette(
            "telegram:12345", 1000, self.account_repo, self.wager_repo, rng=SlotPicker(3)
        )
        self.assertTrue(result.success)
        self.assertTrue(result.is_win)
        self.assertEqual(result.label, "x3")
        self.assertEqual(result.payout, Decimal("3000.00"))
        self.assertEqual(result.balance, Decimal("102000.00"))
        self.assertEqual(result.wager.status, WagerStatus.WON)

    def test_roulette_miss_loses_stake(self):
        result = spin_roulette(
            "telegram:12345", 1000, self.account_repo, self.wager_repo, rng=SlotPicker(0)
        )
        self.assertTrue(result.success)
        self.assertFalse(result.is_win)
        self.assertEqual(result.balance, Decimal("99000.00"))
        self.assertEqual(result.wager.status, WagerStatus.LOST)

    def test_roulette_minimum_stake(self):
        result = spin_roulette("telegram:12345", 999, self.account_repo, self.wager_repo)
        self.assertFalse(result.success)
        self.assertEqual(self.wager_repo.wagers, {})
        self.assertEqual(self.balance(), Decimal("100000.00"))

    def test_roulette_conserves_money(self):
        rng = random.Random(7)
        for _ in range(20):
            spin_roulette("telegram:12345", 1000, self.account_repo, self.wager_repo, rng=rng)

        wagers = self.wager_repo.wagers.values()
        expected = Decimal("100000.00") - sum(w.stake for w in wagers) + sum(w.payout for w in wagers)
        self.assertEqual(self.balance(), expected)

    def test_rising_multiplier_stop_pays_locked_multiplier(self):
        start = start_rising_multiplier_game("telegram:12345", 5000, self.account_repo)
        self.assertTrue(start.success)
        self.assertEqual(start.balance, Decimal("95000.00"))

        result = stop_rising_multiplier_game(
            "telegram:12345", 5000, Decimal("2.50"), self.account_repo, self.wager_repo
        )
        self.assertTrue(result.success)
        self.assertEqual(result.wager.payout, Decimal("12500.00"))
        self.assertEqual(result.wager.result, "x2.50")
        self.assertEqual(result.wager.choice, "2.50")
        self.assertEqual(result.balance, Decimal("107500.00"))

    def test_rising_multiplier_rejects_out_of_range_multiplier(self):
        result = stop_rising_multiplier_game(
            "telegram:12345", 5000, Decimal("5.01"), self.account_repo, self.wager_repo
        )
        self.assertFalse(result.success)
        self.assertEqual(self.balance(), Decimal("100000.00"))

    def test_rising_multiplier_failure_records_lost_wager(self):
        start_rising_multiplier_game("telegram:12345", 5000, self.account_repo)
        result = fail_rising_multiplier_game("telegram:12345", 5000, self.wager_repo)

        self.assertTrue(result.success)
        self.assertEqual(result.wager.status, WagerStatus.LOST)
        self.assertEqual(result.wager.result, FAIL_LABEL)
        self.assertEqual(self.balance(), Decimal("95000.00"))

    def test_fixed_odds_wager_locks_odds_at_bet_time(self):
        result = place_fixed_odds_wager(
            "telegram:12345", "1", "home", 100, self.account_repo, self.wager_repo, self.catalog
        )
        self.assertTrue(result.success)
        self.assertEqual(result.wager.multiplier, Decimal("2.50"))
        self.assertEqual(result.wager.payout, Decimal("250.00"))

        self.catalog.update_odds("1", Decimal("1.10"), Decimal("3.00"), Decimal("9.00"))
        match = self.catalog.record_result("1", 2, 1)
        report = settle_fixed_odds_match(match, self.account_repo, self.wager_repo)

        self.assertEqual(report.won, [result.wager.id])
        self.assertEqual(report.credited, Decimal("250.00"))
        self.assertEqual(self.balance(), Decimal("100150.00"))

    def test_fixed_odds_wager_rejected_once_match_started(self):
        self.catalog.set_status("2", MatchStatus.LIVE)
        result = place_fixed_odds_wager(
            "telegram:12345", "2", "away", 100, self.account_repo, self.wager_repo, self.catalog
        )
        self.assertFalse(result.success)
        self.assertEqual(self.balance(), Decimal("100000.00"))

    def test_open_matches_exclude_finished_and_are_ordered_by_kickoff(self):
        self.catalog.set_status("2", MatchStatus.LIVE)
        self.catalog.record_result("3", 1, 1)

        matches = list_open_matches(self.catalog)
        ids = [m.id for m in matches]
        self.assertIn("2", ids)
        self.assertNotIn("3", ids)
        self.assertEqual(ids, [m.id for m in sorted(matches, key=lambda m: m.kickoff)])

    def test_unknown_match_and_side(self):
        unknown = place_fixed_odds_wager(
            "telegram:12345", "99", "home", 100, self.account_repo, self.wager_repo, self.catalog
        )
        bad_side = place_fixed_odds_wager(
            "telegram:12345", "1", "over", 100, self.account_repo, self.wager_repo, self.catalog
        )
        self.assertFalse(unknown.success)
        self.assertFalse(bad_side.success)

    def test_bet_slip_skips_empty_selections(self):
        results = place_bet_slip(
            "telegram:12345",
            [
                BetSlipSelection("1", "home", Decimal("100")),
                BetSlipSelection("2", "draw", Decimal("0")),
                BetSlipSelection("3", "away", Decimal("50")),
            ],
            self.account_repo,
            self.wager_repo,
            self.catalog,
        )
        self.assertEqual(len(results), 2)
        self.assertTrue(all(r.success for r in results))
        self.assertEqual(self.balance(), Decimal("99850.00"))

    def test_cancel_pending_wager_refunds_stake(self):
        placed = place_fixed_odds_wager(
            "telegram:12345", "1", "draw", 300, self.account_repo, self.wager_repo, self.catalog
        )
        result = cancel_pending_fixed_odds_wager(
            "telegram:12345", placed.wager.id, self.account_repo, self.wager_repo
        )
        self.assertTrue(result.success)
        self.assertEqual(result.balance, Decimal("100000.00"))
        self.assertIsNone(self.wager_repo.get_wager(placed.wager.id))

    def test_cancel_settled_or_foreign_wager_is_refused(self):
        open_account("telegram:67890", "Jane Smith", self.account_repo)
        placed = place_fixed_odds_wager(
            "telegram:12345", "1", "home", 300, self.account_repo, self.wager_repo, self.catalog
        )

        foreign = cancel_pending_fixed_odds_wager(
            "telegram:67890", placed.wager.id, self.account_repo, self.wager_repo
        )
        self.assertFalse(foreign.success)

        settle_fixed_odds_match(self.catalog.record_result("1", 0, 3), self.account_repo, self.wager_repo)
        settled = cancel_pending_fixed_odds_wager(
            "telegram:12345", placed.wager.id, self.account_repo, self.wager_repo
        )
        self.assertFalse(settled.success)
        self.assertEqual(self.balance(), Decimal("99700.00"))

    def test_history_is_newest_first_and_filterable(self):
        spin_roulette("telegram:12345", 1000, self.account_repo, self.wager_repo, rng=SlotPicker(1))
        start_rising_multiplier_game("telegram:12345", 100, self.account_repo)
        stop_rising_multiplier_game("telegram:12345", 100, "1.50", self.account_repo, self.wager_repo)

        history = get_wager_history("telegram:12345", self.account_repo, self.wager_repo)
        self.assertTrue(history.success)
        self.assertEqual(
            [w.game for w in history.wagers], [GameKind.RISING_MULTIPLIER, GameKind.ROULETTE]
        )

        roulette_only = get_wager_history(
            "telegram:12345", self.account_repo, self.wager_repo, GameKind.ROULETTE
        )
        self.assertEqual(len(roulette_only.wagers), 1)

    def test_rankings_order_by_balance(self):
        open_account("discord:1", "Rich", self.account_repo)
        open_account("discord:2", "Poor", self.account_repo)
        spin_roulette("discord:1", 1000, self.account_repo, self.wager_repo, rng=SlotPicker(7))
        spin_roulette("discord:2", 1000, self.account_repo, self.wager_repo, rng=SlotPicker(0))

        ranked = get_rankings(self.account_repo)
        self.assertEqual([a.id for a in ranked], ["discord:1", "telegram:12345", "discord:2"])
        self.assertEqual(len(get_rankings(self.account_repo, limit=1)), 1)

    def test_non_finite_multiplier_is_rejected(self):
        for multiplier in (float("nan"), float("inf"), "NaN", "-Infinity"):
            result = stop_rising_multiplier_game(
                "telegram:12345", 5000, multiplier, self.account_repo, self.wager_repo
            )
            self.assertFalse(result.success)
        self.assertEqual(self.wager_repo.wagers, {})
        self.assertEqual(self.balance(), Decimal("100000.00"))

    def test_parallel_debits_on_one_account_never_overspend(self):
        account = self.account_repo.find_account("telegram:12345")
        account.balance = Decimal("1000.00")
        self.account_repo.save_account(account)

        barrier = threading.Barrier(20)
        results = []

        def place():
            barrier.wait()
            results.append(
                place_parity_wager(
                    "telegram:12345", ODD, 100, self.account_repo, self.wager_repo, now=ROUND_100
                )
            )

        threads = [threading.Thread(target=place) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        successes = [r for r in results if r.success]
        self.assertEqual(len(successes), 10)
        self.assertTrue(all(r.error_message == INSUFFICIENT_BALANCE for r in results if not r.success))
        self.assertEqual(len(self.wager_repo.wagers), 10)
        self.assertEqual(self.balance(), Decimal("0.00"))

    def test_failed_refund_restores_the_wager_under_a_new_id(self):
        placed = place_fixed_odds_wager(
            "telegram:12345", "1", "draw", 300, self.account_repo, self.wager_repo, self.catalog
        )
        self.account_repo.fail_writes = True

        result = cancel_pending_fixed_odds_wager(
            "telegram:12345", placed.wager.id, self.account_repo, self.wager_repo
        )

        self.assertFalse(result.success)
        self.assertNotEqual(result.wager.id, placed.wager.id)
        self.assertIn(f"#{result.wager.id}", result.error_message)
        self.assertTrue(self.wager_repo.get_wager(result.wager.id).is_pending)
        self.assertEqual(self.balance(), Decimal("99700.00"))

    def test_lost_wager_after_failed_refund_is_logged(self):
        placed = place_fixed_odds_wager(
            "telegram:12345", "1", "draw", 300, self.account_repo, self.wager_repo, self.catalog
        )
        self.account_repo.fail_writes = True
        self.wager_repo.fail_appends = True

        with self.assertLogs("application.services", level="CRITICAL") as logs:
            result = cancel_pending_fixed_odds_wager(
                "telegram:12345", placed.wager.id, self.account_repo, self.wager_repo
            )

        self.assertFalse(result.success)
        self.assertEqual(result.error_message, LEDGER_FAILURE)
        self.assertIn(str(placed.wager.id), logs.output[0])


class MatchFeedTests(unittest.TestCase):
    def setUp(self) -> None:
        self.account_repo = InMemoryAccountRepository()
        self.wager_repo = InMemoryWagerRepository()
        self.catalog = InMemoryMatchCatalog()
        open_account("discord:9", "Punter", self.account_repo)

    def test_recording_a_result_settles_the_match(self):
        home = place_fixed_odds_wager(
            "discord:9", "2", "home", 1000, self.account_repo, self.wager_repo, self.catalog
        ).wager
        away = place_fixed_odds_wager(
            "discord:9", "2", "away", 1000, self.account_repo, self.wager_repo, self.catalog
        ).wager

        self.assertTrue(start_match("2", self.catalog).success)
        result = record_match_result("2", "3", "0", self.catalog, self.account_repo, self.wager_repo)

        self.assertTrue(result.success)
        self.assertEqual(result.match.status, MatchStatus.FINISHED)
        self.assertEqual(result.report.won, [home.id])
        self.assertEqual(result.report.lost, [away.id])
        # 100000 - 2000 staked + 1000 * 1.95
        self.assertEqual(self.account_repo.balance_of("discord:9"), Decimal("99950.00"))

    def test_repeating_a_result_pays_nothing_twice(self):
        place_fixed_odds_wager("discord:9", "2", "draw", 100, self.account_repo, self.wager_repo, self.catalog)
        record_match_result("2", 1, 1, self.catalog, self.account_repo, self.wager_repo)
        again = record_match_result("2", 1, 1, self.catalog, self.account_repo, self.wager_repo)

        self.assertTrue(again.success)
        self.assertEqual(again.report.settled, 0)
        self.assertEqual(self.account_repo.balance_of("discord:9"), Decimal("100230.00"))

    def test_conflicting_or_invalid_result_is_refused(self):
        record_match_result("2", 1, 0, self.catalog, self.account_repo, self.wager_repo)

        self.assertFalse(record_match_result("2", 0, 1, self.catalog, self.account_repo, self.wager_repo).success)
        self.assertFalse(record_match_result("3", "x", 1, self.catalog, self.account_repo, self.wager_repo).success)
        self.assertFalse(record_match_result("3", -1, 1, self.catalog, self.account_repo, self.wager_repo).success)
        self.assertFalse(record_match_result("99", 1, 1, self.catalog, self.account_repo, self.wager_repo).success)

    def test_odds_change_only_while_upcoming(self):
        result = update_match_odds("4", "1.60", "4.00", "5.25", self.catalog)
        self.assertTrue(result.success)
        self.assertEqual(self.catalog.get_match("4").away_odds, Decimal("5.25"))

        self.assertFalse(update_match_odds("4", "1.00", "4.00", "5.25", self.catalog).success)
        self.assertFalse(update_match_odds("4", "nan", "4.00", "5.25", self.catalog).success)

        start_match("4", self.catalog)
        self.assertFalse(update_match_odds("4", "1.60", "4.00", "5.25", self.catalog).success)
        self.assertFalse(start_match("4", self.catalog).success)


if __name__ == "__main__":
    unittest.main()
