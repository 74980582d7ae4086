import random
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from domain.rounds import (
    EVEN,
    MISS,
    ODD,
    ROULETTE_PAYTABLE,
    current_round_index,
    multiplier_at,
    parity_outcome_for,
    quantize_multiplier,
    spin_roulette_slot,
    time_until_next_round,
)


class RoundClockTests(unittest.TestCase):
    def test_round_index_from_epoch_seconds(self):
        self.assertEqual(current_round_index(0), 0)
        self.assertEqual(current_round_index(29.9), 0)
        self.assertEqual(current_round_index(30), 1)
        self.assertEqual(current_round_index(datetime.fromtimestamp(3000, tz=timezone.utc)), 100)

    def test_time_until_next_round_stays_in_range(self):
        self.assertEqual(time_until_next_round(3000), 30)
        self.assertEqual(time_until_next_round(3001), 29)
        self.assertEqual(time_until_next_round(3029), 1)
        self.assertEqual(time_until_next_round(3029.99), 1)
        for second in range(0, 120):
            self.assertTrue(1 <= time_until_next_round(second) <= 30)

    def test_parity_outcome_is_pure(self):
        for round_index in (0, 1, 100, 56_789_123):
            first = parity_outcome_for(round_index)
            self.assertIn(first, (ODD, EVEN))
            self.assertEqual(first, parity_outcome_for(round_index))

    def test_parity_outcome_matches_seeded_draw(self):
        expected = ODD if random.Random(101).random() < 0.5 else EVEN
        self.assertEqual(parity_outcome_for(101), expected)

    def test_parity_outcome_ignores_global_random_state(self):
        random.seed(1)
        first = [parity_outcome_for(r) for r in range(10)]
        random.seed(2)
        self.assertEqual(first, [parity_outcome_for(r) for r in range(10)])


class MultiplierCurveTests(unittest.TestCase):
    def test_endpoints(self):
        self.assertEqual(multiplier_at(0), 1.0)
        self.assertAlmostEqual(multiplier_at(70), 5.0)
        self.assertAlmostEqual(multiplier_at(500), 5.0)
        self.assertEqual(multiplier_at(-3), 1.0)

    def test_non_decreasing(self):
        samples = [multiplier_at(t / 10) for t in range(0, 800)]
        self.assertEqual(samples, sorted(samples))

    def test_quantize_truncates_and_clamps(self):
        self.assertEqual(quantize_multiplier(2.509), Decimal("2.50"))
        self.assertEqual(quantize_multiplier(0.5), Decimal("1.00"))
        self.assertEqual(quantize_multiplier(7.0), Decimal("5.00"))
        self.assertEqual(quantize_multiplier(multiplier_at(70)), Decimal("5.00"))


class RouletteTests(unittest.TestCase):
    def test_paytable_layout(self):
        self.assertEqual(
            [slot.label for slot in ROULETTE_PAYTABLE],
            [MISS, "x2", MISS, "x3", MISS, "x4", MISS, "x5"],
        )
        self.assertEqual(sum(1 for slot in ROULETTE_PAYTABLE if slot.is_win), 4)

    def test_spin_uses_given_rng(self):
        first = [spin_roulette_slot(random.Random(42)) for _ in range(3)]
        self.assertEqual(len(set(first)), 1)
        self.assertIn(first[0], ROULETTE_PAYTABLE)


if __name__ == "__main__":
    unittest.main()
