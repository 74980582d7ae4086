import unittest
from decimal import Decimal

from interfaces.telegram.callback_data import (
    encode_cancel_wager,
    encode_crash_stop,
    encode_parity_choice,
    parse_cancel_wager,
    parse_crash_stop,
    parse_parity_choice,
)


class CallbackDataTests(unittest.TestCase):
    def test_parity_choice(self):
        data = encode_parity_choice("odd", Decimal("150.50"))
        self.assertEqual(data, "parity:odd:150.50")
        self.assertEqual(parse_parity_choice(data), ("odd", Decimal("150.50")))

    def test_parity_choice_rejects_garbage(self):
        for data in ("parity:red:10", "parity:odd", "parity:even:lots", "stop:odd:10"):
            with self.assertRaises(ValueError):
                parse_parity_choice(data)

    def test_crash_stop_keeps_provider_prefix(self):
        data = encode_crash_stop("telegram:42")
        self.assertEqual(parse_crash_stop(data), "telegram:42")
        with self.assertRaises(ValueError):
            parse_crash_stop("stop:")

    def test_cancel_wager(self):
        self.assertEqual(parse_cancel_wager(encode_cancel_wager(17)), 17)
        with self.assertRaises(ValueError):
            parse_cancel_wager("cancel:abc")
        with self.assertRaises(ValueError):
            parse_cancel_wager("cancel")


if __name__ == "__main__":
    unittest.main()
