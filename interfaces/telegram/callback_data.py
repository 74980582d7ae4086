from __future__ import annotations

from decimal import Decimal, InvalidOperation


def encode_parity_choice(choice: str, stake: Decimal) -> str:
    """
    Encode an "odd/even" button press.

    Format: parity:{choice}:{stake}
    """

    return f"parity:{choice}:{stake}"


def parse_parity_choice(data: str) -> tuple[str, Decimal]:
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != "parity" or parts[1] not in ("odd", "even"):
        raise ValueError(f"Invalid parity callback data: {data}")

    try:
        stake = Decimal(parts[2])
    except InvalidOperation as exc:
        raise ValueError(f"Invalid parity callback data: {data}") from exc
    return parts[1], stake


def encode_crash_stop(account_id: str) -> str:
    """
    Encode the cash-out button of a running game.

    Format: stop:{account_id}
    """

    return f"stop:{account_id}"


def parse_crash_stop(data: str) -> str:
    prefix, _, account_id = data.partition(":")
    if prefix != "stop" or not account_id:
        raise ValueError(f"Invalid stop callback data: {data}")
    return account_id


def encode_cancel_wager(wager_id: int) -> str:
    """Format: cancel:{wager_id}"""

    return f"cancel:{wager_id}"


def parse_cancel_wager(data: str) -> int:
    parts = data.split(":")
    if len(parts) != 2 or parts[0] != "cancel":
        raise ValueError(f"Invalid cancel callback data: {data}")
    return int(parts[1])
