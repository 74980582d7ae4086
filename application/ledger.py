from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Tuple

from domain.models import to_money
from domain.repositories import AccountRepository


logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 25

ACCOUNT_NOT_FOUND = "Account not found."
INSUFFICIENT_BALANCE = "Insufficient balance."
BALANCE_BUSY = "Balance is being updated, please try again."


def apply_delta(
    account_repo: AccountRepository,
    account_id: str,
    delta: Decimal,
    required: Optional[Decimal] = None,
) -> Tuple[Optional[Decimal], Optional[str]]:
    """
    Add `delta` to an account's stored balance.

    Every attempt re-reads the authoritative balance and writes it back
    with a compare-and-set, so concurrent writers serialise on the row.
    The account must hold at least `required` (by default the amount being
    taken) before the change.

    Returns `(new_balance, None)` on success or `(None, error_message)` on
    rejection. Store failures propagate as `LedgerError`.
    """

    delta = to_money(delta)
    if required is None:
        required = max(-delta, Decimal("0"))

    for attempt in range(MAX_CAS_ATTEMPTS):
        account = account_repo.find_account(account_id)
        if account is None:
            return None, ACCOUNT_NOT_FOUND
        if account.balance < required:
            return None, INSUFFICIENT_BALANCE

        new_balance = to_money(account.balance + delta)
        if account_repo.compare_and_set_balance(account_id, account.balance, new_balance):
            return new_balance, None

        logger.debug(
            "Balance of %s changed underneath us (attempt %d), retrying",
            account_id,
            attempt + 1,
        )

    logger.warning("Gave up adjusting balance of %s by %s", account_id, delta)
    return None, BALANCE_BUSY


def reverse_delta(account_repo: AccountRepository, account_id: str, delta: Decimal) -> None:
    """
    Undo a previously applied `delta` after a later step failed.

    The reversal may take the balance below what a normal debit would
    allow, so no funds check is made.
    """

    _, error = apply_delta(account_repo, account_id, -to_money(delta), required=Decimal("-Infinity"))
    if error:
        logger.error("Could not reverse %s on %s: %s", delta, account_id, error)
