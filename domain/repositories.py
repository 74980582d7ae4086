from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Protocol

from .models import Account, GameKind, Match, MatchStatus, Wager, WagerStatus


class LedgerError(Exception):
    """
    Raised by a ledger store when a read or write could not be completed.

    Stores translate their driver's exceptions into this type so that the
    application layer can recover from them without knowing the backend.
    """


class AccountRepository(Protocol):
    """
    Abstraction over the per-account balance cell.

    Implementations are responsible for:
    - Mapping between database rows and the `Account` domain model.
    - Making `compare_and_set_balance` atomic with respect to the stored
      row, so that two writers can never both succeed from the same
      starting balance.
    """

    def find_account(self, account_id: str) -> Optional[Account]:
        """Return the account with the given ID, or None if not found."""

        ...

    def add_account(self, account: Account) -> None:
        """Persist a new account. Existing accounts are left untouched."""

        ...

    def save_account(self, account: Account) -> None:
        """Overwrite the stored account (display name and balance)."""

        ...

    def compare_and_set_balance(
        self,
        account_id: str,
        expected: Decimal,
        new: Decimal,
    ) -> bool:
        """
        Set the balance to `new` only if it currently equals `expected`.

        Returns False when the stored balance changed in the meantime (or the
        account does not exist); the caller re-reads and retries.
        """

        ...

    def list_accounts(self) -> List[Account]:
        """Return all accounts currently known to the system."""

        ...


class WagerRepository(Protocol):
    """
    Durable bet records.

    `mark_settled` is the only way a wager leaves the Pending state and
    must be conditional on the stored status, which is what makes
    settlement safe to run from several places at once.
    """

    def append_wager(self, wager: Wager) -> Wager:
        """Persist a new wager and return it with its `id` assigned."""

        ...

    def update_wager(self, wager: Wager) -> None:
        """Write back the status and result of an existing wager."""

        ...

    def mark_settled(
        self,
        wager_id: int,
        status: WagerStatus,
        result: str,
        expected: WagerStatus = WagerStatus.PENDING,
    ) -> bool:
        """
        Move a wager from `expected` to `status`.

        Returns True only for the caller whose update actually changed the
        row.
        """

        ...

    def get_wager(self, wager_id: int) -> Optional[Wager]:
        ...

    def delete_pending_wager(self, wager_id: int) -> bool:
        """Delete the wager if it is still Pending. Returns True if deleted."""

        ...

    def list_pending_wagers(self, game: GameKind) -> List[Wager]:
        ...

    def list_wagers_for_account(self, account_id: str, game: Optional[GameKind] = None) -> List[Wager]:
        """Return the account's wagers, newest first, optionally for one game."""

        ...


class MatchCatalog(Protocol):
    """Read-only access to the sports fixtures and their odds."""

    def get_match(self, match_id: str) -> Optional[Match]:
        ...

    def list_matches(self) -> List[Match]:
        ...


class MatchFeed(MatchCatalog, Protocol):
    """
    The writing side of the catalog, driven by whoever runs the book.

    Each call replaces the stored match and returns the new version.
    """

    def update_odds(self, match_id: str, home: Decimal, draw: Decimal, away: Decimal) -> Match:
        ...

    def set_status(self, match_id: str, status: MatchStatus) -> Match:
        ...

    def record_result(self, match_id: str, home_score: int, away_score: int) -> Match:
        ...
