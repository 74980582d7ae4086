from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional

from domain.models import Account, to_money
from domain.repositories import AccountRepository, LedgerError


class SqliteAccountRepository(AccountRepository):
    """
    SQLite-backed implementation of `AccountRepository`.

    Owns the `accounts` table. Balances are stored as two-place decimal
    strings, which keeps them exact and lets the compare-and-set compare
    the stored text directly. The table is created if needed.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=10)

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._get_connection()
            try:
                with conn:
                    yield conn.cursor()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise LedgerError(str(exc)) from exc

    def _ensure_table(self) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    balance TEXT NOT NULL CHECK (CAST(balance AS REAL) >= 0),
                    created_at TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _to_domain(row: tuple) -> Account:
        return Account(
            id=str(row[0]),
            display_name=row[1],
            balance=Decimal(row[2]),
            created_at=datetime.fromisoformat(row[3]),
        )

    def find_account(self, account_id: str) -> Optional[Account]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, display_name, balance, created_at FROM accounts WHERE id = ?",
                (account_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def add_account(self, account: Account) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT OR IGNORE INTO accounts (id, display_name, balance, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.display_name,
                    str(to_money(account.balance)),
                    account.created_at.isoformat(),
                ),
            )

    def save_account(self, account: Account) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE accounts SET display_name = ?, balance = ? WHERE id = ?",
                (account.display_name, str(to_money(account.balance)), account.id),
            )

    def compare_and_set_balance(self, account_id: str, expected: Decimal, new: Decimal) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE accounts SET balance = ? WHERE id = ? AND balance = ?",
                (str(to_money(new)), account_id, str(to_money(expected))),
            )
            return cur.rowcount == 1

    def list_accounts(self) -> List[Account]:
        with self._cursor() as cur:
            cur.execute("SELECT id, display_name, balance, created_at FROM accounts")
            return [self._to_domain(row) for row in cur.fetchall()]
