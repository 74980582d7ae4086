from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional

import psycopg2

from domain.models import Account, to_money
from domain.repositories import AccountRepository, LedgerError


class PostgresAccountRepository(AccountRepository):
    """
    Postgres-backed implementation of `AccountRepository`.

    Balances live in a NUMERIC(18, 2) column, which psycopg2 hands back as
    `Decimal`, so the compare-and-set is an exact comparison.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._ensure_table()

    def _get_connection(self):
        return psycopg2.connect(self._dsn)

    @contextmanager
    def _cursor(self) -> Iterator["psycopg2.extensions.cursor"]:
        try:
            conn = self._get_connection()
            try:
                with conn:
                    with conn.cursor() as cur:
                        yield cur
            finally:
                conn.close()
        except psycopg2.Error as exc:
            raise LedgerError(str(exc)) from exc

    def _ensure_table(self) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    balance NUMERIC(18, 2) NOT NULL CHECK (balance >= 0),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _to_domain(row: tuple) -> Account:
        return Account(
            id=str(row[0]).strip(),
            display_name=row[1],
            balance=to_money(row[2]),
            created_at=row[3],
        )

    def find_account(self, account_id: str) -> Optional[Account]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, display_name, balance, created_at FROM accounts WHERE id = %s",
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
                INSERT INTO accounts (id, display_name, balance, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (account.id, account.display_name, to_money(account.balance), account.created_at),
            )

    def save_account(self, account: Account) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE accounts SET display_name = %s, balance = %s WHERE id = %s",
                (account.display_name, to_money(account.balance), account.id),
            )

    def compare_and_set_balance(self, account_id: str, expected: Decimal, new: Decimal) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE accounts SET balance = %s WHERE id = %s AND balance = %s",
                (to_money(new), account_id, to_money(expected)),
            )
            return cur.rowcount == 1

    def list_accounts(self) -> List[Account]:
        with self._cursor() as cur:
            cur.execute("SELECT id, display_name, balance, created_at FROM accounts")
            return [self._to_domain(row) for row in cur.fetchall()]
