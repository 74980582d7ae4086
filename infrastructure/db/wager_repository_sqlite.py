from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional

from domain.models import GameKind, Wager, WagerStatus
from domain.repositories import LedgerError, WagerRepository


_COLUMNS = (
    "id, account_id, game, choice, stake, multiplier, payout, "
    "status, result, placed_at, round_index, match_id"
)


class SqliteWagerRepository(WagerRepository):
    """
    SQLite-backed implementation of `WagerRepository`.

    Owns the `wagers` table. Status changes go through conditional
    updates so that only one settler can move a row out of Pending.
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
                CREATE TABLE IF NOT EXISTS wagers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    game TEXT NOT NULL,
                    choice TEXT NOT NULL,
                    stake TEXT NOT NULL,
                    multiplier TEXT NOT NULL,
                    payout TEXT NOT NULL,
                    status TEXT NOT NULL,
                    result TEXT NOT NULL DEFAULT '',
                    placed_at TEXT NOT NULL,
                    round_index INTEGER,
                    match_id TEXT
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS wagers_by_game_status ON wagers (game, status)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS wagers_by_account ON wagers (account_id, placed_at)"
            )

    @staticmethod
    def _to_domain(row: tuple) -> Wager:
        return Wager(
            id=int(row[0]),
            account_id=row[1],
            game=GameKind(row[2]),
            choice=row[3],
            stake=Decimal(row[4]),
            multiplier=Decimal(row[5]),
            payout=Decimal(row[6]),
            status=WagerStatus(row[7]),
            result=row[8],
            placed_at=datetime.fromisoformat(row[9]),
            round_index=row[10],
            match_id=row[11],
        )

    def append_wager(self, wager: Wager) -> Wager:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO wagers (
                    account_id, game, choice, stake, multiplier, payout,
                    status, result, placed_at, round_index, match_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    wager.account_id,
                    wager.game.value,
                    wager.choice,
                    str(wager.stake),
                    str(wager.multiplier),
                    str(wager.payout),
                    wager.status.value,
                    wager.result,
                    wager.placed_at.isoformat(),
                    wager.round_index,
                    wager.match_id,
                ),
            )
            return replace(wager, id=cur.lastrowid)

    def update_wager(self, wager: Wager) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE wagers SET status = ?, result = ? WHERE id = ?",
                (wager.status.value, wager.result, wager.id),
            )

    def mark_settled(
        self,
        wager_id: int,
        status: WagerStatus,
        result: str,
        expected: WagerStatus = WagerStatus.PENDING,
    ) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE wagers SET status = ?, result = ? WHERE id = ? AND status = ?",
                (status.value, result, wager_id, expected.value),
            )
            return cur.rowcount == 1

    def get_wager(self, wager_id: int) -> Optional[Wager]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_COLUMNS} FROM wagers WHERE id = ?", (wager_id,))
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def delete_pending_wager(self, wager_id: int) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM wagers WHERE id = ? AND status = ?",
                (wager_id, WagerStatus.PENDING.value),
            )
            return cur.rowcount == 1

    def list_pending_wagers(self, game: GameKind) -> List[Wager]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM wagers WHERE game = ? AND status = ? ORDER BY id",
                (game.value, WagerStatus.PENDING.value),
            )
            return [self._to_domain(row) for row in cur.fetchall()]

    def list_wagers_for_account(self, account_id: str, game: Optional[GameKind] = None) -> List[Wager]:
        query = f"SELECT {_COLUMNS} FROM wagers WHERE account_id = ?"
        params: list = [account_id]
        if game is not None:
            query += " AND game = ?"
            params.append(game.value)
        query += " ORDER BY placed_at DESC, id DESC"

        with self._cursor() as cur:
            cur.execute(query, params)
            return [self._to_domain(row) for row in cur.fetchall()]
