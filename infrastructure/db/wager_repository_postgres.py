from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, List, Optional

import psycopg2

from domain.models import GameKind, Wager, WagerStatus
from domain.repositories import LedgerError, WagerRepository


_COLUMNS = (
    "id, account_id, game, choice, stake, multiplier, payout, "
    "status, result, placed_at, round_index, match_id"
)


class PostgresWagerRepository(WagerRepository):
    """Postgres-backed implementation of `WagerRepository`."""

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
                CREATE TABLE IF NOT EXISTS wagers (
                    id BIGSERIAL PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    game TEXT NOT NULL,
                    choice TEXT NOT NULL,
                    stake NUMERIC(18, 2) NOT NULL,
                    multiplier NUMERIC(8, 2) NOT NULL,
                    payout NUMERIC(18, 2) NOT NULL,
                    status TEXT NOT NULL,
                    result TEXT NOT NULL DEFAULT '',
                    placed_at TIMESTAMPTZ NOT NULL,
                    round_index BIGINT,
                    match_id TEXT
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS wagers_by_game_status ON wagers (game, status)"
            )

    @staticmethod
    def _to_domain(row: tuple) -> Wager:
        return Wager(
            id=int(row[0]),
            account_id=row[1],
            game=GameKind(row[2]),
            choice=row[3],
            stake=row[4],
            multiplier=row[5],
            payout=row[6],
            status=WagerStatus(row[7]),
            result=row[8],
            placed_at=row[9],
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
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    wager.account_id,
                    wager.game.value,
                    wager.choice,
                    wager.stake,
                    wager.multiplier,
                    wager.payout,
                    wager.status.value,
                    wager.result,
                    wager.placed_at,
                    wager.round_index,
                    wager.match_id,
                ),
            )
            return replace(wager, id=cur.fetchone()[0])

    def update_wager(self, wager: Wager) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE wagers SET status = %s, result = %s WHERE id = %s",
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
                "UPDATE wagers SET status = %s, result = %s WHERE id = %s AND status = %s",
                (status.value, result, wager_id, expected.value),
            )
            return cur.rowcount == 1

    def get_wager(self, wager_id: int) -> Optional[Wager]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_COLUMNS} FROM wagers WHERE id = %s", (wager_id,))
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def delete_pending_wager(self, wager_id: int) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM wagers WHERE id = %s AND status = %s",
                (wager_id, WagerStatus.PENDING.value),
            )
            return cur.rowcount == 1

    def list_pending_wagers(self, game: GameKind) -> List[Wager]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM wagers WHERE game = %s AND status = %s ORDER BY id",
                (game.value, WagerStatus.PENDING.value),
            )
            return [self._to_domain(row) for row in cur.fetchall()]

    def list_wagers_for_account(self, account_id: str, game: Optional[GameKind] = None) -> List[Wager]:
        query = f"SELECT {_COLUMNS} FROM wagers WHERE account_id = %s"
        params: list = [account_id]
        if game is not None:
            query += " AND game = %s"
            params.append(game.value)
        query += " ORDER BY placed_at DESC, id DESC"

        with self._cursor() as cur:
            cur.execute(query, params)
            return [self._to_domain(row) for row in cur.fetchall()]
