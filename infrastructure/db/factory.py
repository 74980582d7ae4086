from __future__ import annotations

import logging
from typing import Optional, Tuple

from domain.repositories import AccountRepository, WagerRepository

from .account_repository_postgres import PostgresAccountRepository
from .account_repository_sqlite import SqliteAccountRepository
from .wager_repository_postgres import PostgresWagerRepository
from .wager_repository_sqlite import SqliteWagerRepository


logger = logging.getLogger(__name__)


def create_repositories(
    database_url: Optional[str],
    db_path: str,
) -> Tuple[AccountRepository, WagerRepository]:
    """Postgres when a DATABASE_URL is configured, otherwise a local SQLite file."""

    if database_url:
        logger.info("Using Postgres ledger store")
        return PostgresAccountRepository(database_url), PostgresWagerRepository(database_url)

    logger.info("Using SQLite ledger store at %s", db_path)
    return SqliteAccountRepository(db_path), SqliteWagerRepository(db_path)
