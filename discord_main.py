import asyncio
import logging
import os

from dotenv import load_dotenv

from application.sessions import GameSessionRegistry
from application.settlement import SettlementSweeper
from infrastructure.catalog.match_catalog_memory import InMemoryMatchCatalog
from infrastructure.db.factory import create_repositories
from interfaces.discord.handlers import create_discord_bot


load_dotenv()

DISCORD_TOKEN = os.environ.get("DISCORD_TOKEN")
DB_PATH = os.environ.get("DB_PATH", "wagers.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
SWEEP_INTERVAL = float(os.environ.get("SWEEP_INTERVAL", "1.0"))
# Provider-prefixed account IDs allowed to run the book, e.g. "telegram:123,discord:456".
ADMIN_IDS = frozenset(i.strip() for i in os.environ.get("ADMIN_IDS", "").split(",") if i.strip())


async def run_bot() -> None:
    account_repo, wager_repo = create_repositories(DATABASE_URL, DB_PATH)
    match_catalog = InMemoryMatchCatalog()
    sessions = GameSessionRegistry(account_repo, wager_repo)
    sweeper = SettlementSweeper(account_repo, wager_repo, interval=SWEEP_INTERVAL)

    bot = create_discord_bot(account_repo, wager_repo, match_catalog, sessions, ADMIN_IDS)
    sweeper.start()
    sessions.start()
    try:
        async with bot:
            await bot.start(DISCORD_TOKEN)
    finally:
        await sessions.close()
        await sweeper.stop()


def main() -> None:
    if not DISCORD_TOKEN:
        raise RuntimeError("DISCORD_TOKEN environment variable is not set.")

    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_bot())


if __name__ == "__main__":
    main()
