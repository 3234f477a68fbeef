import argparse
import asyncio
import logging
import sys

from backend.app.core.config import get_settings
from backend.app.core.logging_config import configure_logging
from backend.app.db.base import Base
from backend.app.db.session import Database, create_engine_from_settings

logger = logging.getLogger(__name__)


async def init_models(drop: bool = False) -> None:
    settings = get_settings()
    configure_logging(settings)
    database = Database(create_engine_from_settings(settings))
    try:
        if drop:
            # DEV MODE ONLY: wipes every table
            from backend.app import models  # noqa: F401
            async with database.engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
            logger.warning("Dropped all tables")
        await database.create_all()
        logger.info("Tables created")
    finally:
        await database.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the CrypticStorage database schema")
    parser.add_argument("--drop", action="store_true", help="drop existing tables first (development only)")
    args = parser.parse_args()

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    asyncio.run(init_models(drop=args.drop))
