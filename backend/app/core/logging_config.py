# backend/app/core/logging_config.py
import logging

from backend.app.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging once at process start."""
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=LOG_FORMAT)

    # SQL echo goes through the engine logger, keep it quiet unless asked
    if not settings.DATABASE_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
