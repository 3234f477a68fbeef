# backend/app/maintenance.py
"""
Periodic cleanup: expired sessions, expired shares, old audit records.

Run from cron or a scheduler:  python -m backend.app.maintenance
"""
import asyncio
import logging
from dataclasses import dataclass

from backend.app.core.cache import build_cache
from backend.app.core.config import get_settings
from backend.app.core.logging_config import configure_logging
from backend.app.db.session import Database, create_engine_from_settings
from backend.app.services import Services, build_services
from backend.app.storage.blob_store import LocalBlobStore

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    sessions_removed: int
    shares_removed: int
    audit_records_removed: int


async def run_maintenance(services: Services) -> MaintenanceReport:
    report = MaintenanceReport(
        sessions_removed=await services.auth.cleanup_expired_sessions(),
        shares_removed=await services.shares.cleanup_expired(),
        audit_records_removed=await services.audit.cleanup(services.settings.AUDIT_RETENTION_DAYS),
    )
    logger.info(f"Maintenance finished: {report}")
    return report


async def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    database = Database(create_engine_from_settings(settings))
    cache = build_cache(settings)
    try:
        services = build_services(settings, database, cache, LocalBlobStore(settings.BLOB_STORAGE_ROOT))
        await run_maintenance(services)
    finally:
        await cache.close()
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
