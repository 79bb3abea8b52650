from __future__ import annotations

import asyncio
import logging

from rewards.config import settings
from rewards.db.session import dispose_database, ping_database
from rewards.logging_setup import configure_logging

logger = logging.getLogger(__name__)


async def check() -> int:
    try:
        version = await ping_database()
    except Exception:
        logger.exception("Database health check failed")
        return 1
    finally:
        await dispose_database()
    logger.info("Database reachable (PostgreSQL %s)", version)
    return 0


def main() -> None:
    configure_logging(settings.log_level)
    raise SystemExit(asyncio.run(check()))


if __name__ == "__main__":
    main()
