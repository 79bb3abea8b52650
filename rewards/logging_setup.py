from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_NOISY_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "asyncio")


def configure_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.strip().upper() or "INFO")
    if not isinstance(resolved, int):
        resolved = logging.INFO

    logging.basicConfig(level=resolved, format=LOG_FORMAT, force=True)

    quiet_level = resolved if resolved <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
