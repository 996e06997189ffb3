# -*- coding: utf-8 -*-
"""Rotating file log under DATA_ROOT/logs, shared by the API and the CLI."""
from __future__ import annotations
import logging, logging.handlers
from pathlib import Path

LOG_FILENAME = "fulfillment_hub.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
MAX_BYTES = 5_000_000
BACKUP_COUNT = 3

# loggers that do not propagate to root under uvicorn's own config
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")


def _writes_to(logger: logging.Logger, log_path: Path) -> bool:
    return any(
        isinstance(h, logging.handlers.RotatingFileHandler) and Path(h.baseFilename).resolve() == log_path
        for h in logger.handlers
    )


def setup_logging(settings) -> Path:
    """Attach the fulfillment log file to root and the server loggers; safe to call twice."""
    log_path = (Path(settings.DATA_ROOT).expanduser() / "logs" / LOG_FILENAME).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8", delay=True,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(logging.INFO)

    for logger in [logging.getLogger()] + [logging.getLogger(name) for name in SERVER_LOGGERS]:
        logger.setLevel(logging.INFO)
        if not _writes_to(logger, log_path):
            logger.addHandler(handler)

    # SQL statements only when DB_ECHO asks for them
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if getattr(settings, "DB_ECHO", False) else logging.WARNING
    )
    return log_path
