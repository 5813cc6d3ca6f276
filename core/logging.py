"""
Logging configuration

Every record carries the id of the API request that produced it (or "-" for
scripts and background work), so a validation or build run can be followed
through the cube modules from a single request id.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Optional
from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(request_id)s | %(name)s | %(message)s"

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# Generated SQL is logged by the cube modules at DEBUG
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "asyncpg")


class RequestIdFilter(logging.Filter):
    """Copy the current request id onto the record"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def setup_logging(level: Optional[str] = None):
    """Configure the root logger; ``level`` overrides LOG_LEVEL"""
    level_name = (level or settings.LOG_LEVEL).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler],
        force=True
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured at {level_name} level")
