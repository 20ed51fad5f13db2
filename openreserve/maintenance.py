"""Housekeeping jobs run by the scheduler and the CLI."""

from __future__ import annotations

import logging

from .database import engine
from .tickets import purge_ticket_files

# Use uvicorn's error logger so maintenance messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def run_ticket_cleanup() -> int:
    """Remove expired ticket PDFs and report how many were deleted."""
    removed = purge_ticket_files()
    if removed:
        logger.info("Ticket cleanup removed %d expired file(s)", removed)
    else:
        logger.debug("Ticket cleanup found nothing to remove")
    return removed


def vacuum_database() -> bool:
    if engine.dialect.name != "sqlite":
        logger.debug("Skipping VACUUM on %s", engine.dialect.name)
        return False
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
    logger.info("SQLite VACUUM completed")
    return True
