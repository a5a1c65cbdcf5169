"""Logging bootstrap shared by the API process and the worker entry point."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )
    # SQL echo is controlled by db_echo_sql, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
