"""Logging setup for labbook.

Every module logs through ``logging.getLogger(__name__)`` under the
``labbook`` namespace. ``setup_labbook_logging`` adds a dated file handler
to that namespace so background sync activity leaves a trail even when no
console is attached.
"""

import logging
from datetime import date
from typing import Any, Optional

from labbook.utils import get_labbook_home

LOGGER_NAME = "labbook"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_labbook_logging(user_id: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Configure the ``labbook`` logger with a file handler.

    Logs go to ``<home>/logs/local-YYYY-MM-DD.log``. Calling this twice does
    not stack handlers.

    Args:
        user_id: Included in every record written by this handler.
        level: Level name (case-insensitive); unknown names fall back to INFO.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    log_dir = get_labbook_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"local-{date.today().isoformat()}.log"

    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()

    handler = logging.FileHandler(log_file, encoding="utf-8")
    fmt = LOG_FORMAT
    if user_id:
        fmt = LOG_FORMAT.replace("%(message)s", "user=" + user_id.replace("%", "%%") + " %(message)s")
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)
    return logger


def log_sync(direction: str, **fields: Any) -> None:
    """Emit a structured sync event (``sync direction=pull pulled=3 ...``)."""
    logger = logging.getLogger(f"{LOGGER_NAME}.sync")
    details = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
    logger.info(f"sync direction={direction} {details}".rstrip())
