"""Filesystem helpers for labbook."""

import os
from pathlib import Path


def get_labbook_home() -> Path:
    """Directory holding the local database, credentials and logs.

    ``LABBOOK_DATA_DIR`` overrides the default ``~/.labbook``.
    """
    override = os.environ.get("LABBOOK_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".labbook"
