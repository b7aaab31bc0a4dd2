"""
Labbook - offline-first research notebook with cloud sync.

Projects, hypotheses, experiments, log entries, notes and reminders live in
a local SQLite store and are mirrored to a remote document store.
"""

from .session import UserSession
from .sync import SyncEngine
from .workspace import Workspace

try:
    from importlib.metadata import version

    __version__ = version("labbook")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SyncEngine", "UserSession", "Workspace"]
