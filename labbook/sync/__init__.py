"""Labbook synchronization.

Entity synchronizers (write-through plus pull/push), the display merge,
the live fan-in stream and the sync coordinator.
"""

from .engine import SyncEngine
from .entities import (
    ExperimentSynchronizer,
    HypothesisSynchronizer,
    LogEntrySynchronizer,
    NoteSynchronizer,
    ProjectSynchronizer,
    ReminderSynchronizer,
)
from .live import merged_view
from .merge import DEDUP_KEYS, by_identity, by_name, merge
from .synchronizer import EntitySynchronizer, delete_remote_tree

__all__ = [
    "SyncEngine",
    "EntitySynchronizer",
    "ProjectSynchronizer",
    "HypothesisSynchronizer",
    "ExperimentSynchronizer",
    "LogEntrySynchronizer",
    "NoteSynchronizer",
    "ReminderSynchronizer",
    "delete_remote_tree",
    "merge",
    "by_name",
    "by_identity",
    "DEDUP_KEYS",
    "merged_view",
]
