"""
Shared record types for labbook.

All research-artifact dataclasses live here. They are the vocabulary shared
by the local store, the remote codecs and the synchronizers: the local store
persists them, the codecs turn them into remote documents and back, the
synchronizers move them between the two.

Each record carries a local integer ``id`` (assigned by SQLite), an
ownership ``user_id``, ``created_at``/``updated_at`` timestamps and an
``archived`` soft-delete flag. ``remote_id`` is transient: it is filled in
on records decoded from the remote store and is never written to the local
entity tables (the identifier mapping table is the only place the two id
spaces meet).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601, treating naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_datetime(s: Any) -> Optional[datetime]:
    """Parse an ISO datetime string. Returns None for empty or invalid input."""
    if not s or not isinstance(s, str):
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_strictly_newer(candidate: Optional[datetime], current: Optional[datetime]) -> bool:
    """Last-writer-wins comparison on whole-record update timestamps.

    A missing candidate timestamp never wins; a missing current timestamp
    loses to any candidate.
    """
    if candidate is None:
        return False
    if current is None:
        return True
    return candidate > current


# === Enums ===


class EntityType(str, Enum):
    """Entity types that take part in synchronization.

    The values double as the ``entity_type`` key of the identifier mapping
    table, so they must never change once data exists.
    """

    PROJECT = "project"
    HYPOTHESIS = "hypothesis"
    EXPERIMENT = "experiment"
    LOG_ENTRY = "log_entry"
    NOTE = "note"
    REMINDER = "reminder_setting"


class NotificationFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    CUSTOM = "CUSTOM"


class ReminderEntityType(str, Enum):
    """Parent kinds a reminder setting can hang off."""

    PROJECT = "PROJECT"
    HYPOTHESIS = "HYPOTHESIS"
    EXPERIMENT = "EXPERIMENT"

    @property
    def entity_type(self) -> EntityType:
        return EntityType(self.value.lower())

    @classmethod
    def for_entity(cls, entity_type: EntityType) -> "ReminderEntityType":
        return cls(entity_type.value.upper())


class ReminderFrequency(str, Enum):
    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    CUSTOM = "CUSTOM"
    SPECIFIC_DAYS = "SPECIFIC_DAYS"


class DayOfWeek(str, Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"


# === Record Dataclasses ===


@dataclass
class Project:
    """Top-level container for hypotheses."""

    name: str
    goal: str = ""
    description: str = ""
    id: Optional[int] = None
    user_id: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    remote_id: Optional[str] = None


@dataclass
class Hypothesis:
    """A testable refinement of a project's goal."""

    project_id: Optional[int]
    name: str
    description: str = ""
    id: Optional[int] = None
    user_id: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    remote_id: Optional[str] = None


@dataclass
class Experiment:
    """A concrete test of a hypothesis, with its logging prompt schedule."""

    hypothesis_id: Optional[int]
    name: str
    description: str = ""
    question: str = ""
    notifications_enabled: bool = True
    notification_frequency: NotificationFrequency = NotificationFrequency.DAILY
    notification_time: time = time(9, 0)
    custom_frequency_days: Optional[int] = None  # Only meaningful for CUSTOM
    last_notification_sent: Optional[datetime] = None
    last_logged_at: Optional[datetime] = None
    id: Optional[int] = None
    user_id: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    remote_id: Optional[str] = None


@dataclass
class LogEntry:
    """A free-text answer to an experiment's question."""

    experiment_id: Optional[int]
    response: str
    is_from_notification: bool = False
    id: Optional[int] = None
    user_id: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    remote_id: Optional[str] = None


@dataclass
class Note:
    """A free-form note on a hypothesis, optionally with an image attachment."""

    hypothesis_id: Optional[int]
    content: str
    image_path: Optional[str] = None
    id: Optional[int] = None
    user_id: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    remote_id: Optional[str] = None


@dataclass
class ReminderSetting:
    """Reminder schedule attached to a project, hypothesis or experiment."""

    entity_type: ReminderEntityType
    entity_id: Optional[int]
    title: str
    description: str = ""
    is_enabled: bool = True
    frequency: ReminderFrequency = ReminderFrequency.DAILY
    reminder_time: time = time(9, 0)
    custom_frequency_days: Optional[int] = None
    days_of_week: List[DayOfWeek] = field(default_factory=list)
    end_date: Optional[date] = None
    id: Optional[int] = None
    user_id: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    remote_id: Optional[str] = None


Record = Union[Project, Hypothesis, Experiment, LogEntry, Note, ReminderSetting]

RECORD_CLASSES: Dict[EntityType, type] = {
    EntityType.PROJECT: Project,
    EntityType.HYPOTHESIS: Hypothesis,
    EntityType.EXPERIMENT: Experiment,
    EntityType.LOG_ENTRY: LogEntry,
    EntityType.NOTE: Note,
    EntityType.REMINDER: ReminderSetting,
}


def entity_type_of(record: Any) -> EntityType:
    """Resolve the EntityType of a record instance."""
    for entity_type, cls in RECORD_CLASSES.items():
        if isinstance(record, cls):
            return entity_type
    raise ValueError(f"Not a labbook record: {type(record).__name__}")


@dataclass
class HypothesisTree:
    """A hypothesis with its experiments."""

    hypothesis: Hypothesis
    experiments: List[Experiment] = field(default_factory=list)


@dataclass
class ProjectTree:
    """A project with its hypotheses, each carrying its experiments."""

    project: Project
    hypotheses: List[HypothesisTree] = field(default_factory=list)


# === Mapping / Sync Types ===


@dataclass
class IdMapping:
    """One row of the identifier mapping table."""

    entity_type: EntityType
    local_id: int
    remote_id: str
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class SyncConflict:
    """A last-writer-wins decision taken during pull-sync.

    Recorded whenever a mapped local record and its remote copy carry
    different ``updated_at`` values.
    """

    entity_type: EntityType
    local_id: int
    remote_id: str
    resolution: str  # "cloud_wins" or "local_wins"
    local_updated_at: Optional[datetime] = None
    cloud_updated_at: Optional[datetime] = None
    resolved_at: datetime = field(default_factory=utc_now)


@dataclass
class SyncResult:
    """Aggregated outcome of an explicit pull or push."""

    pushed: int = 0  # Records written to the remote store
    pulled: int = 0  # Records inserted or overwritten locally
    deleted: int = 0  # Remote documents removed (tombstones, cascades)
    skipped: int = 0  # Records left alone (parent not yet synced, tombstoned, ...)
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def merge(self, other: "SyncResult") -> "SyncResult":
        """Fold another result into this one (in place) and return self."""
        self.pushed += other.pushed
        self.pulled += other.pulled
        self.deleted += other.deleted
        self.skipped += other.skipped
        self.conflicts.extend(other.conflicts)
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pushed": self.pushed,
            "pulled": self.pulled,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "conflicts": self.conflict_count,
            "errors": list(self.errors),
            "success": self.success,
        }


@dataclass
class SyncState:
    """Observable state of the sync coordinator."""

    is_syncing: bool = False
    last_sync_error: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    last_result: Optional[SyncResult] = None
