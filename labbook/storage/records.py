"""Row conversion and entity topology for the local store.

One ``TableSpec`` per entity type describes its table, its columns and the
pair of functions that turn a record into a row dict and back. The topology
helpers (parents, children, dedup fields) are shared with the remote codecs
and the synchronizers.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from labbook.types import (
    DayOfWeek,
    EntityType,
    Experiment,
    Hypothesis,
    LogEntry,
    Note,
    NotificationFrequency,
    Project,
    ReminderEntityType,
    ReminderFrequency,
    ReminderSetting,
    entity_type_of,
    parse_datetime,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

# === Topology ===

# Fixed parent of each child type. Reminders are polymorphic and resolved
# from the record itself.
PARENT_TYPE: Dict[EntityType, EntityType] = {
    EntityType.HYPOTHESIS: EntityType.PROJECT,
    EntityType.EXPERIMENT: EntityType.HYPOTHESIS,
    EntityType.LOG_ENTRY: EntityType.EXPERIMENT,
    EntityType.NOTE: EntityType.HYPOTHESIS,
}

CHILD_TYPES: Dict[EntityType, Tuple[EntityType, ...]] = {
    EntityType.PROJECT: (EntityType.HYPOTHESIS, EntityType.REMINDER),
    EntityType.HYPOTHESIS: (EntityType.EXPERIMENT, EntityType.NOTE, EntityType.REMINDER),
    EntityType.EXPERIMENT: (EntityType.LOG_ENTRY, EntityType.REMINDER),
    EntityType.LOG_ENTRY: (),
    EntityType.NOTE: (),
    EntityType.REMINDER: (),
}

# Local attribute that holds the parent's local id
PARENT_ATTR: Dict[EntityType, str] = {
    EntityType.HYPOTHESIS: "project_id",
    EntityType.EXPERIMENT: "hypothesis_id",
    EntityType.LOG_ENTRY: "experiment_id",
    EntityType.NOTE: "hypothesis_id",
    EntityType.REMINDER: "entity_id",
}

# Field used by the display merge when deduplicating by name
DEDUP_FIELD: Dict[EntityType, str] = {
    EntityType.PROJECT: "name",
    EntityType.HYPOTHESIS: "name",
    EntityType.EXPERIMENT: "name",
    EntityType.LOG_ENTRY: "response",
    EntityType.NOTE: "content",
    EntityType.REMINDER: "title",
}

# Fields that identify an unsynced local record as the same thing as an
# unmapped remote record during pull-sync adoption
NATURAL_KEY: Dict[EntityType, Tuple[str, ...]] = {
    EntityType.PROJECT: ("name", "goal"),
    EntityType.HYPOTHESIS: ("name", "description"),
    EntityType.EXPERIMENT: ("name", "question"),
    EntityType.LOG_ENTRY: ("response", "created_at"),
    EntityType.NOTE: ("content", "created_at"),
    EntityType.REMINDER: ("title", "frequency", "reminder_time"),
}


def subtree_types(entity_type: EntityType) -> Tuple[EntityType, ...]:
    """``entity_type`` followed by every type that can sit below it."""
    found = [entity_type]
    for child_type in CHILD_TYPES[entity_type]:
        for t in subtree_types(child_type):
            if t not in found:
                found.append(t)
    return tuple(found)


def parent_type_for(entity_type: EntityType, record: Any = None) -> Optional[EntityType]:
    """Parent type of a child type (reminders need the record)."""
    if entity_type == EntityType.REMINDER:
        return record.entity_type.entity_type if record is not None else None
    return PARENT_TYPE.get(entity_type)


def parent_of(record: Any) -> Optional[Tuple[EntityType, int]]:
    """The ``(parent type, parent local id)`` of a record, or None for projects."""
    entity_type = entity_type_of(record)
    if entity_type == EntityType.PROJECT:
        return None
    parent_type = parent_type_for(entity_type, record)
    return parent_type, getattr(record, PARENT_ATTR[entity_type])


def attach_parent(record: Any, parent_type: Optional[EntityType], parent_id: Optional[int]) -> Any:
    """Point a record at a local parent (in place). Returns the record."""
    entity_type = entity_type_of(record)
    if entity_type == EntityType.PROJECT:
        return record
    if entity_type == EntityType.REMINDER and parent_type is not None:
        record.entity_type = ReminderEntityType.for_entity(parent_type)
    setattr(record, PARENT_ATTR[entity_type], parent_id)
    return record


def local_parent_filter(
    child_type: EntityType, parent_type: Optional[EntityType], parent_id: Optional[int]
) -> Dict[str, Any]:
    """Column filters selecting the children of one local parent."""
    if child_type == EntityType.PROJECT or parent_id is None:
        return {}
    if child_type == EntityType.REMINDER:
        if parent_type is None:
            raise ValueError("Reminder queries need an explicit parent type")
        return {
            "entity_type": ReminderEntityType.for_entity(parent_type).value,
            "entity_id": parent_id,
        }
    return {PARENT_ATTR[child_type]: parent_id}


def dedup_name(record: Any) -> str:
    return str(getattr(record, DEDUP_FIELD[entity_type_of(record)]) or "")


def natural_key(record: Any) -> Tuple[Any, ...]:
    return tuple(getattr(record, name) for name in NATURAL_KEY[entity_type_of(record)])


# === Value Helpers ===


def parse_enum(cls: Type[E], value: Any, default: E) -> E:
    """Parse an enum value, falling back to ``default`` for unknown input."""
    if isinstance(value, cls):
        return value
    try:
        return cls(value)
    except ValueError:
        logger.debug(f"Unknown {cls.__name__} value {value!r}, using {default.value}")
        return default


def time_to_text(value: time) -> str:
    return value.strftime("%H:%M")


def text_to_time(value: Optional[str], default: time = time(9, 0)) -> time:
    if not value:
        return default
    try:
        return time.fromisoformat(value)
    except ValueError:
        return default


def text_to_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _common_row(record: Any) -> Dict[str, Any]:
    now = utc_now()
    return {
        "user_id": record.user_id,
        "archived": 1 if record.archived else 0,
        "created_at": to_iso(record.created_at or now),
        "updated_at": to_iso(record.updated_at or now),
    }


def _common_fields(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "archived": bool(row["archived"]),
        "created_at": parse_datetime(row["created_at"]),
        "updated_at": parse_datetime(row["updated_at"]),
    }


# === Row Converters ===


def _project_to_row(p: Project) -> Dict[str, Any]:
    return {"name": p.name, "description": p.description, "goal": p.goal, **_common_row(p)}


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        name=row["name"],
        description=row["description"],
        goal=row["goal"],
        **_common_fields(row),
    )


def _hypothesis_to_row(h: Hypothesis) -> Dict[str, Any]:
    return {
        "project_id": h.project_id,
        "name": h.name,
        "description": h.description,
        **_common_row(h),
    }


def _row_to_hypothesis(row: sqlite3.Row) -> Hypothesis:
    return Hypothesis(
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"],
        **_common_fields(row),
    )


def _experiment_to_row(e: Experiment) -> Dict[str, Any]:
    return {
        "hypothesis_id": e.hypothesis_id,
        "name": e.name,
        "description": e.description,
        "question": e.question,
        "notifications_enabled": 1 if e.notifications_enabled else 0,
        "notification_frequency": e.notification_frequency.value,
        "notification_time": time_to_text(e.notification_time),
        "custom_frequency_days": e.custom_frequency_days,
        "last_notification_sent": to_iso(e.last_notification_sent),
        "last_logged_at": to_iso(e.last_logged_at),
        **_common_row(e),
    }


def _row_to_experiment(row: sqlite3.Row) -> Experiment:
    return Experiment(
        hypothesis_id=row["hypothesis_id"],
        name=row["name"],
        description=row["description"],
        question=row["question"],
        notifications_enabled=bool(row["notifications_enabled"]),
        notification_frequency=parse_enum(
            NotificationFrequency, row["notification_frequency"], NotificationFrequency.DAILY
        ),
        notification_time=text_to_time(row["notification_time"]),
        custom_frequency_days=row["custom_frequency_days"],
        last_notification_sent=parse_datetime(row["last_notification_sent"]),
        last_logged_at=parse_datetime(row["last_logged_at"]),
        **_common_fields(row),
    )


def _log_entry_to_row(entry: LogEntry) -> Dict[str, Any]:
    return {
        "experiment_id": entry.experiment_id,
        "response": entry.response,
        "is_from_notification": 1 if entry.is_from_notification else 0,
        **_common_row(entry),
    }


def _row_to_log_entry(row: sqlite3.Row) -> LogEntry:
    return LogEntry(
        experiment_id=row["experiment_id"],
        response=row["response"],
        is_from_notification=bool(row["is_from_notification"]),
        **_common_fields(row),
    )


def _note_to_row(n: Note) -> Dict[str, Any]:
    return {
        "hypothesis_id": n.hypothesis_id,
        "content": n.content,
        "image_path": n.image_path,
        **_common_row(n),
    }


def _row_to_note(row: sqlite3.Row) -> Note:
    return Note(
        hypothesis_id=row["hypothesis_id"],
        content=row["content"],
        image_path=row["image_path"],
        **_common_fields(row),
    )


def _reminder_to_row(r: ReminderSetting) -> Dict[str, Any]:
    return {
        "entity_type": r.entity_type.value,
        "entity_id": r.entity_id,
        "title": r.title,
        "description": r.description,
        "is_enabled": 1 if r.is_enabled else 0,
        "frequency": r.frequency.value,
        "reminder_time": time_to_text(r.reminder_time),
        "custom_frequency_days": r.custom_frequency_days,
        "days_of_week": json.dumps([d.value for d in r.days_of_week]),
        "end_date": r.end_date.isoformat() if r.end_date else None,
        **_common_row(r),
    }


def _row_to_reminder(row: sqlite3.Row) -> ReminderSetting:
    try:
        days = json.loads(row["days_of_week"]) if row["days_of_week"] else []
    except json.JSONDecodeError:
        days = []
    return ReminderSetting(
        entity_type=parse_enum(ReminderEntityType, row["entity_type"], ReminderEntityType.PROJECT),
        entity_id=row["entity_id"],
        title=row["title"],
        description=row["description"],
        is_enabled=bool(row["is_enabled"]),
        frequency=parse_enum(ReminderFrequency, row["frequency"], ReminderFrequency.DAILY),
        reminder_time=text_to_time(row["reminder_time"]),
        custom_frequency_days=row["custom_frequency_days"],
        days_of_week=[DayOfWeek(d) for d in days if d in DayOfWeek.__members__],
        end_date=text_to_date(row["end_date"]),
        **_common_fields(row),
    )


@dataclass(frozen=True)
class TableSpec:
    """How one entity type is laid out in SQLite."""

    entity_type: EntityType
    table: str
    to_row: Callable[[Any], Dict[str, Any]]
    from_row: Callable[[sqlite3.Row], Any]


TABLES: Dict[EntityType, TableSpec] = {
    EntityType.PROJECT: TableSpec(EntityType.PROJECT, "projects", _project_to_row, _row_to_project),
    EntityType.HYPOTHESIS: TableSpec(
        EntityType.HYPOTHESIS, "hypotheses", _hypothesis_to_row, _row_to_hypothesis
    ),
    EntityType.EXPERIMENT: TableSpec(
        EntityType.EXPERIMENT, "experiments", _experiment_to_row, _row_to_experiment
    ),
    EntityType.LOG_ENTRY: TableSpec(
        EntityType.LOG_ENTRY, "log_entries", _log_entry_to_row, _row_to_log_entry
    ),
    EntityType.NOTE: TableSpec(EntityType.NOTE, "notes", _note_to_row, _row_to_note),
    EntityType.REMINDER: TableSpec(
        EntityType.REMINDER, "reminder_settings", _reminder_to_row, _row_to_reminder
    ),
}
