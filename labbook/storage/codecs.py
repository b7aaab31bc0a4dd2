"""Remote document codecs.

One encode/decode pair per entity type, selected by ``EntityType``. Remote
documents use camelCase field names and point at their parent through the
parent's *remote* id; local records point at their parent through the
parent's *local* id. The synchronizers translate between the two via the
identifier mapping store, so codecs never see both id spaces at once.

Decoding is tolerant: missing optional fields take defaults, unknown enum
values fall back, and unparseable timestamps become "now" (created_at,
updated_at) or None. A document that can't be decoded at all yields None
and is skipped by the caller.
"""

import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Callable, Dict, List, Optional

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

from .records import parse_enum

logger = logging.getLogger(__name__)

COLLECTIONS: Dict[EntityType, str] = {
    EntityType.PROJECT: "projects",
    EntityType.HYPOTHESIS: "hypotheses",
    EntityType.EXPERIMENT: "experiments",
    EntityType.LOG_ENTRY: "log_entries",
    EntityType.NOTE: "notes",
    EntityType.REMINDER: "reminder_settings",
}

# Remote field holding the parent's remote id
REMOTE_PARENT_FIELD: Dict[EntityType, str] = {
    EntityType.HYPOTHESIS: "projectId",
    EntityType.EXPERIMENT: "hypothesisId",
    EntityType.LOG_ENTRY: "experimentId",
    EntityType.NOTE: "hypothesisId",
    EntityType.REMINDER: "entityId",
}


class DecodeError(ValueError):
    """A remote document is missing a field the record can't exist without."""


def collection_for(entity_type: EntityType) -> str:
    return COLLECTIONS[entity_type]


def remote_parent_filter(
    child_type: EntityType, parent_type: Optional[EntityType], remote_parent_id: Optional[str]
) -> Dict[str, Any]:
    """Query filters selecting the remote children of one remote parent."""
    if child_type == EntityType.PROJECT or remote_parent_id is None:
        return {}
    if child_type == EntityType.REMINDER:
        if parent_type is None:
            raise ValueError("Reminder queries need an explicit parent type")
        return {
            "entityType": ReminderEntityType.for_entity(parent_type).value,
            "entityId": remote_parent_id,
        }
    return {REMOTE_PARENT_FIELD[child_type]: remote_parent_id}


def remote_parent_id(entity_type: EntityType, doc: Dict[str, Any]) -> Optional[str]:
    """The parent's remote id referenced by a document, if any."""
    field_name = REMOTE_PARENT_FIELD.get(entity_type)
    if field_name is None:
        return None
    value = doc.get(field_name)
    return str(value) if value is not None else None


# === Field Helpers ===


def _text(doc: Dict[str, Any], key: str, default: str = "") -> str:
    value = doc.get(key)
    return value if isinstance(value, str) else default


def _required_text(doc: Dict[str, Any], key: str) -> str:
    value = doc.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"missing {key}")
    return value


def _bool(doc: Dict[str, Any], key: str, default: bool) -> bool:
    value = doc.get(key)
    return value if isinstance(value, bool) else default


def _int(doc: Dict[str, Any], key: str) -> Optional[int]:
    value = doc.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _time(doc: Dict[str, Any], hour_key: str, minute_key: str) -> time:
    hour, minute = _int(doc, hour_key), _int(doc, minute_key)
    try:
        return time(hour if hour is not None else 9, minute or 0)
    except ValueError:
        return time(9, 0)


def _date(value: Any) -> Optional[date]:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _common_doc(record: Any, user_id: str) -> Dict[str, Any]:
    return {
        "userId": user_id,
        "isArchived": bool(record.archived),
        "createdAt": to_iso(record.created_at or utc_now()),
        "updatedAt": to_iso(record.updated_at or utc_now()),
    }


def _common_from_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    created_at = parse_datetime(doc.get("createdAt")) or utc_now()
    return {
        "remote_id": str(doc["id"]),
        "user_id": doc.get("userId") if isinstance(doc.get("userId"), str) else None,
        "archived": _bool(doc, "isArchived", False),
        "created_at": created_at,
        "updated_at": parse_datetime(doc.get("updatedAt")) or created_at,
    }


# === Per-type Codecs ===


def _encode_project(p: Project, user_id: str, parent_remote_id: Optional[str]) -> Dict[str, Any]:
    return {"name": p.name, "description": p.description, "goal": p.goal, **_common_doc(p, user_id)}


def _decode_project(doc: Dict[str, Any]) -> Project:
    return Project(
        name=_required_text(doc, "name"),
        description=_text(doc, "description"),
        goal=_text(doc, "goal"),
        **_common_from_doc(doc),
    )


def _encode_hypothesis(h: Hypothesis, user_id: str, parent_remote_id: Optional[str]) -> Dict[str, Any]:
    return {
        "projectId": parent_remote_id,
        "name": h.name,
        "description": h.description,
        **_common_doc(h, user_id),
    }


def _decode_hypothesis(doc: Dict[str, Any]) -> Hypothesis:
    return Hypothesis(
        project_id=None,
        name=_required_text(doc, "name"),
        description=_text(doc, "description"),
        **_common_from_doc(doc),
    )


def _encode_experiment(e: Experiment, user_id: str, parent_remote_id: Optional[str]) -> Dict[str, Any]:
    return {
        "hypothesisId": parent_remote_id,
        "name": e.name,
        "description": e.description,
        "question": e.question,
        "notificationsEnabled": e.notifications_enabled,
        "notificationFrequency": e.notification_frequency.value,
        "notificationTimeHour": e.notification_time.hour,
        "notificationTimeMinute": e.notification_time.minute,
        "customFrequencyDays": e.custom_frequency_days,
        "lastNotificationSent": to_iso(e.last_notification_sent),
        "lastLoggedAt": to_iso(e.last_logged_at),
        **_common_doc(e, user_id),
    }


def _decode_experiment(doc: Dict[str, Any]) -> Experiment:
    return Experiment(
        hypothesis_id=None,
        name=_required_text(doc, "name"),
        description=_text(doc, "description"),
        question=_text(doc, "question"),
        notifications_enabled=_bool(doc, "notificationsEnabled", True),
        notification_frequency=parse_enum(
            NotificationFrequency, doc.get("notificationFrequency"), NotificationFrequency.DAILY
        ),
        notification_time=_time(doc, "notificationTimeHour", "notificationTimeMinute"),
        custom_frequency_days=_int(doc, "customFrequencyDays"),
        last_notification_sent=parse_datetime(doc.get("lastNotificationSent")),
        last_logged_at=parse_datetime(doc.get("lastLoggedAt")),
        **_common_from_doc(doc),
    )


def _encode_log_entry(entry: LogEntry, user_id: str, parent_remote_id: Optional[str]) -> Dict[str, Any]:
    return {
        "experimentId": parent_remote_id,
        "response": entry.response,
        "isFromNotification": entry.is_from_notification,
        **_common_doc(entry, user_id),
    }


def _decode_log_entry(doc: Dict[str, Any]) -> LogEntry:
    return LogEntry(
        experiment_id=None,
        response=_required_text(doc, "response"),
        is_from_notification=_bool(doc, "isFromNotification", False),
        **_common_from_doc(doc),
    )


def _encode_note(n: Note, user_id: str, parent_remote_id: Optional[str]) -> Dict[str, Any]:
    return {
        "hypothesisId": parent_remote_id,
        "content": n.content,
        "imagePath": n.image_path,
        **_common_doc(n, user_id),
    }


def _decode_note(doc: Dict[str, Any]) -> Note:
    image_path = doc.get("imagePath")
    return Note(
        hypothesis_id=None,
        content=_required_text(doc, "content"),
        image_path=image_path if isinstance(image_path, str) else None,
        **_common_from_doc(doc),
    )


def _encode_reminder(r: ReminderSetting, user_id: str, parent_remote_id: Optional[str]) -> Dict[str, Any]:
    return {
        "entityType": r.entity_type.value,
        "entityId": parent_remote_id,
        "title": r.title,
        "description": r.description,
        "isEnabled": r.is_enabled,
        "frequency": r.frequency.value,
        "timeHour": r.reminder_time.hour,
        "timeMinute": r.reminder_time.minute,
        "customFrequencyDays": r.custom_frequency_days,
        "daysOfWeek": [d.value for d in r.days_of_week],
        "endDate": r.end_date.isoformat() if r.end_date else None,
        **_common_doc(r, user_id),
    }


def _decode_reminder(doc: Dict[str, Any]) -> ReminderSetting:
    entity_type = doc.get("entityType")
    if entity_type not in ReminderEntityType.__members__:
        raise DecodeError(f"unknown entityType {entity_type!r}")
    days: List[DayOfWeek] = []
    for value in doc.get("daysOfWeek") or []:
        if value in DayOfWeek.__members__:
            days.append(DayOfWeek(value))
    return ReminderSetting(
        entity_type=ReminderEntityType(entity_type),
        entity_id=None,
        title=_required_text(doc, "title"),
        description=_text(doc, "description"),
        is_enabled=_bool(doc, "isEnabled", True),
        frequency=parse_enum(ReminderFrequency, doc.get("frequency"), ReminderFrequency.DAILY),
        reminder_time=_time(doc, "timeHour", "timeMinute"),
        custom_frequency_days=_int(doc, "customFrequencyDays"),
        days_of_week=days,
        end_date=_date(doc.get("endDate")),
        **_common_from_doc(doc),
    )


@dataclass(frozen=True)
class Codec:
    entity_type: EntityType
    encode: Callable[[Any, str, Optional[str]], Dict[str, Any]]
    decode: Callable[[Dict[str, Any]], Any]


CODECS: Dict[EntityType, Codec] = {
    EntityType.PROJECT: Codec(EntityType.PROJECT, _encode_project, _decode_project),
    EntityType.HYPOTHESIS: Codec(EntityType.HYPOTHESIS, _encode_hypothesis, _decode_hypothesis),
    EntityType.EXPERIMENT: Codec(EntityType.EXPERIMENT, _encode_experiment, _decode_experiment),
    EntityType.LOG_ENTRY: Codec(EntityType.LOG_ENTRY, _encode_log_entry, _decode_log_entry),
    EntityType.NOTE: Codec(EntityType.NOTE, _encode_note, _decode_note),
    EntityType.REMINDER: Codec(EntityType.REMINDER, _encode_reminder, _decode_reminder),
}


def encode(record: Any, user_id: str, parent_remote_id: Optional[str] = None) -> Dict[str, Any]:
    """Turn a local record into a remote document body (without ``id``)."""
    return CODECS[entity_type_of(record)].encode(record, user_id, parent_remote_id)


def decode(entity_type: EntityType, doc: Dict[str, Any]) -> Optional[Any]:
    """Turn a remote document into a record, or None if it is unusable.

    The returned record carries ``remote_id`` and no local parent id.
    """
    if not isinstance(doc, dict) or doc.get("id") is None:
        logger.warning(f"Skipping {entity_type.value} document without id")
        return None
    try:
        return CODECS[entity_type].decode(doc)
    except (DecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Skipping undecodable {entity_type.value} document {doc.get('id')}: {e}")
        return None


def decode_all(entity_type: EntityType, docs: List[Dict[str, Any]]) -> List[Any]:
    """Decode a batch, dropping documents that can't be decoded."""
    records = []
    for doc in docs:
        record = decode(entity_type, doc)
        if record is not None:
            records.append(record)
    return records
