"""Display merge of local and remote record sets.

``merge`` never writes to either store. Durable reconciliation happens only
through pull and push sync.

Policy:
- Every local record is kept (local wins)
- A remote record is dropped when a local record shares its dedup key
- Remote records sharing a key with each other keep the first one seen
- The result is ordered newest ``created_at`` first
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, List, Sequence

from labbook.storage.records import dedup_name

DedupKey = Callable[[Any], Hashable]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def by_name(record: Any) -> Hashable:
    """Human-readable name (name, response, content or title).

    Two distinct records with the same name collapse into one.
    """
    return dedup_name(record)


def by_identity(record: Any) -> Hashable:
    """Local id when known (remote records annotated from the mapping store), else remote id."""
    if record.id is not None:
        return ("local", record.id)
    return ("remote", record.remote_id)


DEDUP_KEYS: Dict[str, DedupKey] = {
    "name": by_name,
    "identifier": by_identity,
}


def _created(record: Any) -> datetime:
    return record.created_at or _EPOCH


def merge(local: Sequence[Any], remote: Sequence[Any], key: DedupKey = by_name) -> List[Any]:
    seen = set()
    merged: List[Any] = []
    for record in local:
        seen.add(key(record))
        merged.append(record)
    for record in remote:
        k = key(record)
        if k in seen:
            continue
        seen.add(k)
        merged.append(record)
    return sorted(merged, key=_created, reverse=True)
