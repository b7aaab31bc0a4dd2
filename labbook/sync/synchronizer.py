"""Generic entity synchronizer.

One instance per entity type. Each instance coordinates three stores:

- the local SQLite store (authoritative for immediate reads and writes)
- the remote document store (cross-device durability)
- the identifier mapping store (the only place local and remote ids meet)

Write-through: ``insert``/``update``/``archive``/``delete`` commit locally and
return; the remote mirror runs as a background task whose failure is logged
and dropped. Nothing retries automatically: the next explicit push picks up
whatever the mirror missed.

Explicit sync: ``pull_from_cloud``/``push_to_cloud``/``sweep_tombstones``
collect remote failures into a ``SyncResult`` instead of dropping them.

Tombstones: when a locally deleted record's remote delete fails, its mapping
row is kept. "Mapping present, local record gone" therefore means "deleted
here, not yet deleted remotely"; push finishes the job and pull never
brings such a record back.

With no remote store the synchronizer is local-only: writes are not
mirrored, live views show local records, and explicit sync raises
``RemoteNotConfiguredError``.
"""

import asyncio
import copy
import logging
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, List, Optional, Set

from labbook.errors import (
    Err,
    ErrorKind,
    LocalStoreError,
    MappingUnavailableError,
    Ok,
    RemoteNotConfiguredError,
    Result,
)
from labbook.session import UserSession
from labbook.storage.codecs import collection_for, decode_all, encode, remote_parent_filter
from labbook.storage.mappings import IdentifierMappingStore
from labbook.storage.records import CHILD_TYPES, PARENT_TYPE, attach_parent, natural_key, parent_of
from labbook.storage.remote import RemoteStore
from labbook.storage.sqlite import SQLiteStorage
from labbook.types import EntityType, SyncConflict, SyncResult, is_strictly_newer, utc_now

from .live import merged_view
from .merge import DEDUP_KEYS

logger = logging.getLogger(__name__)


async def delete_remote_tree(
    remote: RemoteStore,
    mappings: IdentifierMappingStore,
    entity_type: EntityType,
    remote_id: str,
    user_id: str,
) -> Result[int]:
    """Delete a remote document and every remote document below it.

    The remote store has no cascading deletes, so children are found by
    querying it (documents never pulled locally are removed too). A mapping
    row is removed only once its document is gone; whatever could not be
    deleted keeps its mapping. Returns the number of documents deleted.
    """
    deleted = 0
    for child_type in CHILD_TYPES[entity_type]:
        filters = {"userId": user_id, **remote_parent_filter(child_type, entity_type, remote_id)}
        children = await remote.query_collection(collection_for(child_type), filters)
        if not children.ok:
            return children
        for doc in children.value:
            if doc.get("id") is None:
                continue
            result = await delete_remote_tree(remote, mappings, child_type, str(doc["id"]), user_id)
            if not result.ok:
                return result
            deleted += result.value

    result = await remote.delete_document(collection_for(entity_type), remote_id)
    if not result.ok:
        return result
    await mappings.delete_by_remote_id(entity_type, remote_id, user_id)
    return Ok(deleted + (1 if result.value else 0))


class EntitySynchronizer:
    """Write-through and pull/push sync for one entity type."""

    entity_type: EntityType

    def __init__(
        self,
        local: SQLiteStorage,
        remote: Optional[RemoteStore],
        mappings: IdentifierMappingStore,
        session: UserSession,
        dedup_key: str = "name",
    ):
        if dedup_key not in DEDUP_KEYS:
            raise ValueError(f"Unknown dedup key: {dedup_key}")
        self.local = local
        self.remote = remote
        self.mappings = mappings
        self.session = session
        self.dedup_key = dedup_key
        self.collection = collection_for(self.entity_type)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.entity_type.value

    def _mirror_user(self) -> Optional[str]:
        """User to mirror writes for, or None when writes stay local."""
        if self.remote is None:
            return None
        return self.session.user_id

    def _require_remote(self) -> RemoteStore:
        if self.remote is None:
            raise RemoteNotConfiguredError(f"Cannot sync {self.collection}: no backend configured")
        return self.remote

    # === Mapping Helpers ===

    async def _remote_id_of(self, entity_type: EntityType, local_id: int, user_id: str) -> Optional[str]:
        """Mapped remote id, with an unreadable mapping treated as "not synced"."""
        try:
            return await self.mappings.remote_id_for(entity_type, local_id, user_id)
        except MappingUnavailableError as e:
            logger.warning(f"Treating {entity_type.value} {local_id} as not synced: {e}")
            return None

    async def _local_id_of(self, remote_id: str, user_id: str) -> Optional[int]:
        try:
            return await self.mappings.local_id_for(self.entity_type, remote_id, user_id)
        except MappingUnavailableError as e:
            logger.warning(f"Treating {self.name} {remote_id} as not imported: {e}")
            return None

    async def _resolve_parent(self, record: Any, user_id: str) -> Result[Optional[str]]:
        """Remote id of the record's parent; ``Ok(None)`` for projects."""
        parent = parent_of(record)
        if parent is None:
            return Ok(None)
        parent_type, parent_id = parent
        if parent_id is None:
            return Err(ErrorKind.MAPPING_MISS, f"{self.name} {record.id} has no parent")
        remote_parent_id = await self._remote_id_of(parent_type, parent_id, user_id)
        if remote_parent_id is None:
            return Err(ErrorKind.MAPPING_MISS, f"parent {parent_type.value} {parent_id} not yet synced")
        return Ok(remote_parent_id)

    @staticmethod
    def _stamp(record: Any) -> None:
        # updated_at must move forward even if the clock hasn't
        now = utc_now()
        if record.updated_at is not None and now <= record.updated_at:
            now = record.updated_at + timedelta(microseconds=1)
        record.updated_at = now

    # === Background Mirrors ===

    def _spawn(self, mirror: Awaitable[Result], description: str) -> None:
        task = asyncio.create_task(self._run_mirror(mirror, description))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_mirror(self, mirror: Awaitable[Result], description: str) -> None:
        try:
            result = await mirror
        except asyncio.CancelledError:
            logger.debug(f"Remote {description} cancelled")
            raise
        except Exception as e:
            logger.warning(f"Remote {description} failed: {e}", exc_info=True)
            return
        if result.ok:
            logger.debug(f"Remote {description} done")
        elif result.kind == ErrorKind.MAPPING_MISS:
            logger.info(f"Remote {description} deferred: {result.describe()}")
        else:
            logger.warning(f"Remote {description} abandoned: {result.describe()}")

    @property
    def pending(self) -> int:
        """Number of write-through mirrors still in flight."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight mirror, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _mirror_insert(self, record: Any, user_id: str) -> Result[str]:
        parent = await self._resolve_parent(record, user_id)
        if not parent.ok:
            return parent
        added = await self.remote.add_document(self.collection, encode(record, user_id, parent.value))
        if added.ok:
            await self.mappings.store(self.entity_type, record.id, added.value, user_id)
        return added

    async def _mirror_update(self, record: Any, user_id: str) -> Result[bool]:
        remote_id = await self._remote_id_of(self.entity_type, record.id, user_id)
        if remote_id is None:
            return Err(ErrorKind.MAPPING_MISS, f"{self.name} {record.id} not yet synced")
        parent = await self._resolve_parent(record, user_id)
        if not parent.ok:
            return parent
        updated = await self.remote.update_document(
            self.collection, remote_id, encode(record, user_id, parent.value)
        )
        if updated.ok and not updated.value:
            # Remote copy is gone; the next push re-creates it
            logger.info(f"Remote {self.name} {remote_id} no longer exists, dropping its mapping")
            await self.mappings.delete_by_remote_id(self.entity_type, remote_id, user_id)
        return updated

    async def _mirror_delete(self, local_id: int, descendants: dict, user_id: str) -> Result[int]:
        deleted = 0
        remote_id = await self._remote_id_of(self.entity_type, local_id, user_id)
        if remote_id is not None:
            result = await delete_remote_tree(
                self.remote, self.mappings, self.entity_type, remote_id, user_id
            )
            if not result.ok:
                return result
            deleted += result.value
        # Mapped descendants the remote tree walk didn't reach
        for child_type, child_ids in descendants.items():
            for child_id in child_ids:
                child_remote_id = await self._remote_id_of(child_type, child_id, user_id)
                if child_remote_id is None:
                    continue
                result = await delete_remote_tree(
                    self.remote, self.mappings, child_type, child_remote_id, user_id
                )
                if not result.ok:
                    return result
                deleted += result.value
        return Ok(deleted)

    # === Write-through ===

    async def insert(self, record: Any) -> int:
        """Insert locally and return the local id; mirror to remote in the background."""
        if record.user_id is None:
            record.user_id = self.session.user_id
        local_id = await self.local.insert(record)
        user_id = self._mirror_user()
        if user_id is not None:
            self._spawn(
                self._mirror_insert(copy.deepcopy(record), user_id),
                f"insert of {self.name} {local_id}",
            )
        return local_id

    async def update(self, record: Any) -> bool:
        """Stamp ``updated_at``, write locally, mirror if the record is mapped."""
        if record.id is None:
            raise LocalStoreError(f"Cannot update {self.name} without a local id")
        self._stamp(record)
        updated = await self.local.update(record)
        user_id = self._mirror_user()
        if updated and user_id is not None:
            self._spawn(
                self._mirror_update(copy.deepcopy(record), user_id),
                f"update of {self.name} {record.id}",
            )
        return updated

    async def archive(self, record: Any) -> bool:
        record.archived = True
        return await self.update(record)

    async def delete(self, record: Any) -> bool:
        """Delete locally (with descendants), then remotely if mapped.

        The local delete is never rolled back. If the remote delete fails the
        mapping stays behind as a tombstone for the next push.
        """
        user_id = self._mirror_user()
        descendants = {}
        if user_id is not None:
            descendants = await self.local.descendants(self.entity_type, record.id)
        deleted = await self.local.delete(self.entity_type, record.id)
        if deleted and user_id is not None:
            self._spawn(
                self._mirror_delete(record.id, descendants, user_id),
                f"delete of {self.name} {record.id}",
            )
        return deleted

    # === Reads ===

    async def get_by_id(self, local_id: int) -> Optional[Any]:
        return await self.local.get_by_id(self.entity_type, local_id)

    def active_for_parent(
        self, parent_id: Optional[int] = None, parent_type: Optional[EntityType] = None
    ) -> AsyncIterator[List[Any]]:
        """Live merged view of non-archived children of a local parent."""
        return self._live(parent_id, parent_type, active_only=True)

    def all_for_parent(
        self, parent_id: Optional[int] = None, parent_type: Optional[EntityType] = None
    ) -> AsyncIterator[List[Any]]:
        """Live merged view of all children of a local parent, archived included."""
        return self._live(parent_id, parent_type, active_only=False)

    def _live(self, parent_id: Optional[int], parent_type: Optional[EntityType], active_only: bool):
        parent_type = parent_type or PARENT_TYPE.get(self.entity_type)
        snapshots = self.local.watch(
            self.entity_type, parent_id, parent_type=parent_type, active_only=active_only
        )
        return merged_view(
            snapshots,
            lambda: self.fetch_remote(parent_id, parent_type, active_only),
            DEDUP_KEYS[self.dedup_key],
        )

    async def fetch_remote(
        self,
        parent_id: Optional[int] = None,
        parent_type: Optional[EntityType] = None,
        active_only: bool = True,
    ) -> List[Any]:
        """One-shot remote read of a local parent's children, for display.

        Returns an empty list when signed out, without a backend, when the
        parent isn't synced, or when the remote store fails (logged).
        """
        user_id = self._mirror_user()
        if user_id is None:
            return []
        parent_type = parent_type or PARENT_TYPE.get(self.entity_type)
        remote_parent_id = None
        if self.entity_type != EntityType.PROJECT:
            if parent_id is None or parent_type is None:
                return []
            remote_parent_id = await self._remote_id_of(parent_type, parent_id, user_id)
            if remote_parent_id is None:
                return []

        filters = {
            "userId": user_id,
            **remote_parent_filter(self.entity_type, parent_type, remote_parent_id),
        }
        if active_only:
            filters["isArchived"] = False
        fetched = await self.remote.query_collection(
            self.collection, filters, order_by="createdAt", descending=True
        )
        if not fetched.ok:
            logger.warning(f"Could not fetch remote {self.collection}: {fetched.describe()}")
            return []

        records = decode_all(self.entity_type, fetched.value)
        for record in records:
            attach_parent(record, parent_type, parent_id)
            if self.dedup_key == "identifier":
                record.id = await self._local_id_of(record.remote_id, user_id)
        return records

    # === Explicit Sync ===

    async def pull_from_cloud(
        self,
        remote_parent_id: Optional[str] = None,
        local_parent_id: Optional[int] = None,
        parent_type: Optional[EntityType] = None,
    ) -> SyncResult:
        """Import the remote children of one parent into the local store.

        Unmapped remote records are inserted (or adopt an identical unmapped
        local sibling) and mapped; mapped ones overwrite the local copy only
        when their ``updated_at`` is strictly later.
        """
        user_id = self.session.require_user()
        remote = self._require_remote()
        parent_type = parent_type or PARENT_TYPE.get(self.entity_type)
        if self.entity_type != EntityType.PROJECT and (remote_parent_id is None or local_parent_id is None):
            raise ValueError(f"Pulling {self.collection} needs both parent ids")

        result = SyncResult()
        filters = {
            "userId": user_id,
            **remote_parent_filter(self.entity_type, parent_type, remote_parent_id),
        }
        fetched = await remote.query_collection(
            self.collection, filters, order_by="createdAt", descending=True
        )
        if not fetched.ok:
            result.errors.append(f"Failed to pull {self.collection}: {fetched.describe()}")
            return result

        for remote_record in decode_all(self.entity_type, fetched.value):
            attach_parent(remote_record, parent_type, local_parent_id)
            remote_record.user_id = user_id
            try:
                await self._pull_one(remote_record, user_id, result)
            except MappingUnavailableError as e:
                result.errors.append(f"Failed to pull {self.name} {remote_record.remote_id}: {e}")
        return result

    async def _pull_one(self, remote_record: Any, user_id: str, result: SyncResult) -> None:
        local_id = await self.mappings.local_id_for(self.entity_type, remote_record.remote_id, user_id)
        if local_id is None:
            twin = await self._unmapped_twin(remote_record, user_id)
            if twin is None:
                remote_record.id = None
                new_id = await self.local.insert(remote_record)
                await self.mappings.store(self.entity_type, new_id, remote_record.remote_id, user_id)
                result.pulled += 1
                return
            await self.mappings.store(self.entity_type, twin.id, remote_record.remote_id, user_id)
            logger.info(f"Adopted local {self.name} {twin.id} as remote {remote_record.remote_id}")
            local_record = twin
        else:
            local_record = await self.local.get_by_id(self.entity_type, local_id)
            if local_record is None:
                # Deleted here, remote delete still pending
                result.skipped += 1
                return

        if is_strictly_newer(remote_record.updated_at, local_record.updated_at):
            remote_record.id = local_record.id
            await self.local.update(remote_record)
            result.pulled += 1
            resolution = "cloud_wins"
        elif remote_record.updated_at == local_record.updated_at:
            return
        else:
            resolution = "local_wins"
        result.conflicts.append(
            SyncConflict(
                entity_type=self.entity_type,
                local_id=local_record.id,
                remote_id=remote_record.remote_id,
                resolution=resolution,
                local_updated_at=local_record.updated_at,
                cloud_updated_at=remote_record.updated_at,
            )
        )

    async def _unmapped_twin(self, remote_record: Any, user_id: str) -> Optional[Any]:
        """An unsynced local sibling with the same natural key, if any."""
        parent = parent_of(remote_record)
        siblings = await self.local.list_for_parent(
            self.entity_type,
            parent[1] if parent else None,
            parent_type=parent[0] if parent else None,
        )
        key = natural_key(remote_record)
        for sibling in siblings:
            if sibling.user_id not in (None, user_id) or natural_key(sibling) != key:
                continue
            if await self.mappings.remote_id_for(self.entity_type, sibling.id, user_id) is None:
                return sibling
        return None

    async def push_to_cloud(self, sweep: bool = True) -> SyncResult:
        """Export every local record of the current user.

        Unmapped records are added, mapped ones updated (and re-added if the
        remote copy has disappeared). Records whose parent isn't synced yet
        are skipped. With ``sweep``, tombstones are deleted remotely too.
        """
        user_id = self.session.require_user()
        self._require_remote()
        result = SyncResult()
        for record in await self.local.list_for_user(self.entity_type, user_id):
            try:
                await self._push_one(record, user_id, result)
            except MappingUnavailableError as e:
                result.errors.append(f"Failed to push {self.name} {record.id}: {e}")
        if sweep:
            result.merge(await self.sweep_tombstones())
        return result

    async def _push_one(self, record: Any, user_id: str, result: SyncResult) -> None:
        parent = await self._resolve_parent(record, user_id)
        if not parent.ok:
            logger.debug(f"Skipping push of {self.name} {record.id}: {parent.describe()}")
            result.skipped += 1
            return
        doc = encode(record, user_id, parent.value)

        remote_id = await self.mappings.remote_id_for(self.entity_type, record.id, user_id)
        if remote_id is not None:
            updated = await self.remote.update_document(self.collection, remote_id, doc)
            if not updated.ok:
                result.errors.append(f"Failed to push {self.name} {record.id}: {updated.describe()}")
                return
            if updated.value:
                result.pushed += 1
                return
            logger.info(f"Remote {self.name} {remote_id} no longer exists, re-creating it")

        added = await self.remote.add_document(self.collection, doc)
        if not added.ok:
            result.errors.append(f"Failed to push {self.name} {record.id}: {added.describe()}")
            return
        await self.mappings.store(self.entity_type, record.id, added.value, user_id)
        result.pushed += 1

    async def sweep_tombstones(self) -> SyncResult:
        """Finish remote deletes for records deleted locally."""
        user_id = self.session.require_user()
        remote = self._require_remote()
        result = SyncResult()
        for mapping in await self.mappings.all_for_type(self.entity_type, user_id):
            if await self.local.get_by_id(self.entity_type, mapping.local_id) is not None:
                continue
            deleted = await delete_remote_tree(
                remote, self.mappings, self.entity_type, mapping.remote_id, user_id
            )
            if deleted.ok:
                result.deleted += deleted.value
            else:
                result.errors.append(
                    f"Failed to delete remote {self.name} {mapping.remote_id}: {deleted.describe()}"
                )
        return result
