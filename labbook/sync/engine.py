"""Sync coordinator.

Owns the six entity synchronizers and runs the two explicit operations:

- ``sync_from_cloud``: pull projects, then walk down the mapped hierarchy
  pulling each level's children (reminders alongside their parents)
- ``sync_to_cloud``: push parents before children, then sweep tombstones
  children before parents

Explicit syncs are serialized by a lock, wait for in-flight write-through
mirrors first, and raise ``SyncFailedError`` carrying the aggregated result
if any remote step failed. ``is_syncing``/``last_sync_error`` are observable
through ``subscribe_state``.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from labbook.errors import NotAuthenticatedError, RemoteNotConfiguredError, SyncFailedError
from labbook.logging_config import log_sync
from labbook.session import UserSession
from labbook.storage.mappings import IdentifierMappingStore
from labbook.storage.remote import RemoteStore
from labbook.storage.sqlite import SQLiteStorage
from labbook.types import (
    EntityType,
    IdMapping,
    ReminderSetting,
    SyncResult,
    SyncState,
    parse_datetime,
    to_iso,
    utc_now,
)

from .entities import (
    ExperimentSynchronizer,
    HypothesisSynchronizer,
    LogEntrySynchronizer,
    NoteSynchronizer,
    ProjectSynchronizer,
    ReminderSynchronizer,
)
from .synchronizer import EntitySynchronizer

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_time"


class SyncEngine:
    def __init__(
        self,
        local: SQLiteStorage,
        remote: Optional[RemoteStore],
        mappings: IdentifierMappingStore,
        session: UserSession,
        dedup_key: str = "name",
    ):
        self.local = local
        self.remote = remote
        self.mappings = mappings
        self.session = session

        deps = (local, remote, mappings, session)
        self.projects = ProjectSynchronizer(*deps, dedup_key=dedup_key)
        self.hypotheses = HypothesisSynchronizer(*deps, dedup_key=dedup_key)
        self.experiments = ExperimentSynchronizer(*deps, dedup_key=dedup_key)
        self.log_entries = LogEntrySynchronizer(*deps, dedup_key=dedup_key)
        self.notes = NoteSynchronizer(*deps, dedup_key=dedup_key)
        self.reminders = ReminderSynchronizer(*deps, dedup_key=dedup_key)

        self._lock = asyncio.Lock()
        self._state = SyncState()
        self._watchers: Set[asyncio.Queue] = set()

    @property
    def synchronizers(self) -> Tuple[EntitySynchronizer, ...]:
        """All synchronizers, parents before children."""
        return (
            self.projects,
            self.hypotheses,
            self.experiments,
            self.log_entries,
            self.notes,
            self.reminders,
        )

    def synchronizer_for(self, entity_type: EntityType) -> EntitySynchronizer:
        for synchronizer in self.synchronizers:
            if synchronizer.entity_type == entity_type:
                return synchronizer
        raise KeyError(entity_type)

    # === Observable State ===

    @property
    def state(self) -> SyncState:
        return replace(self._state)

    @property
    def is_syncing(self) -> bool:
        return self._state.is_syncing

    @property
    def last_sync_error(self) -> Optional[str]:
        return self._state.last_sync_error

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._state.last_result

    def _set_state(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        for queue in self._watchers:
            # Each watcher only needs the latest state
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(replace(self._state))

    def clear_sync_error(self) -> None:
        self._set_state(last_sync_error=None)

    async def subscribe_state(self) -> AsyncIterator[SyncState]:
        """Current state, then the latest change each time, until the consumer stops.

        A slow consumer skips intermediate states rather than queueing them.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._watchers.add(queue)
        try:
            yield replace(self._state)
            while True:
                yield await queue.get()
        finally:
            self._watchers.discard(queue)

    # === Explicit Sync ===

    async def drain(self) -> None:
        """Wait for all in-flight write-through mirrors."""
        await asyncio.gather(*(s.drain() for s in self.synchronizers))

    async def sync_from_cloud(self) -> SyncResult:
        return await self._run("pull", self._pull_all)

    async def sync_to_cloud(self) -> SyncResult:
        return await self._run("push", self._push_all)

    async def _run(self, direction: str, body: Callable[[str], Awaitable[SyncResult]]) -> SyncResult:
        try:
            user_id = self.session.require_user()
        except NotAuthenticatedError as e:
            self._set_state(last_sync_error=f"Sync {direction} failed: {e}")
            raise
        if self.remote is None:
            error = RemoteNotConfiguredError()
            self._set_state(last_sync_error=f"Sync {direction} failed: {error}")
            raise error

        async with self._lock:
            self._set_state(is_syncing=True, last_sync_error=None)
            try:
                await self.drain()
                result = await body(user_id)
            except Exception as e:
                logger.error(f"Sync {direction} aborted: {e}", exc_info=True)
                self._set_state(is_syncing=False, last_sync_error=f"Sync {direction} failed: {e}")
                raise

            log_sync(
                direction,
                pushed=result.pushed,
                pulled=result.pulled,
                deleted=result.deleted,
                skipped=result.skipped,
                conflicts=result.conflict_count,
                errors=len(result.errors),
            )
            if not result.success:
                error = SyncFailedError(direction, result)
                logger.error(str(error))
                self._set_state(is_syncing=False, last_sync_error=str(error), last_result=result)
                raise error

            now = utc_now()
            await self.local.set_meta(LAST_SYNC_KEY, to_iso(now))
            self._set_state(is_syncing=False, last_sync_time=now, last_result=result)
            logger.info(
                f"Sync {direction} complete: pushed={result.pushed}, pulled={result.pulled}, "
                f"conflicts={result.conflict_count}"
            )
            return result

    async def _live_mappings(self, entity_type: EntityType, user_id: str) -> List[IdMapping]:
        """Mappings whose local record still exists (tombstones excluded)."""
        live = []
        for mapping in await self.mappings.all_for_type(entity_type, user_id):
            if await self.local.get_by_id(entity_type, mapping.local_id) is not None:
                live.append(mapping)
        return live

    async def _pull_all(self, user_id: str) -> SyncResult:
        result = SyncResult()
        result.merge(await self.projects.pull_from_cloud())

        for project in await self._live_mappings(EntityType.PROJECT, user_id):
            result.merge(await self.hypotheses.pull_from_cloud(project.remote_id, project.local_id))
            result.merge(
                await self.reminders.pull_from_cloud(
                    project.remote_id, project.local_id, parent_type=EntityType.PROJECT
                )
            )

        for hypothesis in await self._live_mappings(EntityType.HYPOTHESIS, user_id):
            result.merge(await self.experiments.pull_from_cloud(hypothesis.remote_id, hypothesis.local_id))
            result.merge(await self.notes.pull_from_cloud(hypothesis.remote_id, hypothesis.local_id))
            result.merge(
                await self.reminders.pull_from_cloud(
                    hypothesis.remote_id, hypothesis.local_id, parent_type=EntityType.HYPOTHESIS
                )
            )

        for experiment in await self._live_mappings(EntityType.EXPERIMENT, user_id):
            result.merge(await self.log_entries.pull_from_cloud(experiment.remote_id, experiment.local_id))
            result.merge(
                await self.reminders.pull_from_cloud(
                    experiment.remote_id, experiment.local_id, parent_type=EntityType.EXPERIMENT
                )
            )
        return result

    async def _push_all(self, user_id: str) -> SyncResult:
        result = SyncResult()
        for synchronizer in self.synchronizers:
            result.merge(await synchronizer.push_to_cloud(sweep=False))
        for synchronizer in reversed(self.synchronizers):
            result.merge(await synchronizer.sweep_tombstones())
        return result

    # === Diagnostics & Session ===

    async def last_sync_time(self) -> Optional[datetime]:
        return parse_datetime(await self.local.get_meta(LAST_SYNC_KEY))

    async def status(self) -> Dict[str, Any]:
        user_id = self.session.user_id
        mapped = await self.mappings.count_for_user(user_id) if user_id else {}
        local_counts = {}
        for entity_type in EntityType:
            local_counts[entity_type.value] = await self.local.count(entity_type)
        last_sync = await self.last_sync_time()
        return {
            "user_id": user_id,
            "signed_in": user_id is not None,
            "is_syncing": self.is_syncing,
            "last_sync_error": self.last_sync_error,
            "last_sync_time": to_iso(last_sync),
            "pending_mirrors": sum(s.pending for s in self.synchronizers),
            "local": local_counts,
            "mapped": {t.value: mapped.get(t.value, 0) for t in EntityType},
        }

    async def get_all_active_reminders(self) -> List[ReminderSetting]:
        """Bulk read for the reminder scheduler."""
        return await self.reminders.active_reminders()

    async def sign_out(self) -> None:
        """Finish pending mirrors and end the session.

        Mappings are kept. They are scoped by user, so signing back in neither
        re-creates remote copies nor brings back tombstoned records.
        """
        await self.drain()
        self.session.sign_out()
