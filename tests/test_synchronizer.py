"""Tests for the per-entity synchronizers.

Tests:
- Write-through mirroring (insert, update, archive, delete) and its failures
- Pull-sync: import, last-writer-wins, adoption, tombstones, user isolation
- Push-sync: re-creating vanished documents, deferred children
- Live merged views
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from labbook.errors import ErrorKind, LocalStoreError, NotAuthenticatedError, RemoteNotConfiguredError
from labbook.sync import SyncEngine
from labbook.sync.entities import ProjectSynchronizer
from labbook.types import (
    EntityType,
    Experiment,
    Hypothesis,
    LogEntry,
    Project,
    ReminderEntityType,
    ReminderSetting,
    to_iso,
    utc_now,
)

from conftest import OTHER_USER, USER


async def synced_project(engine, name="Sleep study", **fields):
    project = Project(name=name, **fields)
    await engine.projects.insert(project)
    await engine.drain()
    return project


class TestWriteThrough:
    @pytest.mark.asyncio
    async def test_insert_mirrors_and_maps(self, engine, remote, mappings):
        project = await synced_project(engine, goal="Sleep better")

        assert project.id is not None
        assert await mappings.remote_id_for(EntityType.PROJECT, project.id, USER) == "r1"
        doc = remote.documents("projects")[0]
        assert doc["name"] == "Sleep study"
        assert doc["userId"] == USER

    @pytest.mark.asyncio
    async def test_insert_returns_before_remote_completes(self, engine, remote, mappings):
        remote.delay_next("add_document", 0.2)

        project = Project(name="Slow")
        local_id = await engine.projects.insert(project)

        assert await engine.projects.get_by_id(local_id) is not None
        assert engine.projects.pending == 1
        assert await mappings.remote_id_for(EntityType.PROJECT, local_id, USER) is None
        await engine.drain()
        assert await mappings.remote_id_for(EntityType.PROJECT, local_id, USER) == "r1"

    @pytest.mark.asyncio
    async def test_failed_mirror_leaves_record_for_next_push(self, engine, remote, mappings, caplog):
        sleep = await synced_project(engine, "Sleep study")
        remote.fail_next("add_document")

        with caplog.at_level(logging.WARNING, logger="labbook.sync.synchronizer"):
            diet = await synced_project(engine, "Diet study")

        assert await engine.projects.get_by_id(diet.id) is not None
        assert await mappings.remote_id_for(EntityType.PROJECT, diet.id, USER) is None
        assert "abandoned" in caplog.text

        result = await engine.projects.push_to_cloud()
        assert result.pushed == 2
        assert await mappings.remote_id_for(EntityType.PROJECT, sleep.id, USER) == "r1"
        assert await mappings.remote_id_for(EntityType.PROJECT, diet.id, USER) == "r2"

    @pytest.mark.asyncio
    async def test_raising_remote_is_contained(self, engine, remote, caplog):
        remote.add_document = AsyncMock(side_effect=RuntimeError("boom"))

        with caplog.at_level(logging.WARNING, logger="labbook.sync.synchronizer"):
            project = await synced_project(engine)

        assert await engine.projects.get_by_id(project.id) is not None
        assert "boom" in caplog.text

    @pytest.mark.asyncio
    async def test_update_stamps_and_mirrors(self, engine, remote):
        project = await synced_project(engine)
        before = project.updated_at

        project.name = "Sleep study v2"
        assert await engine.projects.update(project) is True
        await engine.drain()

        assert project.updated_at > before
        stored = await engine.projects.get_by_id(project.id)
        assert stored.updated_at == project.updated_at
        assert remote.documents("projects")[0]["name"] == "Sleep study v2"

    @pytest.mark.asyncio
    async def test_update_stamp_moves_forward_when_clock_lags(self, engine):
        project = await synced_project(engine)
        future = utc_now() + timedelta(hours=1)
        project.updated_at = future

        await engine.projects.update(project)
        await engine.drain()

        assert project.updated_at > future

    @pytest.mark.asyncio
    async def test_update_without_id_raises(self, engine):
        with pytest.raises(LocalStoreError):
            await engine.projects.update(Project(name="Unsaved"))

    @pytest.mark.asyncio
    async def test_update_unmapped_is_deferred(self, engine, remote, session):
        session.sign_out()
        project = Project(name="Offline")
        await engine.projects.insert(project)
        session.sign_in(USER)

        project.name = "Still offline"
        await engine.projects.update(project)
        await engine.drain()

        assert "update_document" not in remote.calls
        assert (await engine.projects.get_by_id(project.id)).name == "Still offline"

    @pytest.mark.asyncio
    async def test_update_of_vanished_document_drops_mapping(self, engine, remote, mappings):
        project = await synced_project(engine)
        remote.collections["projects"].clear()

        project.name = "Renamed"
        await engine.projects.update(project)
        await engine.drain()
        assert await mappings.remote_id_for(EntityType.PROJECT, project.id, USER) is None

        result = await engine.projects.push_to_cloud()
        assert result.pushed == 1
        assert await mappings.remote_id_for(EntityType.PROJECT, project.id, USER) == "r2"
        assert remote.documents("projects")[0]["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_signed_out_writes_stay_local(self, engine, remote, session):
        session.sign_out()

        project = Project(name="Offline")
        await engine.projects.insert(project)
        await engine.drain()

        assert project.user_id is None
        assert remote.calls == []
        assert await engine.projects.fetch_remote() == []
        with pytest.raises(NotAuthenticatedError):
            await engine.projects.pull_from_cloud()
        with pytest.raises(NotAuthenticatedError):
            await engine.projects.push_to_cloud()

    @pytest.mark.asyncio
    async def test_rapid_edits_race_is_repaired_by_push(self, engine, remote):
        """Two unordered mirrors can leave the remote on the older edit."""
        project = await synced_project(engine)
        original_update = remote.update_document

        async def slow_first(collection, doc_id, data):
            if data.get("name") == "First":
                await asyncio.sleep(0.2)
            return await original_update(collection, doc_id, data)

        remote.update_document = slow_first

        project.name = "First"
        await engine.projects.update(project)
        project.name = "Second"
        await engine.projects.update(project)
        await engine.drain()

        assert (await engine.projects.get_by_id(project.id)).name == "Second"
        assert remote.documents("projects")[0]["name"] == "First"

        await engine.projects.push_to_cloud()
        assert remote.documents("projects")[0]["name"] == "Second"

    def test_unknown_dedup_key(self, storage, remote, mappings, session):
        with pytest.raises(ValueError):
            ProjectSynchronizer(storage, remote, mappings, session, dedup_key="title")


class TestHierarchy:
    @pytest.mark.asyncio
    async def test_child_references_parent_remote_id(self, engine, remote):
        project = await synced_project(engine)
        hypothesis = Hypothesis(project_id=project.id, name="Less caffeine")
        await engine.hypotheses.insert(hypothesis)
        await engine.drain()

        doc = remote.documents("hypotheses")[0]
        assert doc["projectId"] == "r1"
        assert hypothesis.id not in doc.values()

    @pytest.mark.asyncio
    async def test_child_of_unsynced_parent_is_deferred(self, engine, remote, mappings, caplog):
        remote.fail_next("add_document")
        project = await synced_project(engine)

        hypothesis = Hypothesis(project_id=project.id, name="Less caffeine")
        with caplog.at_level(logging.INFO, logger="labbook.sync.synchronizer"):
            await engine.hypotheses.insert(hypothesis)
            await engine.drain()

        assert "deferred" in caplog.text
        assert remote.documents("hypotheses") == []

        skipped = await engine.hypotheses.push_to_cloud()
        assert skipped.skipped == 1

        await engine.sync_to_cloud()
        project_rid = await mappings.remote_id_for(EntityType.PROJECT, project.id, USER)
        assert project_rid is not None
        assert remote.documents("hypotheses")[0]["projectId"] == project_rid

    @pytest.mark.asyncio
    async def test_reminder_mirrors_with_parent_kind(self, engine, remote):
        project = await synced_project(engine)
        reminder = ReminderSetting(
            entity_type=ReminderEntityType.PROJECT, entity_id=project.id, title="Weekly review"
        )
        await engine.reminders.insert(reminder)
        await engine.drain()

        doc = remote.documents("reminder_settings")[0]
        assert (doc["entityType"], doc["entityId"]) == ("PROJECT", "r1")

        await engine.reminders.set_enabled(reminder.id, False)
        await engine.drain()
        assert remote.documents("reminder_settings")[0]["isEnabled"] is False


class TestDelete:
    @pytest.mark.asyncio
    async def test_cascade_reaches_remote_only_children(self, engine, remote, mappings):
        project = await synced_project(engine)
        hypothesis = Hypothesis(project_id=project.id, name="Local")
        await engine.hypotheses.insert(hypothesis)
        await engine.drain()
        # Created on another device, never pulled here
        remote.put("hypotheses", {"projectId": "r1", "userId": USER, "name": "Remote only"})
        remote.put("reminder_settings", {"entityType": "PROJECT", "entityId": "r1", "userId": USER, "title": "R"})

        assert await engine.projects.delete(project) is True
        await engine.drain()

        assert remote.documents("projects") == []
        assert remote.documents("hypotheses") == []
        assert remote.documents("reminder_settings") == []
        assert await mappings.count_for_user(USER) == {}
        assert await engine.hypotheses.get_by_id(hypothesis.id) is None

    @pytest.mark.asyncio
    async def test_failed_remote_delete_leaves_tombstone(self, engine, remote, mappings):
        project = await synced_project(engine)
        remote.fail_next("delete_document")

        await engine.projects.delete(project)
        await engine.drain()

        assert await engine.projects.get_by_id(project.id) is None
        assert await mappings.remote_id_for(EntityType.PROJECT, project.id, USER) == "r1"
        assert len(remote.documents("projects")) == 1

        pulled = await engine.projects.pull_from_cloud()
        assert pulled.skipped == 1
        assert await engine.local.count(EntityType.PROJECT) == 0

        pushed = await engine.projects.push_to_cloud()
        assert pushed.deleted == 1
        assert remote.documents("projects") == []
        assert await mappings.remote_id_for(EntityType.PROJECT, project.id, USER) is None

    @pytest.mark.asyncio
    async def test_unmapped_delete_is_local_only(self, engine, remote, session):
        session.sign_out()
        project = Project(name="Offline")
        await engine.projects.insert(project)
        session.sign_in(USER)

        await engine.projects.delete(project)
        await engine.drain()
        assert "delete_document" not in remote.calls


class TestPull:
    @pytest.mark.asyncio
    async def test_imports_and_maps(self, engine, remote, mappings):
        rid = remote.put("projects", {"name": "From phone", "goal": "Run", "userId": USER})

        result = await engine.projects.pull_from_cloud()

        assert result.pulled == 1
        local_id = await mappings.local_id_for(EntityType.PROJECT, rid, USER)
        project = await engine.projects.get_by_id(local_id)
        assert (project.name, project.goal, project.user_id) == ("From phone", "Run", USER)

    @pytest.mark.asyncio
    async def test_second_pull_is_a_noop(self, engine, remote):
        remote.put("projects", {"name": "From phone", "userId": USER})

        await engine.projects.pull_from_cloud()
        second = await engine.projects.pull_from_cloud()

        assert second.pulled == 0
        assert second.conflicts == []
        assert await engine.local.count(EntityType.PROJECT) == 1

    @pytest.mark.asyncio
    async def test_other_users_documents_are_ignored(self, engine, remote):
        remote.put("projects", {"name": "Theirs", "userId": OTHER_USER})
        result = await engine.projects.pull_from_cloud()
        assert result.pulled == 0
        assert await engine.local.count(EntityType.PROJECT) == 0

    @pytest.mark.asyncio
    async def test_newer_cloud_copy_wins(self, engine, remote):
        project = await synced_project(engine)
        doc = remote.collections["projects"]["r1"]
        doc["name"] = "Edited on phone"
        doc["updatedAt"] = to_iso(project.updated_at + timedelta(minutes=5))

        result = await engine.projects.pull_from_cloud()

        assert result.pulled == 1
        assert [c.resolution for c in result.conflicts] == ["cloud_wins"]
        assert (await engine.projects.get_by_id(project.id)).name == "Edited on phone"

    @pytest.mark.asyncio
    async def test_equal_timestamps_change_nothing(self, engine, remote):
        project = await synced_project(engine)
        remote.collections["projects"]["r1"]["name"] = "Same time, different name"

        result = await engine.projects.pull_from_cloud()

        assert result.pulled == 0
        assert result.conflicts == []
        assert (await engine.projects.get_by_id(project.id)).name == "Sleep study"

    @pytest.mark.asyncio
    async def test_archive_survives_older_cloud_copy(self, engine, remote):
        project = await synced_project(engine)
        remote.fail_next("update_document")
        await engine.projects.archive(project)
        await engine.drain()
        assert remote.documents("projects")[0]["isArchived"] is False

        result = await engine.projects.pull_from_cloud()

        assert [c.resolution for c in result.conflicts] == ["local_wins"]
        assert (await engine.projects.get_by_id(project.id)).archived is True

    @pytest.mark.asyncio
    async def test_adopts_unsynced_local_twin(self, engine, remote, mappings, session):
        session.sign_out()
        project = Project(name="Sleep study", goal="Sleep better")
        await engine.projects.insert(project)
        session.sign_in(USER)
        rid = remote.put("projects", {"name": "Sleep study", "goal": "Sleep better", "userId": USER})

        await engine.projects.pull_from_cloud()

        assert await engine.local.count(EntityType.PROJECT) == 1
        assert await mappings.local_id_for(EntityType.PROJECT, rid, USER) == project.id

    @pytest.mark.asyncio
    async def test_children_attach_to_local_parent(self, engine, remote):
        project = await synced_project(engine)
        remote.put("hypotheses", {"projectId": "r1", "userId": USER, "name": "From phone"})

        result = await engine.hypotheses.pull_from_cloud("r1", project.id)

        assert result.pulled == 1
        [hypothesis] = await engine.hypotheses.for_project(project.id)
        assert hypothesis.name == "From phone"

    @pytest.mark.asyncio
    async def test_child_pull_needs_parent_ids(self, engine):
        with pytest.raises(ValueError):
            await engine.hypotheses.pull_from_cloud()

    @pytest.mark.asyncio
    async def test_query_failure_is_reported(self, engine, remote):
        remote.fail_next("query_collection", ErrorKind.REMOTE_UNAVAILABLE)
        result = await engine.projects.pull_from_cloud()
        assert not result.success
        assert "Failed to pull projects" in result.errors[0]


class TestLiveViews:
    @pytest.mark.asyncio
    async def test_active_for_parent_merges_remote_children(self, engine, remote):
        project = await synced_project(engine)
        await engine.hypotheses.insert(Hypothesis(project_id=project.id, name="H"))
        await engine.drain()
        remote.put(
            "hypotheses",
            {"projectId": "r1", "userId": USER, "name": "K", "isArchived": False, "createdAt": to_iso(utc_now())},
        )
        remote.delay_next("query_collection", 0.2)

        stream = engine.hypotheses.active_for_parent(project.id)
        first = await asyncio.wait_for(stream.__anext__(), timeout=2)
        second = await asyncio.wait_for(stream.__anext__(), timeout=2)
        await stream.aclose()

        assert [h.name for h in first] == ["H"]
        assert sorted(h.name for h in second) == ["H", "K"]

    @pytest.mark.asyncio
    async def test_local_change_re_emits(self, engine):
        project = await synced_project(engine)
        stream = engine.hypotheses.all_for_parent(project.id)
        await asyncio.wait_for(stream.__anext__(), timeout=2)

        await engine.hypotheses.insert(Hypothesis(project_id=project.id, name="New"))
        names = set()
        while "New" not in names:
            names = {h.name for h in await asyncio.wait_for(stream.__anext__(), timeout=2)}
        await stream.aclose()
        await engine.drain()

    @pytest.mark.asyncio
    async def test_archived_children_hidden(self, engine):
        project = await synced_project(engine)
        await engine.hypotheses.insert(Hypothesis(project_id=project.id, name="Gone", archived=True))
        await engine.drain()

        stream = engine.hypotheses.active_for_parent(project.id)
        first = await asyncio.wait_for(stream.__anext__(), timeout=2)
        await stream.aclose()
        assert first == []

    @pytest.mark.asyncio
    async def test_identifier_mode_keeps_same_named_records(self, storage, remote, mappings, session):
        engine = SyncEngine(storage, remote, mappings, session, dedup_key="identifier")
        project = await synced_project(engine)
        await engine.hypotheses.insert(Hypothesis(project_id=project.id, name="Walk"))
        await engine.drain()
        remote.put("hypotheses", {"projectId": "r1", "userId": USER, "name": "Walk", "isArchived": False})

        records = await engine.hypotheses.fetch_remote(project.id)
        assert len(records) == 2
        assert sum(1 for r in records if r.id is not None) == 1

        remote.delay_next("query_collection", 0.2)
        stream = engine.hypotheses.active_for_parent(project.id)
        await asyncio.wait_for(stream.__anext__(), timeout=2)
        merged = await asyncio.wait_for(stream.__anext__(), timeout=2)
        await stream.aclose()
        assert [h.name for h in merged] == ["Walk", "Walk"]

    @pytest.mark.asyncio
    async def test_unsynced_parent_shows_local_only(self, engine, remote, session):
        session.sign_out()
        project = Project(name="Offline")
        await engine.projects.insert(project)
        session.sign_in(USER)

        assert await engine.hypotheses.fetch_remote(project.id) == []
        assert "query_collection" not in remote.calls


class TestEntityHelpers:
    @pytest.mark.asyncio
    async def test_experiment_marks(self, engine):
        project = await synced_project(engine)
        hypothesis = Hypothesis(project_id=project.id, name="H")
        await engine.hypotheses.insert(hypothesis)
        experiment = Experiment(hypothesis_id=hypothesis.id, name="Walk")
        await engine.experiments.insert(experiment)

        assert await engine.experiments.mark_logged(experiment.id) is True
        assert await engine.experiments.mark_notified(experiment.id) is True
        stored = await engine.experiments.get_by_id(experiment.id)
        assert stored.last_logged_at is not None
        assert stored.last_notification_sent is not None
        assert [e.id for e in await engine.experiments.with_notifications_enabled()] == [experiment.id]
        assert await engine.experiments.mark_logged(999) is False
        await engine.drain()

    @pytest.mark.asyncio
    async def test_latest_log_entries(self, engine):
        project = await synced_project(engine)
        hypothesis = Hypothesis(project_id=project.id, name="H")
        await engine.hypotheses.insert(hypothesis)
        experiment = Experiment(hypothesis_id=hypothesis.id, name="Walk")
        await engine.experiments.insert(experiment)
        base = utc_now()
        for minutes, response in ((0, "early"), (10, "late")):
            await engine.log_entries.insert(
                LogEntry(experiment_id=experiment.id, response=response, created_at=base + timedelta(minutes=minutes))
            )
        await engine.drain()

        assert (await engine.log_entries.latest_for_experiment(experiment.id)).response == "late"
        assert (await engine.log_entries.latest_after(experiment.id, base + timedelta(minutes=5))).response == "late"
        assert await engine.log_entries.latest_after(experiment.id, base + timedelta(hours=1)) is None

    @pytest.mark.asyncio
    async def test_archived_projects(self, engine):
        project = await synced_project(engine)
        await engine.projects.archive(project)
        await engine.drain()
        assert [p.id for p in await engine.projects.archived_projects()] == [project.id]

    @pytest.mark.asyncio
    async def test_reminders_for_entity_rejects_log_entries(self, engine):
        with pytest.raises(ValueError):
            engine.reminders.for_entity(EntityType.LOG_ENTRY, 1)

    @pytest.mark.asyncio
    async def test_project_tree(self, engine):
        project = await synced_project(engine)
        walking = Hypothesis(project_id=project.id, name="Walking")
        caffeine = Hypothesis(project_id=project.id, name="Caffeine", archived=True)
        await engine.hypotheses.insert(walking)
        await engine.hypotheses.insert(caffeine)
        await engine.experiments.insert(Experiment(hypothesis_id=walking.id, name="10k steps"))
        await engine.experiments.insert(Experiment(hypothesis_id=walking.id, name="Evening walk"))
        await engine.drain()

        tree = await engine.projects.project_tree(project.id)

        assert tree.project.id == project.id
        experiments = {h.hypothesis.name: sorted(e.name for e in h.experiments) for h in tree.hypotheses}
        assert experiments == {"Walking": ["10k steps", "Evening walk"], "Caffeine": []}

        shallow = await engine.projects.project_tree(project.id, with_experiments=False)
        assert all(h.experiments == [] for h in shallow.hypotheses)
        assert await engine.projects.project_tree(999) is None

    @pytest.mark.asyncio
    async def test_hypothesis_with_experiments(self, engine):
        project = await synced_project(engine)
        hypothesis = Hypothesis(project_id=project.id, name="Walking")
        await engine.hypotheses.insert(hypothesis)
        await engine.experiments.insert(Experiment(hypothesis_id=hypothesis.id, name="10k steps"))
        await engine.drain()

        tree = await engine.hypotheses.with_experiments(hypothesis.id)

        assert tree.hypothesis.name == "Walking"
        assert [e.name for e in tree.experiments] == ["10k steps"]
        assert await engine.hypotheses.with_experiments(999) is None


class TestWithoutRemote:
    @pytest.fixture
    def local_engine(self, storage, mappings, session):
        return SyncEngine(storage, None, mappings, session)

    @pytest.mark.asyncio
    async def test_writes_stay_local(self, local_engine, mappings):
        project = Project(name="Offline")
        await local_engine.projects.insert(project)
        project.goal = "Sleep more"
        await local_engine.projects.update(project)

        assert local_engine.projects.pending == 0
        assert (await local_engine.projects.get_by_id(project.id)).goal == "Sleep more"
        assert await local_engine.projects.delete(project) is True
        assert local_engine.projects.pending == 0
        assert await mappings.count_for_user(USER) == {}

    @pytest.mark.asyncio
    async def test_live_view_shows_local_records(self, local_engine):
        await local_engine.projects.insert(Project(name="Offline"))

        assert await local_engine.projects.fetch_remote() == []
        stream = local_engine.projects.active_projects()
        first = await asyncio.wait_for(stream.__anext__(), timeout=2)
        await stream.aclose()
        assert [p.name for p in first] == ["Offline"]

    @pytest.mark.asyncio
    async def test_explicit_sync_raises(self, local_engine):
        with pytest.raises(RemoteNotConfiguredError):
            await local_engine.projects.pull_from_cloud()
        with pytest.raises(RemoteNotConfiguredError):
            await local_engine.projects.push_to_cloud()
        with pytest.raises(RemoteNotConfiguredError):
            await local_engine.projects.sweep_tombstones()
