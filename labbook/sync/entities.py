"""Concrete synchronizers, one per entity type."""

from datetime import datetime
from typing import AsyncIterator, List, Optional

from labbook.types import (
    EntityType,
    Experiment,
    Hypothesis,
    HypothesisTree,
    LogEntry,
    Note,
    Project,
    ProjectTree,
    ReminderEntityType,
    ReminderSetting,
    utc_now,
)

from .synchronizer import EntitySynchronizer


class ProjectSynchronizer(EntitySynchronizer):
    entity_type = EntityType.PROJECT

    def active_projects(self) -> AsyncIterator[List[Project]]:
        return self.active_for_parent()

    async def archived_projects(self) -> List[Project]:
        return await self.local.find(EntityType.PROJECT, archived=1)

    async def project_tree(self, project_id: int, with_experiments: bool = True) -> Optional[ProjectTree]:
        """A local project with its hypotheses (and their experiments), archived included."""
        project = await self.get_by_id(project_id)
        if project is None:
            return None
        tree = ProjectTree(project)
        for hypothesis in await self.local.list_for_parent(EntityType.HYPOTHESIS, project_id):
            experiments = []
            if with_experiments:
                experiments = await self.local.list_for_parent(EntityType.EXPERIMENT, hypothesis.id)
            tree.hypotheses.append(HypothesisTree(hypothesis, experiments))
        return tree


class HypothesisSynchronizer(EntitySynchronizer):
    entity_type = EntityType.HYPOTHESIS

    async def for_project(self, project_id: int) -> List[Hypothesis]:
        return await self.local.list_for_parent(EntityType.HYPOTHESIS, project_id)

    async def with_experiments(self, hypothesis_id: int) -> Optional[HypothesisTree]:
        hypothesis = await self.get_by_id(hypothesis_id)
        if hypothesis is None:
            return None
        return HypothesisTree(
            hypothesis, await self.local.list_for_parent(EntityType.EXPERIMENT, hypothesis_id)
        )


class ExperimentSynchronizer(EntitySynchronizer):
    entity_type = EntityType.EXPERIMENT

    async def with_notifications_enabled(self) -> List[Experiment]:
        """Active experiments the notification scheduler should prompt for."""
        return await self.local.find(EntityType.EXPERIMENT, notifications_enabled=1, archived=0)

    async def mark_logged(self, experiment_id: int, when: Optional[datetime] = None) -> bool:
        experiment = await self.get_by_id(experiment_id)
        if experiment is None:
            return False
        experiment.last_logged_at = when or utc_now()
        return await self.update(experiment)

    async def mark_notified(self, experiment_id: int, when: Optional[datetime] = None) -> bool:
        experiment = await self.get_by_id(experiment_id)
        if experiment is None:
            return False
        experiment.last_notification_sent = when or utc_now()
        return await self.update(experiment)


class LogEntrySynchronizer(EntitySynchronizer):
    entity_type = EntityType.LOG_ENTRY

    async def latest_for_experiment(self, experiment_id: int) -> Optional[LogEntry]:
        entries = await self.local.list_for_parent(EntityType.LOG_ENTRY, experiment_id)
        return entries[0] if entries else None

    async def latest_after(self, experiment_id: int, timestamp: datetime) -> Optional[LogEntry]:
        """Newest entry logged after ``timestamp`` (answers to a given prompt)."""
        for entry in await self.local.list_for_parent(EntityType.LOG_ENTRY, experiment_id):
            if entry.created_at is not None and entry.created_at > timestamp:
                return entry
        return None


class NoteSynchronizer(EntitySynchronizer):
    entity_type = EntityType.NOTE

    async def for_hypothesis(self, hypothesis_id: int) -> List[Note]:
        return await self.local.list_for_parent(EntityType.NOTE, hypothesis_id)


class ReminderSynchronizer(EntitySynchronizer):
    entity_type = EntityType.REMINDER

    def for_entity(self, parent_type: EntityType, parent_id: int) -> AsyncIterator[List[ReminderSetting]]:
        """Live view of every reminder attached to one project, hypothesis or experiment."""
        ReminderEntityType.for_entity(parent_type)  # rejects log entries and notes
        return self.all_for_parent(parent_id, parent_type=parent_type)

    async def active_reminders(self) -> List[ReminderSetting]:
        return await self.local.active_reminders()

    async def set_enabled(self, reminder_id: int, is_enabled: bool) -> bool:
        reminder = await self.get_by_id(reminder_id)
        if reminder is None:
            return False
        reminder.is_enabled = is_enabled
        return await self.update(reminder)
