import logging
from collections.abc import Sequence

from django.conf import settings

from .allocator import allocate, build_existing_assignment_map
from .capacity import CapacityTracker, SiteChooser
from .exceptions import CapacityExceeded, TaskNotFound, ValidationError
from .grouping import group_tasks, real_instances
from .lifecycle import ensure_transition
from .schemas import (
    AssignmentSummarySchema, CapacityDecision, GroupedTaskView, SiteCapacitySchema,
    TaskInstanceSchema, TaskTemplateIn, TaskTemplateSchema,
)
from .store import (
    AssigneeDirectory, OrmAssigneeDirectory, OrmSiteDirectory, OrmTaskStore,
    SiteDirectory, TaskStore,
)

logger = logging.getLogger(__name__)


def _setting(name: str, default):
    return getattr(settings, "TASKING", {}).get(name, default)


def _unique_ids(ids: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(ids))


class TaskBoardService:
    """Service class for the task list shown to operators."""

    SEARCH_FIELDS = ("title", "description", "assigned_to_name", "site_name", "client_name", "task_type")

    @classmethod
    def filter_tasks(cls, tasks: Sequence[TaskInstanceSchema], site_id: str | None = None,
                     status: str | None = None, priority: str | None = None,
                     assigned_to: str | None = None, query: str | None = None) -> list[TaskInstanceSchema]:
        """Apply the board filters; ``query`` matches any searchable field, case-insensitively."""
        result = []
        needle = (query or "").strip().lower()
        for task in tasks:
            if site_id and task.site_id != site_id:
                continue
            if status and task.status != status:
                continue
            if priority and task.priority != priority:
                continue
            if assigned_to and task.assigned_to != assigned_to:
                continue
            if needle and not any(needle in getattr(task, field).lower() for field in cls.SEARCH_FIELDS):
                continue
            result.append(task)
        return result

    @classmethod
    def build_board(cls, tasks: Sequence[TaskInstanceSchema], **filters) -> list[TaskInstanceSchema | GroupedTaskView]:
        """Real instances only, filtered, then grouped for display."""
        instances = cls.filter_tasks(real_instances(tasks), **filters)

        # Drop repeated ids before grouping
        seen = set()
        unique = []
        for task in instances:
            if task.id not in seen:
                seen.add(task.id)
                unique.append(task)
        return group_tasks(unique)


class TaskAssignmentService:
    """Service class for fanning task templates out to sites and assignees."""

    def __init__(self, task_store: TaskStore, site_directory: SiteDirectory,
                 assignee_directory: AssigneeDirectory, chooser: SiteChooser | None = None):
        self.task_store = task_store
        self.site_directory = site_directory
        self.assignee_directory = assignee_directory
        self.chooser = chooser

    @classmethod
    def default(cls) -> "TaskAssignmentService":
        return cls(OrmTaskStore(), OrmSiteDirectory(), OrmAssigneeDirectory())

    def _tracker(self) -> CapacityTracker:
        return CapacityTracker(
            self.site_directory.get_all_sites(),
            self.assignee_directory.get_all_assignees(),
            self.chooser,
        )

    def check_capacity(self, candidate_id: str, site_ids: Sequence[str],
                       assignee_ids: Sequence[str]) -> CapacityDecision:
        tracker = self._tracker()
        candidate = tracker.assignees.get(candidate_id)
        if candidate is None:
            raise ValidationError(f"Assignee {candidate_id} not found")
        return tracker.check(candidate, _unique_ids(site_ids), _unique_ids(assignee_ids))

    def site_capacity(self, site_ids: Sequence[str], assignee_ids: Sequence[str]) -> list[SiteCapacitySchema]:
        return self._tracker().site_report(_unique_ids(site_ids), _unique_ids(assignee_ids))

    def get_task_board(self, **filters) -> list[TaskInstanceSchema | GroupedTaskView]:
        return TaskBoardService.build_board(self.task_store.get_all_tasks(), **filters)

    def list_templates(self) -> list[TaskInstanceSchema]:
        return [task for task in self.task_store.get_all_tasks() if task.is_placeholder]

    def create_template(self, data: TaskTemplateIn) -> TaskInstanceSchema:
        if not data.title.strip() or not data.description.strip():
            raise ValidationError("Task title and description are required")
        template = TaskTemplateSchema(
            title=data.title,
            description=data.description,
            priority=data.priority,
            task_type=data.task_type,
            deadline=data.deadline,
            due_date_time=data.due_date_time,
        )
        return self.task_store.create_task(template, created_by=data.created_by)

    def assign_template(self, template_id: str, assignee_ids: Sequence[str], site_ids: Sequence[str],
                        created_by: str = "system") -> AssignmentSummarySchema:
        """
        Assign one template to every selected assignee at every selected site.
        Snapshots are re-read here so the duplicate check sees the latest tasks.
        """
        if not template_id:
            raise ValidationError("Please select a task to assign")
        assignee_ids = _unique_ids(assignee_ids)
        site_ids = _unique_ids(site_ids)
        if not assignee_ids:
            raise ValidationError("Please select at least one assignee")
        if not site_ids:
            raise ValidationError("Please select at least one site")

        tasks = self.task_store.get_all_tasks()
        sites = self.site_directory.get_all_sites()
        assignees = self.assignee_directory.get_all_assignees()

        template = next((task for task in tasks if task.id == template_id), None)
        if template is None or not template.is_placeholder:
            raise ValidationError(f"Task template {template_id} not found")

        assignee_lookup = {assignee.id: assignee for assignee in assignees}
        site_lookup = {site.id: site for site in sites}
        missing = [a_id for a_id in assignee_ids if a_id not in assignee_lookup]
        missing += [s_id for s_id in site_ids if s_id not in site_lookup]
        if missing:
            raise ValidationError(f"Selected assignees or sites not found: {', '.join(missing)}")

        chosen_assignees = [assignee_lookup[a_id] for a_id in assignee_ids]
        chosen_sites = [site_lookup[s_id] for s_id in site_ids]

        max_batch = _setting("MAX_BATCH_SIZE", 500)
        if len(chosen_assignees) * len(chosen_sites) > max_batch:
            raise ValidationError(
                f"Selection would create {len(chosen_assignees) * len(chosen_sites)} tasks; "
                f"the limit is {max_batch}"
            )

        # Replay the selection one pick at a time, as the selector does
        tracker = CapacityTracker(sites, assignees, self.chooser)
        for index, assignee in enumerate(chosen_assignees):
            decision = tracker.check(assignee, site_ids, assignee_ids[:index])
            if not decision.can_select:
                raise CapacityExceeded(assignee.name, decision.reason)

        existing = build_existing_assignment_map(tasks)
        result = allocate(template.as_template(), chosen_assignees, chosen_sites, existing, created_by)
        for pair in result.skipped:
            logger.debug("Skipped %s at %s (%s)", pair.assignee_name, pair.site_name, pair.reason)

        duplicate_skipped = len(result.duplicate_skips)
        capacity_skipped = len(result.capacity_skips)

        if not result.created:
            logger.info("Template %s: nothing to create (%d skipped)", template_id, len(result.skipped))
            return AssignmentSummarySchema(
                created=0,
                skipped=len(result.skipped),
                duplicate_skipped=duplicate_skipped,
                capacity_skipped=capacity_skipped,
                message=result.warning or "No new tasks to create.",
                warning=result.warning,
                skipped_pairs=result.skipped,
            )

        batch = self.task_store.create_multiple_tasks(
            result.created,
            created_by=created_by,
            timeout=_setting("BATCH_CREATE_TIMEOUT", None),
        )

        # Assignees whose every pair was skipped received nothing
        assignee_count = len({task.assigned_to for task in batch.tasks})
        site_count = len({task.site_id for task in batch.tasks})
        message = (f"Successfully created {batch.created} new task(s) for {assignee_count} "
                   f"assignee(s) across {site_count} site(s)!")
        if duplicate_skipped:
            message += f" {duplicate_skipped} combination(s) were skipped (already assigned)."
        if capacity_skipped:
            message += f" {capacity_skipped} combination(s) were skipped (site capacity)."
        logger.info("Template %s: created %d, skipped %d", template_id, batch.created, len(result.skipped))

        return AssignmentSummarySchema(
            created=batch.created,
            skipped=len(result.skipped),
            duplicate_skipped=duplicate_skipped,
            capacity_skipped=capacity_skipped,
            message=message,
            skipped_pairs=result.skipped,
            tasks=batch.tasks,
        )

    def _existing_statuses(self, task_ids: Sequence[str]) -> dict[str, str]:
        if not task_ids:
            raise ValidationError("No tasks selected")
        current = {task.id: task.status for task in self.task_store.get_all_tasks()}
        for task_id in task_ids:
            if task_id not in current:
                raise TaskNotFound(task_id)
        return current

    def update_group_status(self, task_ids: Sequence[str], status: str) -> int:
        """Move every task of a group to ``status``; all ids and transitions are checked first."""
        task_ids = _unique_ids(task_ids)
        current = self._existing_statuses(task_ids)
        for task_id in task_ids:
            ensure_transition(current[task_id], status)
        return self.task_store.update_tasks_status(task_ids, status)

    def delete_group(self, task_ids: Sequence[str]) -> int:
        task_ids = _unique_ids(task_ids)
        self._existing_statuses(task_ids)
        self.task_store.delete_tasks(task_ids)
        return len(task_ids)
