from datetime import datetime
from typing import Literal, Union

from ninja import Schema
from pydantic import ConfigDict

Priority = Literal["high", "medium", "low"]
TaskStatus = Literal["pending", "in-progress", "completed", "cancelled"]
Role = Literal["manager", "supervisor"]
SkipReason = Literal["duplicate", "capacity"]

UNASSIGNED = "unassigned"
UNSPECIFIED_SITE = "unspecified"


class SnapshotSchema(Schema):
    """Immutable snapshot handed to the engine by a collaborator."""
    model_config = ConfigDict(frozen=True)


class AttachmentSchema(SnapshotSchema):
    id: str
    filename: str
    url: str
    size: int = 0
    type: str = "application/octet-stream"
    uploaded_at: datetime | None = None


class HourlyUpdateSchema(SnapshotSchema):
    id: str
    timestamp: datetime
    content: str
    submitted_by: str


class TaskTemplateSchema(SnapshotSchema):
    """Unassigned task definition that gets fanned out to sites and assignees."""
    title: str
    description: str
    priority: Priority = "medium"
    task_type: str = "routine"
    deadline: datetime
    due_date_time: datetime
    attachments: list[AttachmentSchema] = []
    status: TaskStatus = "pending"


class NewTaskInstanceSchema(TaskTemplateSchema):
    """Task instance produced by the allocator, not yet persisted."""
    assigned_to: str
    assigned_to_name: str
    site_id: str
    site_name: str
    client_name: str
    hourly_updates: list[HourlyUpdateSchema] = []
    created_by: str = "system"


class TaskInstanceSchema(NewTaskInstanceSchema):
    """Persisted task instance as returned by the task store."""
    kind: Literal["task"] = "task"
    id: str
    created_at: datetime
    updated_at: datetime

    @property
    def is_placeholder(self) -> bool:
        return self.assigned_to == UNASSIGNED and self.site_id == UNSPECIFIED_SITE

    def as_template(self) -> TaskTemplateSchema:
        return TaskTemplateSchema(
            title=self.title,
            description=self.description,
            priority=self.priority,
            task_type=self.task_type,
            deadline=self.deadline,
            due_date_time=self.due_date_time,
            attachments=list(self.attachments),
        )


class GroupedTaskView(TaskInstanceSchema):
    """Display aggregate over two or more instances sharing a group key.

    Scalar task fields are taken from the first instance of the bucket. The
    id is synthetic and never matches a stored task; per-instance actions
    must go through ``group_items``.
    """
    kind: Literal["group"] = "group"
    group_count: int
    assignee_ids: list[str]
    assignee_names: list[str]
    site_ids: list[str]
    site_names: list[str]
    client_names: list[str]
    overall_status: TaskStatus
    total_attachments: int
    total_hourly_updates: int
    all_attachments: list[AttachmentSchema]
    all_hourly_updates: list[HourlyUpdateSchema]
    group_items: list[TaskInstanceSchema]


# kind tells the two apart: a view never validates as a plain task and vice versa
TaskBoardItem = Union[GroupedTaskView, TaskInstanceSchema]


class AssigneeSchema(SnapshotSchema):
    id: str
    name: str
    role: Role
    site_id: str | None = None
    department: str = ""


class SiteSchema(SnapshotSchema):
    id: str
    name: str
    client_name: str
    manager_count: int = 0
    supervisor_count: int = 0

    def capacity_for(self, role: str) -> int:
        if role == "manager":
            return self.manager_count
        if role == "supervisor":
            return self.supervisor_count
        return 0


class CapacityDecision(Schema):
    can_select: bool
    reason: str


class SiteCapacitySchema(Schema):
    """Per-site slot usage for the current tentative selection."""
    site_id: str
    site_name: str
    manager_limit: int
    supervisor_limit: int
    managers_used: int
    supervisors_used: int
    managers_remaining: int
    supervisors_remaining: int


class SkippedPair(Schema):
    assignee_id: str
    assignee_name: str
    site_id: str
    site_name: str
    reason: SkipReason


class AllocationResult(Schema):
    created: list[NewTaskInstanceSchema]
    skipped: list[SkippedPair]
    warning: str | None = None

    @property
    def duplicate_skips(self) -> list[SkippedPair]:
        return [pair for pair in self.skipped if pair.reason == "duplicate"]

    @property
    def capacity_skips(self) -> list[SkippedPair]:
        return [pair for pair in self.skipped if pair.reason == "capacity"]


class BatchResult(Schema):
    created: int
    tasks: list[TaskInstanceSchema]


class AssignmentSummarySchema(Schema):
    """Outcome of assigning one template to the selected assignees and sites."""
    created: int
    skipped: int
    duplicate_skipped: int
    capacity_skipped: int
    message: str
    warning: str | None = None
    skipped_pairs: list[SkippedPair] = []
    tasks: list[TaskInstanceSchema] = []


class TaskTemplateIn(Schema):
    title: str
    description: str
    priority: Priority = "medium"
    task_type: str = "routine"
    deadline: datetime
    due_date_time: datetime
    created_by: str = "system"


class AssignTasksIn(Schema):
    template_id: str
    assignee_ids: list[str]
    site_ids: list[str]
    created_by: str = "system"


class CapacityCheckIn(Schema):
    candidate_id: str
    site_ids: list[str]
    assignee_ids: list[str] = []


class SiteCapacityIn(Schema):
    site_ids: list[str]
    assignee_ids: list[str] = []


class StatusUpdateIn(Schema):
    status: TaskStatus


class GroupStatusIn(Schema):
    task_ids: list[str]
    status: TaskStatus


class GroupDeleteIn(Schema):
    task_ids: list[str]


class HourlyUpdateIn(Schema):
    content: str
    submitted_by: str


class GroupActionSchema(Schema):
    updated: int
    message: str


class MessageSchema(Schema):
    message: str
