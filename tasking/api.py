from django.http import HttpRequest
from ninja import File, NinjaAPI, Swagger
from ninja.files import UploadedFile

from .exceptions import TaskingError
from .schemas import (
    AssignmentSummarySchema, AssignTasksIn, AttachmentSchema, CapacityCheckIn,
    CapacityDecision, GroupActionSchema, GroupDeleteIn, GroupStatusIn, HourlyUpdateIn,
    MessageSchema, Priority, SiteCapacityIn, SiteCapacitySchema, StatusUpdateIn,
    TaskBoardItem, TaskInstanceSchema, TaskStatus, TaskTemplateIn,
)
from .services import TaskAssignmentService

api = NinjaAPI(docs=Swagger(settings={"persistAuthorization": True}))


def get_service() -> TaskAssignmentService:
    return TaskAssignmentService.default()


@api.exception_handler(TaskingError)
def tasking_error(request: HttpRequest, exc: TaskingError):
    return api.create_response(request, {"message": str(exc)}, status=exc.status_code)


@api.get("/tasks", response=list[TaskBoardItem])
def get_task_board(request: HttpRequest, site_id: str | None = None, status: TaskStatus | None = None,
                   priority: Priority | None = None, assigned_to: str | None = None, q: str | None = None):
    """
    Assigned tasks for the operations board.
    Instances of the same task with the same deadline at the same site are
    returned as one grouped item (``kind == "group"``).
    """
    return get_service().get_task_board(
        site_id=site_id, status=status, priority=priority, assigned_to=assigned_to, query=q
    )


@api.get("/tasks/templates", response=list[TaskInstanceSchema])
def list_templates(request: HttpRequest):
    """Unassigned task templates available for assignment."""
    return get_service().list_templates()


@api.post("/tasks", response={201: TaskInstanceSchema})
def create_template(request: HttpRequest, payload: TaskTemplateIn):
    return 201, get_service().create_template(payload)


@api.post("/tasks/assign", response=AssignmentSummarySchema)
def assign_tasks(request: HttpRequest, payload: AssignTasksIn):
    """
    Create one task per selected assignee and site from a template.

    - Sites that already have this task (for any assignee) are skipped.
    - Assignees that would overfill a site's manager/supervisor slots are rejected.
    - All new tasks are created in a single batch; on failure re-read the task list.
    """
    return get_service().assign_template(
        payload.template_id, payload.assignee_ids, payload.site_ids, payload.created_by
    )


@api.post("/tasks/group/status", response=GroupActionSchema)
def update_group_status(request: HttpRequest, payload: GroupStatusIn):
    updated = get_service().update_group_status(payload.task_ids, payload.status)
    return GroupActionSchema(updated=updated, message=f"Updated status for {updated} tasks!")


@api.post("/tasks/group/delete", response=GroupActionSchema)
def delete_group(request: HttpRequest, payload: GroupDeleteIn):
    deleted = get_service().delete_group(payload.task_ids)
    return GroupActionSchema(updated=deleted, message=f"Deleted {deleted} tasks successfully!")


@api.patch("/tasks/{task_id}/status", response=TaskInstanceSchema)
def update_task_status(request: HttpRequest, task_id: str, payload: StatusUpdateIn):
    return get_service().task_store.update_task_status(task_id, payload.status)


@api.delete("/tasks/{task_id}", response=MessageSchema)
def delete_task(request: HttpRequest, task_id: str):
    get_service().task_store.delete_task(task_id)
    return MessageSchema(message="Task deleted successfully")


@api.post("/tasks/{task_id}/hourly-updates", response=TaskInstanceSchema)
def add_hourly_update(request: HttpRequest, task_id: str, payload: HourlyUpdateIn):
    return get_service().task_store.add_hourly_update(task_id, payload.content, payload.submitted_by)


@api.post("/tasks/{task_id}/attachments", response={201: AttachmentSchema})
def upload_attachment(request: HttpRequest, task_id: str, file: UploadedFile = File(...)):
    return 201, get_service().task_store.upload_attachment(task_id, file)


@api.delete("/tasks/{task_id}/attachments/{attachment_id}", response=MessageSchema)
def delete_attachment(request: HttpRequest, task_id: str, attachment_id: str):
    get_service().task_store.delete_attachment(task_id, attachment_id)
    return MessageSchema(message="Attachment deleted successfully")


@api.post("/capacity/check", response=CapacityDecision)
def check_capacity(request: HttpRequest, payload: CapacityCheckIn):
    """Whether an assignee can still join the current selection of sites and assignees."""
    return get_service().check_capacity(payload.candidate_id, payload.site_ids, payload.assignee_ids)


@api.post("/capacity/sites", response=list[SiteCapacitySchema])
def site_capacity(request: HttpRequest, payload: SiteCapacityIn):
    return get_service().site_capacity(payload.site_ids, payload.assignee_ids)
