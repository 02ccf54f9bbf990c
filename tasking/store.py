"""Collaborators that supply snapshots to the engine and persist its output.

The protocols are what the services depend on. The ``Orm*`` classes back
them with the Django models and normalise rows into strict snapshots here,
once, so the engine never sees missing fields.
"""

import logging
import time
from collections.abc import Sequence
from typing import Protocol

from django.core.files.storage import default_storage
from django.db import DatabaseError, transaction

from .exceptions import BatchCreateFailure, TaskNotFound, ValidationError
from .lifecycle import ensure_transition
from .models import Assignee, Attachment, HourlyUpdate, Site, Task
from .schemas import (
    UNASSIGNED, UNSPECIFIED_SITE, AssigneeSchema, AttachmentSchema, BatchResult,
    HourlyUpdateSchema, NewTaskInstanceSchema, SiteSchema, TaskInstanceSchema,
    TaskTemplateSchema,
)

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    def get_all_tasks(self) -> list[TaskInstanceSchema]: ...

    def create_task(self, template: TaskTemplateSchema, created_by: str = "system") -> TaskInstanceSchema: ...

    def create_multiple_tasks(self, tasks: Sequence[NewTaskInstanceSchema], created_by: str,
                              timeout: float | None = None) -> BatchResult: ...

    def update_task_status(self, task_id: str, status: str) -> TaskInstanceSchema: ...

    def delete_task(self, task_id: str) -> None: ...

    def update_tasks_status(self, task_ids: Sequence[str], status: str) -> int: ...

    def delete_tasks(self, task_ids: Sequence[str]) -> None: ...

    def add_hourly_update(self, task_id: str, content: str, submitted_by: str) -> TaskInstanceSchema: ...

    def upload_attachment(self, task_id: str, file) -> AttachmentSchema: ...

    def delete_attachment(self, task_id: str, attachment_id: str) -> None: ...


class SiteDirectory(Protocol):
    def get_all_sites(self) -> list[SiteSchema]: ...


class AssigneeDirectory(Protocol):
    def get_all_assignees(self) -> list[AssigneeSchema]: ...


def derive_role_capacity(deployment) -> tuple[int, int]:
    """Sum staff deployment counts whose role text names a manager or supervisor."""
    managers = supervisors = 0
    for entry in deployment:
        role = (entry.role or "").lower()
        if "manager" in role:
            managers += entry.count
        elif "supervisor" in role:
            supervisors += entry.count
    return managers, supervisors


def _to_attachment(row: Attachment) -> AttachmentSchema:
    return AttachmentSchema(
        id=str(row.id),
        filename=row.filename,
        url=row.url,
        size=row.size,
        type=row.content_type,
        uploaded_at=row.uploaded_at,
    )


def _to_hourly_update(row: HourlyUpdate) -> HourlyUpdateSchema:
    return HourlyUpdateSchema(
        id=str(row.id),
        timestamp=row.timestamp,
        content=row.content,
        submitted_by=row.submitted_by,
    )


def _to_instance(row: Task) -> TaskInstanceSchema:
    return TaskInstanceSchema(
        id=str(row.id),
        title=row.title,
        description=row.description,
        priority=row.priority,
        task_type=row.task_type,
        status=row.status,
        deadline=row.deadline,
        due_date_time=row.due_date_time,
        assigned_to=str(row.assignee_id) if row.assignee_id else UNASSIGNED,
        assigned_to_name=row.assigned_to_name or "Unassigned",
        site_id=str(row.site_id) if row.site_id else UNSPECIFIED_SITE,
        site_name=row.site_name or "Unspecified Site",
        client_name=row.client_name or "Unspecified Client",
        attachments=[_to_attachment(a) for a in row.attachments.all()],
        hourly_updates=[_to_hourly_update(u) for u in row.hourly_updates.all()],
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _pk(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise TaskNotFound(value) from None


class OrmTaskStore:
    """Task store backed by the ``Task`` table."""

    def _queryset(self):
        return Task.objects.prefetch_related("attachments", "hourly_updates").order_by("-created_at", "-id")

    def _get(self, task_id: str) -> Task:
        try:
            return self._queryset().get(pk=_pk(task_id))
        except Task.DoesNotExist:
            raise TaskNotFound(task_id) from None

    def get_task(self, task_id: str) -> TaskInstanceSchema:
        return _to_instance(self._get(task_id))

    def get_all_tasks(self) -> list[TaskInstanceSchema]:
        return [_to_instance(row) for row in self._queryset()]

    def create_task(self, template: TaskTemplateSchema, created_by: str = "system") -> TaskInstanceSchema:
        """Store a template placeholder: no assignee and no site."""
        row = Task.objects.create(
            title=template.title.strip(),
            description=template.description.strip(),
            priority=template.priority,
            task_type=template.task_type,
            deadline=template.deadline,
            due_date_time=template.due_date_time,
            created_by=created_by,
        )
        return self.get_task(str(row.id))

    def create_multiple_tasks(self, tasks: Sequence[NewTaskInstanceSchema], created_by: str,
                              timeout: float | None = None) -> BatchResult:
        """Insert every instance or none of them.

        ``timeout`` bounds the whole batch in seconds; running past it rolls
        the transaction back.
        """
        if not tasks:
            raise ValidationError("No tasks provided")

        deadline = time.monotonic() + timeout if timeout else None

        try:
            source_ids = {int(a.id) for item in tasks for a in item.attachments}
            storage_names = dict(
                Attachment.objects.filter(pk__in=source_ids).values_list("id", "storage_name")
            )
            with transaction.atomic():
                created_ids = []
                for item in tasks:
                    if deadline is not None and time.monotonic() > deadline:
                        raise BatchCreateFailure(
                            f"Batch create timed out after {len(created_ids)} of {len(tasks)} tasks"
                        )
                    row = Task.objects.create(
                        title=item.title,
                        description=item.description,
                        priority=item.priority,
                        task_type=item.task_type,
                        status="pending",
                        deadline=item.deadline,
                        due_date_time=item.due_date_time,
                        assignee_id=int(item.assigned_to),
                        assigned_to_name=item.assigned_to_name,
                        site_id=int(item.site_id),
                        site_name=item.site_name,
                        client_name=item.client_name,
                        created_by=created_by or "system",
                    )
                    Attachment.objects.bulk_create([
                        Attachment(
                            task=row,
                            filename=a.filename,
                            url=a.url,
                            storage_name=storage_names.get(int(a.id), ""),
                            size=a.size,
                            content_type=a.type,
                        )
                        for a in item.attachments
                    ])
                    created_ids.append(row.id)
        except (DatabaseError, ValueError) as exc:
            logger.error("Batch create of %d tasks failed: %s", len(tasks), exc)
            raise BatchCreateFailure(f"Error creating tasks: {exc}") from exc

        created = [_to_instance(row) for row in self._queryset().filter(pk__in=created_ids)]
        logger.info("Created %d tasks for %s", len(created), created_by)
        return BatchResult(created=len(created), tasks=created)

    def update_task_status(self, task_id: str, status: str) -> TaskInstanceSchema:
        row = self._get(task_id)
        ensure_transition(row.status, status)
        row.status = status
        row.save(update_fields=["status", "updated_at"])
        return self.get_task(task_id)

    def delete_task(self, task_id: str) -> None:
        self._get(task_id).delete()

    def update_tasks_status(self, task_ids: Sequence[str], status: str) -> int:
        """Move every listed task to ``status``, or none of them if one fails."""
        with transaction.atomic():
            for task_id in task_ids:
                self.update_task_status(task_id, status)
        return len(task_ids)

    def delete_tasks(self, task_ids: Sequence[str]) -> None:
        with transaction.atomic():
            for task_id in task_ids:
                self.delete_task(task_id)

    def add_hourly_update(self, task_id: str, content: str, submitted_by: str) -> TaskInstanceSchema:
        if not content.strip():
            raise ValidationError("Please enter an update")
        row = self._get(task_id)
        HourlyUpdate.objects.create(task=row, content=content.strip(), submitted_by=submitted_by)
        row.save(update_fields=["updated_at"])
        return self.get_task(task_id)

    def upload_attachment(self, task_id: str, file) -> AttachmentSchema:
        row = self._get(task_id)
        name = default_storage.save(f"tasks/{row.id}/{file.name}", file)
        attachment = Attachment.objects.create(
            task=row,
            filename=file.name,
            url=default_storage.url(name),
            storage_name=name,
            size=file.size or 0,
            content_type=getattr(file, "content_type", None) or "application/octet-stream",
        )
        return _to_attachment(attachment)

    def delete_attachment(self, task_id: str, attachment_id: str) -> None:
        row = self._get(task_id)
        try:
            attachment = row.attachments.get(pk=_pk(attachment_id))
        except Attachment.DoesNotExist:
            raise TaskNotFound(f"{task_id}/attachments/{attachment_id}") from None

        storage_name = attachment.storage_name
        attachment.delete()
        # Instances created from one template share the uploaded file
        if storage_name and not Attachment.objects.filter(storage_name=storage_name).exists():
            default_storage.delete(storage_name)


class OrmSiteDirectory:
    def get_all_sites(self) -> list[SiteSchema]:
        sites = []
        for row in Site.objects.prefetch_related("staff_deployment").order_by("name", "id"):
            managers, supervisors = derive_role_capacity(row.staff_deployment.all())
            sites.append(SiteSchema(
                id=str(row.id),
                name=row.name,
                client_name=row.client_name,
                manager_count=managers,
                supervisor_count=supervisors,
            ))
        return sites


class OrmAssigneeDirectory:
    def get_all_assignees(self) -> list[AssigneeSchema]:
        return [
            AssigneeSchema(
                id=str(row.id),
                name=row.name,
                role=row.role,
                site_id=str(row.site_id) if row.site_id else None,
                department=row.department,
            )
            for row in Assignee.objects.order_by("name", "id")
        ]
