from collections.abc import Iterable, Sequence

from .keys import GroupKey, group_key_for, key_digest
from .schemas import GroupedTaskView, TaskInstanceSchema


def real_instances(tasks: Iterable[TaskInstanceSchema]) -> list[TaskInstanceSchema]:
    """Drop template placeholders, keeping actual assignments."""
    return [task for task in tasks if not task.is_placeholder]


def overall_status(statuses: Sequence[str]) -> str:
    """Completed only if every member is; in progress if any member is.

    Cancelled members count for neither check, so a group of completed and
    cancelled instances reports ``pending``.
    """
    if all(status == "completed" for status in statuses):
        return "completed"
    if any(status == "in-progress" for status in statuses):
        return "in-progress"
    return "pending"


def group_tasks(instances: Iterable[TaskInstanceSchema]) -> list[TaskInstanceSchema | GroupedTaskView]:
    """Collapse instances sharing a group key into one view per bucket.

    Buckets keep first-seen order; single-member buckets pass through as the
    instance itself.
    """
    buckets: dict[GroupKey, list[TaskInstanceSchema]] = {}
    for task in instances:
        buckets.setdefault(group_key_for(task), []).append(task)

    result: list[TaskInstanceSchema | GroupedTaskView] = []
    for key, bucket in buckets.items():
        if len(bucket) == 1:
            result.append(bucket[0])
        else:
            result.append(_build_view(key, bucket))
    return result


def ungroup(item: TaskInstanceSchema | GroupedTaskView) -> list[TaskInstanceSchema]:
    """The stored instances behind a board item."""
    if isinstance(item, GroupedTaskView):
        return list(item.group_items)
    return [item]


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _build_view(key: GroupKey, bucket: list[TaskInstanceSchema]) -> GroupedTaskView:
    main = bucket[0]
    all_attachments = [attachment for task in bucket for attachment in task.attachments]
    all_hourly_updates = [update for task in bucket for update in task.hourly_updates]

    fields = {name: getattr(main, name) for name in TaskInstanceSchema.model_fields}
    fields.update(
        kind="group",
        id=f"group-{key_digest(key)[:16]}",
        group_count=len(bucket),
        assignee_ids=_unique(task.assigned_to for task in bucket),
        assignee_names=_unique(task.assigned_to_name for task in bucket),
        site_ids=_unique(task.site_id for task in bucket),
        site_names=_unique(task.site_name for task in bucket),
        client_names=_unique(task.client_name for task in bucket),
        overall_status=overall_status([task.status for task in bucket]),
        total_attachments=len(all_attachments),
        total_hourly_updates=len(all_hourly_updates),
        all_attachments=all_attachments,
        all_hourly_updates=all_hourly_updates,
        group_items=list(bucket),
    )
    # Inputs are already validated snapshots; construct keeps the member objects as-is
    return GroupedTaskView.model_construct(**fields)
