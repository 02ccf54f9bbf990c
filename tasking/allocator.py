"""Fan a task template out into task instances across assignees and sites.

Pure decision logic: the caller supplies snapshots and submits the returned
batch to the task store.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence

from .keys import TemplateKey, template_key_for
from .schemas import (
    AllocationResult, AssigneeSchema, NewTaskInstanceSchema, SiteSchema,
    SkippedPair, TaskInstanceSchema, TaskTemplateSchema,
)

ExistingAssignmentMap = Mapping[TemplateKey, frozenset[str]]


def build_existing_assignment_map(tasks: Iterable[TaskInstanceSchema]) -> dict[TemplateKey, frozenset[str]]:
    """Template identity key -> ids of sites holding at least one real instance."""
    sites_by_key: dict[TemplateKey, set[str]] = defaultdict(set)
    for task in tasks:
        if task.is_placeholder:
            continue
        sites_by_key[template_key_for(task)].add(task.site_id)
    return {key: frozenset(site_ids) for key, site_ids in sites_by_key.items()}


def allocate(template: TaskTemplateSchema, assignees: Sequence[AssigneeSchema], sites: Sequence[SiteSchema],
             existing: ExistingAssignmentMap, created_by: str = "system") -> AllocationResult:
    """Build one new instance per (assignee, site) pair that may be created.

    A pair is skipped as a duplicate when the template already has an
    instance at that site, whoever it is assigned to. A pair is skipped for
    capacity when placing one more assignee of that role would overfill the
    site within this batch.
    """
    assigned_sites = existing.get(template_key_for(template), frozenset())

    created: list[NewTaskInstanceSchema] = []
    skipped: list[SkippedPair] = []
    # site_id -> role -> assignee ids already placed in this batch
    placed: dict[str, dict[str, set[str]]] = defaultdict(lambda: defaultdict(set))

    for assignee in assignees:
        for site in sites:
            if site.id in assigned_sites:
                skipped.append(_skip(assignee, site, "duplicate"))
                continue

            at_site = placed[site.id][assignee.role]
            if assignee.id not in at_site and len(at_site) >= site.capacity_for(assignee.role):
                skipped.append(_skip(assignee, site, "capacity"))
                continue

            at_site.add(assignee.id)
            created.append(NewTaskInstanceSchema(
                title=template.title,
                description=template.description,
                priority=template.priority,
                task_type=template.task_type,
                deadline=template.deadline,
                due_date_time=template.due_date_time,
                attachments=list(template.attachments),
                status="pending",
                assigned_to=assignee.id,
                assigned_to_name=assignee.name,
                site_id=site.id,
                site_name=site.name,
                client_name=site.client_name,
                hourly_updates=[],
                created_by=created_by,
            ))

    warning = None
    if not created:
        duplicates = sum(1 for pair in skipped if pair.reason == "duplicate")
        if duplicates and duplicates == len(skipped):
            warning = (f"All selected sites already have this task assigned. "
                       f"{duplicates} combination(s) skipped.")
        elif skipped:
            warning = (f"No new tasks to create. {duplicates} combination(s) already assigned, "
                       f"{len(skipped) - duplicates} over site capacity.")
        else:
            warning = "No new tasks to create."

    return AllocationResult(created=created, skipped=skipped, warning=warning)


def _skip(assignee: AssigneeSchema, site: SiteSchema, reason: str) -> SkippedPair:
    return SkippedPair(
        assignee_id=assignee.id,
        assignee_name=assignee.name,
        site_id=site.id,
        site_name=site.name,
        reason=reason,
    )
