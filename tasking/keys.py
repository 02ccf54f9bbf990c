"""Identity keys for task templates and task instances.

Keys are plain tuples, so equality is structural and titles or descriptions
containing any separator character cannot collide.
"""

import hashlib
import json
from datetime import datetime
from typing import NamedTuple


class TemplateKey(NamedTuple):
    """Same underlying work item, independent of time fields and site."""
    title: str
    description: str
    task_type: str
    priority: str


class GroupKey(NamedTuple):
    """Display bucket: one work item with one deadline at one site."""
    title: str
    description: str
    task_type: str
    priority: str
    deadline: datetime
    site_id: str


def template_identity_key(title: str, description: str, task_type: str, priority: str) -> TemplateKey:
    return TemplateKey(title, description, task_type, priority)


def group_key(title: str, description: str, task_type: str, priority: str,
              deadline: datetime, site_id: str) -> GroupKey:
    return GroupKey(title, description, task_type, priority, deadline, site_id)


def template_key_for(task) -> TemplateKey:
    """Template identity key of a template or instance snapshot."""
    return template_identity_key(task.title, task.description, task.task_type, task.priority)


def group_key_for(task) -> GroupKey:
    return group_key(task.title, task.description, task.task_type, task.priority,
                     task.deadline, task.site_id)


def key_digest(key: tuple) -> str:
    """Canonical SHA-256 of a key.

    JSON quotes and escapes every string, so the encoding of distinct tuples
    never coincides.
    """
    payload = json.dumps(
        [value.isoformat() if isinstance(value, datetime) else value for value in key],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
