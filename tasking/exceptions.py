class TaskingError(Exception):
    """Base class for task assignment errors."""

    status_code = 400


class ValidationError(TaskingError):
    """Selection is incomplete or refers to unknown templates, assignees or sites."""


class CapacityExceeded(TaskingError):
    """An assignee cannot be placed at any of the selected sites."""

    status_code = 409

    def __init__(self, assignee_name: str, reason: str):
        super().__init__(f"{assignee_name}: {reason}")
        self.assignee_name = assignee_name
        self.reason = reason


class TaskNotFound(TaskingError):
    status_code = 404

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidStatusTransition(TaskingError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot move task from '{from_status}' to '{to_status}'")
        self.from_status = from_status
        self.to_status = to_status


class BatchCreateFailure(TaskingError):
    """The task store rejected a batch; nothing is known about partial persistence."""

    status_code = 502
