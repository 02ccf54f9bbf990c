"""Task instance status state machine.

pending -> in-progress -> completed, and pending | in-progress -> cancelled.
completed and cancelled are terminal.
"""

from .exceptions import InvalidStatusTransition

VALID_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"in-progress", "cancelled"},
    "in-progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

TERMINAL_STATES: set[str] = {"completed", "cancelled"}


def validate_transition(from_status: str, to_status: str) -> bool:
    """Return True if a task may move from ``from_status`` to ``to_status``.

    Re-applying the current status is allowed and treated as a no-op.
    """
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def ensure_transition(from_status: str, to_status: str) -> None:
    if not validate_transition(from_status, to_status):
        raise InvalidStatusTransition(from_status, to_status)
