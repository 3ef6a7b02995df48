"""Phase state machine over a task's next_action list and current_phase."""

from work_pipeline.store.models import Task


def current_phase(task: Task) -> int:
    return task.current_phase


def total_phases(task: Task) -> int:
    return len(task.next_action)


def max_phase(task: Task) -> int:
    return max((a.phase for a in task.next_action), default=0)


def action_for_phase(task: Task, phase: int) -> str | None:
    for item in task.next_action:
        if item.phase == phase:
            return item.action
    return None


def phase_for_action(task: Task, action: str) -> int:
    """Phase number of an action, 0 if the task has no such phase."""
    for item in task.next_action:
        if item.action == action:
            return item.phase
    return 0


def next_phase(task: Task) -> int:
    """The phase after the current one; the current phase itself at the end of the list.

    Phase numbers may skip values, so this is the smallest declared phase above
    current_phase rather than a blind +1.
    """
    later = [a.phase for a in task.next_action if a.phase > task.current_phase]
    return min(later) if later else task.current_phase


def advance(task: Task) -> int:
    """Move the task to its next phase in place and return it. No-op at the final phase."""
    task.current_phase = next_phase(task)
    return task.current_phase


def is_completed(task: Task, phase: int) -> bool:
    return task.current_phase > phase


def is_current(task: Task, action: str) -> bool:
    return task.current_phase == phase_for_action(task, action)


def describe(task: Task) -> str:
    """Human form like ``2/4 (check)``, or ``0/4 (pending)`` before the first phase."""
    total = total_phases(task)
    if task.current_phase == 0:
        return f"0/{total} (pending)"
    # Ordinal position; phase numbers may have gaps.
    position = next(
        (i for i, a in enumerate(task.next_action, 1) if a.phase == task.current_phase),
        task.current_phase,
    )
    action = action_for_phase(task, task.current_phase) or "unknown"
    return f"{position}/{total} ({action})"
