"""Task list tool: a bounded plan the model rewrites as it works."""

from dataclasses import dataclass
from enum import Enum

from . import fmt
from .errors import InvalidTaskList

MAX_TASKS = 20


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskInvariant(str, Enum):
    MAX_TASKS = "max_tasks"
    STATUS = "status"
    CONTENT = "content"
    ACTIVE_FORM = "active_form"
    SINGLE_IN_PROGRESS = "single_in_progress"


_MARKERS = {
    TaskStatus.PENDING: "[ ]",
    TaskStatus.IN_PROGRESS: "[>]",
    TaskStatus.COMPLETED: "[x]",
}


@dataclass(frozen=True)
class Task:
    content: str
    status: TaskStatus
    active_form: str

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "status": self.status.value,
            "activeForm": self.active_form,
        }


def _non_empty(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _coerce(index: int, item) -> Task:
    """Turn one candidate (Task or mapping) into a Task, or raise."""
    if isinstance(item, Task):
        content, status, active_form = item.content, item.status, item.active_form
    elif isinstance(item, dict):
        content = item.get("content")
        status = item.get("status")
        active_form = item.get("activeForm", item.get("active_form"))
    else:
        raise InvalidTaskList(
            TaskInvariant.CONTENT,
            f"task {index}: expected an object with content, status and activeForm, "
            f"got {type(item).__name__}",
        )

    try:
        status = TaskStatus(status)
    except ValueError:
        raise InvalidTaskList(
            TaskInvariant.STATUS,
            f"task {index}: invalid status {status!r}, expected one of: "
            + ", ".join(s.value for s in TaskStatus),
        ) from None
    if not _non_empty(content):
        raise InvalidTaskList(
            TaskInvariant.CONTENT, f"task {index}: content must be a non-empty string"
        )
    if not _non_empty(active_form):
        raise InvalidTaskList(
            TaskInvariant.ACTIVE_FORM,
            f"task {index}: activeForm must be a non-empty string",
        )
    return Task(content=content, status=status, active_form=active_form)


class TodoList:
    def __init__(self, verbose: bool = False):
        self.tasks: list[Task] = []
        self.verbose = verbose
        self.update_count = 0
        self.rejected_count = 0

    def update(self, candidates) -> str:
        """Replace the whole list, or leave it untouched and raise InvalidTaskList.

        Every invariant is checked against the entire candidate list before
        anything is committed.
        """
        candidates = list(candidates)
        try:
            if len(candidates) > MAX_TASKS:
                raise InvalidTaskList(
                    TaskInvariant.MAX_TASKS,
                    f"too many tasks: {len(candidates)} (max {MAX_TASKS})",
                )
            tasks = [_coerce(i, item) for i, item in enumerate(candidates)]
            in_progress = sum(1 for t in tasks if t.status is TaskStatus.IN_PROGRESS)
            if in_progress > 1:
                raise InvalidTaskList(
                    TaskInvariant.SINGLE_IN_PROGRESS,
                    f"only one task may be in_progress, got {in_progress}",
                )
        except InvalidTaskList:
            self.rejected_count += 1
            raise

        self.tasks = tasks
        self.update_count += 1
        if self.verbose:
            active = self.active_task()
            detail = active.active_form if active else self.counts_line()
            fmt.todo_update(detail, self.render())
        return self.render()

    def active_task(self) -> Task | None:
        for task in self.tasks:
            if task.status is TaskStatus.IN_PROGRESS:
                return task
        return None

    def counts(self) -> tuple[int, int, int]:
        """Return (total, in_progress, completed)."""
        in_progress = sum(1 for t in self.tasks if t.status is TaskStatus.IN_PROGRESS)
        completed = sum(1 for t in self.tasks if t.status is TaskStatus.COMPLETED)
        return len(self.tasks), in_progress, completed

    def counts_line(self) -> str:
        total, in_progress, completed = self.counts()
        return f"Total: {total}, In Progress: {in_progress}, Completed: {completed}"

    def render(self) -> str:
        if not self.tasks:
            return "No todos"
        lines = [f"{_MARKERS[t.status]} {t.content} {t.active_form}" for t in self.tasks]
        return "\n".join(lines) + "\n\n" + self.counts_line()

    def to_list(self) -> list[dict]:
        return [t.to_dict() for t in self.tasks]

    def reset(self) -> None:
        """Drop every task. Used when a new top-level task starts and by REPL /clear."""
        self.tasks = []
        self.update_count = 0
        self.rejected_count = 0

    def summary_line(self) -> str | None:
        """One-line usage summary, or None if the list was never written."""
        if self.update_count == 0 and self.rejected_count == 0:
            return None
        total, _, completed = self.counts()
        line = f"todo: {completed}/{total} completed after {self.update_count} updates"
        if self.rejected_count:
            line += f", {self.rejected_count} rejected"
        return line
