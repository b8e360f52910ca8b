"""Per-session state threaded through the loop, the registry and the executor."""

from dataclasses import dataclass, field
from pathlib import Path

from .sandbox import DEFAULT_COMMAND_TIMEOUT, DEFAULT_DENIED_COMMANDS
from .todo import TodoList


@dataclass
class SessionContext:
    """Everything one agent session owns.

    The workspace root is fixed for the lifetime of the context. The
    transcript and the task list are only ever touched by the loop that
    owns this context.
    """

    workspace: str
    messages: list = field(default_factory=list)
    todos: TodoList = field(default_factory=TodoList)
    denied_commands: tuple[str, ...] = DEFAULT_DENIED_COMMANDS
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    verbose: bool = False

    def __post_init__(self):
        self.workspace = str(Path(self.workspace).resolve())

    def reset(self) -> None:
        """Start a new top-level task: keep leading system messages, empty the plan."""
        leading = []
        for msg in self.messages:
            if msg.get("role") == "system":
                leading.append(msg)
            else:
                break
        self.messages[:] = leading
        self.todos.reset()
