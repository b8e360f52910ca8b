"""Exception taxonomy shared by the executor, the registry and the loop."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad config file, etc.)."""


class CompletionBoundaryError(AgentError):
    """Raised when talking to the model fails (transport or malformed response)."""


# ---------------------------------------------------------------------------
# Tool-level errors: never abort a session, always reported to the model.
# ---------------------------------------------------------------------------


class ToolError(Exception):
    """Base class for failures of a single tool call."""

    kind = "tool_error"


class UnsafePath(ToolError):
    kind = "unsafe_path"

    def __init__(self, path: str, resolved, root):
        self.path = path
        self.resolved = resolved
        self.root = root
        super().__init__(
            f"unsafe path {path!r}: resolves to {resolved}, "
            f"which is outside workspace {root}"
        )


class PatternNotFound(ToolError):
    kind = "pattern_not_found"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"pattern not found in {path}")


class AmbiguousPattern(ToolError):
    kind = "ambiguous_pattern"

    def __init__(self, path: str, count: int):
        self.path = path
        self.count = count
        super().__init__(
            f"pattern appears {count} times in {path}, must be unique "
            "(include more surrounding context)"
        )


class ExecutionFailed(ToolError):
    kind = "execution_failed"

    def __init__(self, message: str, stderr: str = ""):
        self.stderr = stderr
        text = message
        if stderr:
            text += f"\n{stderr}"
        super().__init__(text)


class DangerousCommand(ExecutionFailed):
    kind = "dangerous_command"

    def __init__(self, command: str, pattern: str):
        self.command = command
        self.pattern = pattern
        super().__init__(f"dangerous command blocked (matched {pattern!r}): {command}")


class UnknownTool(ToolError):
    kind = "unknown_tool"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unknown tool: {name!r}")


class InvalidArguments(ToolError):
    kind = "invalid_arguments"


class FileAccessError(ToolError):
    kind = "file_access"


class InvalidTaskList(ToolError):
    kind = "invalid_task_list"

    def __init__(self, invariant, message: str):
        self.invariant = invariant
        name = getattr(invariant, "value", invariant)
        super().__init__(f"{message} [{name}]")
