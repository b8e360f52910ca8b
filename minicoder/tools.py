"""Tool catalogue and dispatch: typed arguments in, text results out."""

import json
from dataclasses import dataclass
from typing import Any

from .context import SessionContext
from .errors import InvalidArguments, InvalidTaskList, ToolError, UnknownTool
from .sandbox import edit_file, read_file, run_bash, write_file
from .todo import MAX_TASKS


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameters: dict

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.parameters.get("required", ()))

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(self.parameters.get("properties", {}))

    def to_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


BASH_TOOL = ToolDescriptor(
    name="bash",
    description=(
        "Execute a bash command in the workspace. "
        "Use for: ls, find, grep, mkdir, rm, cp, mv, git, python, tests, etc. "
        "Returns stdout, or stderr when stdout is empty."
    ),
    parameters={
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to execute.",
            },
        },
        "required": ["command"],
    },
)

WRITE_TOOL = ToolDescriptor(
    name="write",
    description=(
        "Write content to a file, overwriting it. Creates parent directories if needed."
    ),
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Relative path of the file to write.",
            },
            "content": {
                "type": "string",
                "description": "The full content to write to the file.",
            },
        },
        "required": ["path", "content"],
    },
)

READ_TOOL = ToolDescriptor(
    name="read",
    description=(
        "Read file contents as UTF-8 text. "
        "With lineLimit, only the first lines are returned and a marker says how many were left out."
    ),
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Relative path of the file to read.",
            },
            "lineLimit": {
                "type": "integer",
                "description": "Maximum number of lines to read (optional).",
            },
        },
        "required": ["path"],
    },
)

EDIT_TOOL = ToolDescriptor(
    name="edit",
    description=(
        "Replace one exact fragment of a file. Use for small changes: fix typos, "
        "add comments, refactor code. old_content must occur exactly once."
    ),
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Relative path of the file to edit.",
            },
            "old_content": {
                "type": "string",
                "description": "Exact text to find (must match exactly, once).",
            },
            "new_content": {
                "type": "string",
                "description": "Exact replacement text.",
            },
        },
        "required": ["path", "old_content", "new_content"],
    },
)

TODO_WRITE_TOOL = ToolDescriptor(
    name="todoWrite",
    description=(
        "Replace your task list. Send the whole list every time. "
        "Mark a task in_progress before starting it and completed when done; "
        "at most one task may be in_progress."
    ),
    parameters={
        "type": "object",
        "properties": {
            "todos": {
                "type": "array",
                "description": "The complete, ordered task list.",
                "items": {
                    "type": "object",
                    "properties": {
                        "content": {
                            "type": "string",
                            "description": "What needs to be done.",
                        },
                        "status": {
                            "type": "string",
                            "enum": ["pending", "in_progress", "completed"],
                            "description": "The status of the task.",
                        },
                        "activeForm": {
                            "type": "string",
                            "description": "Present-tense label, e.g. 'Adding tests'.",
                        },
                    },
                    "required": ["content", "status", "activeForm"],
                },
                "minItems": 1,
                "maxItems": MAX_TASKS,
            },
        },
        "required": ["todos"],
    },
)

TOOLS = (BASH_TOOL, WRITE_TOOL, READ_TOOL, EDIT_TOOL, TODO_WRITE_TOOL)
TOOLS_BY_NAME = {t.name: t for t in TOOLS}


def tool_schemas(tools=TOOLS) -> list[dict]:
    """The catalogue in the shape the completion endpoint expects."""
    return [t.to_schema() for t in tools]


# ---------------------------------------------------------------------------
# Typed argument records
# ---------------------------------------------------------------------------


def _str_field(payload: dict, key: str) -> str:
    value = payload[key]
    if not isinstance(value, str):
        raise InvalidArguments(
            f"{key!r} must be a string, got {type(value).__name__}"
        )
    return value


@dataclass(frozen=True)
class BashArgs:
    command: str

    @classmethod
    def from_payload(cls, payload: dict) -> "BashArgs":
        return cls(command=_str_field(payload, "command"))


@dataclass(frozen=True)
class WriteArgs:
    path: str
    content: str

    @classmethod
    def from_payload(cls, payload: dict) -> "WriteArgs":
        return cls(
            path=_str_field(payload, "path"),
            content=_str_field(payload, "content"),
        )


@dataclass(frozen=True)
class ReadArgs:
    path: str
    line_limit: int | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "ReadArgs":
        limit = payload.get("lineLimit")
        if limit is not None:
            # Models send 10, 10.0 or "10" interchangeably.
            if isinstance(limit, bool):
                raise InvalidArguments("'lineLimit' must be an integer, got bool")
            try:
                as_float = float(limit)
            except (TypeError, ValueError):
                raise InvalidArguments(
                    f"'lineLimit' must be an integer, got {limit!r}"
                ) from None
            if not as_float.is_integer():
                raise InvalidArguments(f"'lineLimit' must be an integer, got {limit!r}")
            limit = int(as_float)
            if limit < 0:
                raise InvalidArguments("'lineLimit' must not be negative")
        return cls(path=_str_field(payload, "path"), line_limit=limit)


@dataclass(frozen=True)
class EditArgs:
    path: str
    old_content: str
    new_content: str

    @classmethod
    def from_payload(cls, payload: dict) -> "EditArgs":
        return cls(
            path=_str_field(payload, "path"),
            old_content=_str_field(payload, "old_content"),
            new_content=_str_field(payload, "new_content"),
        )


@dataclass(frozen=True)
class TodoWriteArgs:
    todos: tuple

    @classmethod
    def from_payload(cls, payload: dict) -> "TodoWriteArgs":
        todos = payload["todos"]
        if not isinstance(todos, list):
            raise InvalidArguments(
                f"'todos' must be an array, got {type(todos).__name__}"
            )
        return cls(todos=tuple(todos))


_ARG_TYPES = {
    "bash": BashArgs,
    "write": WriteArgs,
    "read": ReadArgs,
    "edit": EditArgs,
    "todoWrite": TodoWriteArgs,
}


def decode_arguments(raw: Any) -> dict:
    """Parse the raw argument text of a tool call into a payload dict."""
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidArguments(f"invalid JSON in tool arguments: {e}") from e
    if not isinstance(payload, dict):
        raise InvalidArguments(
            f"tool arguments must be a JSON object, got {type(payload).__name__}"
        )
    return payload


def parse_arguments(name: str, payload: dict):
    """Validate a payload against the named tool and build its argument record.

    Raises:
        UnknownTool: name is not in the catalogue.
        InvalidArguments: a required field is missing, a field is unknown or
            has the wrong shape.
    """
    descriptor = TOOLS_BY_NAME.get(name)
    if descriptor is None:
        raise UnknownTool(name)

    missing = [f for f in descriptor.required if f not in payload]
    if missing:
        raise InvalidArguments(
            f"{name}: missing required field(s): {', '.join(missing)}"
        )
    unknown = sorted(set(payload) - set(descriptor.fields))
    if unknown:
        raise InvalidArguments(
            f"{name}: unknown field(s): {', '.join(unknown)}; "
            f"expected: {', '.join(descriptor.fields)}"
        )
    return _ARG_TYPES[name].from_payload(payload)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool call. Converted to text only when building a message."""

    ok: bool
    output: str = ""
    error: ToolError | None = None

    @property
    def text(self) -> str:
        if self.ok:
            return self.output
        text = f"error: {self.error}"
        if self.output:
            text += f"\n\n{self.output}"
        return text


def _execute(args, context: SessionContext) -> str:
    workspace = context.workspace
    if isinstance(args, BashArgs):
        return run_bash(
            args.command,
            workspace,
            denied=context.denied_commands,
            timeout=context.command_timeout,
        )
    if isinstance(args, WriteArgs):
        return write_file(args.path, args.content, workspace)
    if isinstance(args, ReadArgs):
        return read_file(args.path, workspace, line_limit=args.line_limit)
    if isinstance(args, EditArgs):
        return edit_file(args.path, args.old_content, args.new_content, workspace)
    if isinstance(args, TodoWriteArgs):
        return context.todos.update(args.todos)
    raise UnknownTool(type(args).__name__)


def dispatch(name: str, payload, context: SessionContext) -> ToolResult:
    """Route a tool call to its implementation.

    Never raises: every failure comes back as a ToolResult carrying the error,
    because a failed call is something for the model to react to.
    """
    try:
        if not isinstance(payload, dict):
            payload = decode_arguments(payload)
        args = parse_arguments(name, payload)
        return ToolResult(ok=True, output=_execute(args, context))
    except InvalidTaskList as e:
        current = context.todos.render()
        return ToolResult(
            ok=False, output=f"Task list unchanged:\n{current}", error=e
        )
    except ToolError as e:
        return ToolResult(ok=False, error=e)
    except Exception as e:
        return ToolResult(ok=False, error=ToolError(f"{type(e).__name__}: {e}"))
