"""Public library API for minicoder: Session class and Result dataclass."""

import copy
from dataclasses import dataclass, field

from .context import SessionContext
from .errors import ConfigError
from .report import ReportCollector
from .sandbox import DEFAULT_COMMAND_TIMEOUT, DEFAULT_DENIED_COMMANDS
from .todo import TodoList


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    state: str
    messages: list[dict]
    report: dict | None
    warnings: list[str] = field(default_factory=list)
    exhausted: bool = False

    @property
    def failed(self) -> bool:
        return self.state == "failed"


class Session:
    """Programmatic interface to the minicoder agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    tasks or .ask() for multi-turn conversations.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_turns: int | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
        deny_commands: list[str] | None = None,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        verbose: bool = False,
    ):
        self.base_dir = base_dir
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.deny_commands = list(deny_commands or [])
        self.command_timeout = command_timeout
        self.verbose = verbose

        self._setup_done = False
        self._tools: list = []
        self._system_content: str | None = None

        # Per-conversation state (for ask() mode)
        self._conv_context: SessionContext | None = None

    def _setup(self) -> None:
        """Validate configuration and build tools and the system prompt once."""
        if self._setup_done:
            return

        from pathlib import Path

        from .agent import build_system_prompt
        from .tools import tool_schemas

        if not self.model:
            raise ConfigError("no model configured")
        workspace = Path(self.base_dir).expanduser().resolve()
        if not workspace.is_dir():
            raise ConfigError(f"workspace is not a directory: {self.base_dir}")
        self.base_dir = str(workspace)

        self._tools = tool_schemas()
        self._system_content = build_system_prompt(self.base_dir, self.system_prompt)

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _make_context(self) -> SessionContext:
        """Fresh transcript and task list for one run or conversation."""
        return SessionContext(
            workspace=self.base_dir,
            messages=[{"role": "system", "content": self._system_content}],
            todos=TodoList(verbose=self.verbose),
            denied_commands=DEFAULT_DENIED_COMMANDS + tuple(self.deny_commands),
            command_timeout=self.command_timeout,
            verbose=self.verbose,
        )

    def _build_loop_kwargs(self) -> dict:
        return dict(
            model_id=self.model,
            llm_kwargs=dict(
                api_base=self.base_url,
                api_key=self.api_key,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
            ),
            max_turns=self.max_turns,
        )

    def run(self, task: str, *, report: bool = False) -> Result:
        """Single-shot: run a task with a fresh transcript and task list."""
        self._setup()

        from .agent import LoopState, run_agent_loop

        context = self._make_context()
        context.messages.append({"role": "user", "content": task})

        collector = ReportCollector() if report else None
        outcome = run_agent_loop(
            context, self._tools, **self._build_loop_kwargs(), report=collector
        )

        if outcome.state is LoopState.FAILED:
            result, exit_code = "failed", 1
        elif outcome.exhausted:
            result, exit_code = "exhausted", 2
        else:
            result, exit_code = "done", 0

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=task,
                model=self.model,
                settings={
                    "base_dir": self.base_dir,
                    "max_turns": self.max_turns,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "command_timeout": self.command_timeout,
                    "deny_commands": self.deny_commands,
                },
                outcome=result,
                answer=outcome.answer,
                exit_code=exit_code,
                turns=collector.max_turn_seen,
                error_message=outcome.answer if exit_code == 1 else None,
                todos=context.todos.to_list(),
            )

        return Result(
            answer=outcome.answer,
            state=outcome.state.value,
            messages=copy.deepcopy(context.messages),
            report=report_dict,
            warnings=list(outcome.warnings),
            exhausted=outcome.exhausted,
        )

    def ask(self, text: str) -> Result:
        """Conversational: share transcript and task list across calls (like the REPL)."""
        self._setup()

        from .agent import run_agent_loop

        if self._conv_context is None:
            self._conv_context = self._make_context()

        context = self._conv_context
        context.messages.append({"role": "user", "content": text})

        outcome = run_agent_loop(context, self._tools, **self._build_loop_kwargs())

        return Result(
            answer=outcome.answer,
            state=outcome.state.value,
            messages=copy.deepcopy(context.messages),
            report=None,
            warnings=list(outcome.warnings),
            exhausted=outcome.exhausted,
        )

    @property
    def todos(self) -> list[dict]:
        """Task list of the current conversation (empty before the first ask())."""
        if self._conv_context is None:
            return []
        return self._conv_context.todos.to_list()

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._conv_context = None
