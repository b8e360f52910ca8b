"""Diagnostics for the agent run, printed to stderr through a Rich console.

stdout is reserved for the final answer, so every helper here writes to the
module-level console. Text objects are used throughout, which keeps brackets
in model output and task names from being read as Rich markup.
"""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

OK_SIGNALS = ("stop", "tool_calls")


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Rebuild the console from the --color / --no-color flags."""
    global _console
    options: dict = {"stderr": True}
    if color:
        options.update(force_terminal=True, no_color=False)
    if no_color:
        options["no_color"] = True
    _console = Console(**options)


def _emit(*segments: tuple[str, str]) -> None:
    """Print one line assembled from (text, style) segments."""
    _console.print(Text.assemble(*segments))


def _details(block: str, indent: str = "    ") -> None:
    for row in block.splitlines():
        if row:
            _emit((indent + row, "dim"))


# -- Turns -------------------------------------------------------------------


def turn_header(n: int, max_n: int | None, token_est: int) -> None:
    of = f"/{max_n}" if max_n else ""
    _console.print(Rule(f"Turn {n}{of} (~{token_est} tokens)", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in OK_SIGNALS else "yellow"
    _emit((f"  LLM responded in {elapsed:.1f}s  finish_reason={finish_reason}", style))


def completion(turns: int, state: str) -> None:
    if state == "done":
        _emit((f"  ✓ Agent finished: {turns} turns", "bold green"))
    else:
        _emit((f"  Agent finished: {turns} turns, state={state}", "bold red"))


# -- Tools -------------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    _emit(("  ▶ ", "bold magenta"), (name, "bold magenta"))
    _details(args_json or "")


def tool_result(name: str, elapsed: float, preview: str) -> None:
    _emit((f"  ✓ {name}", "green"), (f"  {elapsed:.1f}s", "dim"))
    _details(preview or "")


def tool_error(name: str, msg: str) -> None:
    _emit((f"  ✗ {name}", "bold red"), (f"  {msg}", "red"))


def todo_update(headline: str, rendered: str) -> None:
    _emit(("  [todo] ", "yellow"), (headline, "dim italic"))
    _details(rendered)


def todo_summary(line: str) -> None:
    info(line)


# -- Messages ----------------------------------------------------------------


def assistant_text(text: str) -> None:
    _emit(("  [assistant] ", "blue"), (text, ""))


def info(msg: str) -> None:
    _emit((f"  {msg}", "dim"))


def warning(msg: str) -> None:
    _emit(("  ⚠ Warning: ", "bold yellow"), (msg, "yellow"))


def error(msg: str) -> None:
    _emit(("Error: ", "bold red"), (msg, "red"))


def repl_banner(workspace: str) -> None:
    info(f"Interactive mode in {workspace}. Type /exit or Ctrl-D to quit.")
