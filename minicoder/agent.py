import argparse
import functools
import json
import os
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
)
from .context import SessionContext
from .errors import (
    AgentError,
    CompletionBoundaryError,
    ConfigError,
    InvalidArguments,
    UnknownTool,
)
from .report import ReportCollector
from .sandbox import DEFAULT_DENIED_COMMANDS
from .todo import TodoList
from .tools import TOOLS_BY_NAME, ToolResult, decode_arguments, dispatch, tool_schemas

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 200


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    PROCESSING_TOOLS = "processing_tools"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (LoopState.DONE, LoopState.FAILED)


class FinishSignal(str, Enum):
    TOOL_CALLS = "tool_calls"
    STOP = "stop"
    TRUNCATED = "truncated"
    FILTERED = "filtered"
    UNRECOGNIZED = "unrecognized"


_FINISH_REASONS = {
    "tool_calls": FinishSignal.TOOL_CALLS,
    "function_call": FinishSignal.TOOL_CALLS,
    "stop": FinishSignal.STOP,
    "length": FinishSignal.TRUNCATED,
    "content_filter": FinishSignal.FILTERED,
}


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    arguments: str


@dataclass
class Completion:
    """One response from the completion endpoint, normalised."""

    finish_reason: str | None
    message: dict
    tool_calls: list[ToolInvocation] = field(default_factory=list)

    @property
    def signal(self) -> FinishSignal:
        signal = _FINISH_REASONS.get(self.finish_reason, FinishSignal.UNRECOGNIZED)
        # Some OpenAI-compatible servers report "stop" alongside tool calls.
        if signal is FinishSignal.STOP and self.tool_calls:
            return FinishSignal.TOOL_CALLS
        return signal


@dataclass
class LoopOutcome:
    state: LoopState
    answer: str | None
    turns: int
    warnings: list[str] = field(default_factory=list)
    transitions: list[tuple[LoopState, LoopState]] = field(default_factory=list)
    exhausted: bool = False


# ---------------------------------------------------------------------------
# Transcript helpers
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def _get(obj, key, default=None):
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _normalize_message(msg) -> tuple[dict, list[ToolInvocation]]:
    """Turn a provider message object into a plain assistant dict + invocations."""
    invocations = []
    raw_calls = []
    for tc in _get(msg, "tool_calls") or ():
        fn = _get(tc, "function")
        name = _get(fn, "name") or ""
        arguments = _get(fn, "arguments") or ""
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        call_id = _get(tc, "id") or f"call_{len(invocations)}"
        invocations.append(ToolInvocation(id=call_id, name=name, arguments=arguments))
        raw_calls.append(
            {
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": arguments},
            }
        )
    content = _get(msg, "content")
    if content is not None and not isinstance(content, str):
        content = str(content)
    message: dict = {"role": "assistant", "content": content}
    if raw_calls:
        message["tool_calls"] = raw_calls
    return message, invocations


def pending_tool_calls(messages: list) -> list[str]:
    """Ids of invocations in the last assistant message that have no tool reply yet."""
    for i in range(len(messages) - 1, -1, -1):
        msg = messages[i]
        if msg.get("role") != "assistant":
            continue
        requested = [tc["id"] for tc in msg.get("tool_calls") or ()]
        answered = {
            m.get("tool_call_id") for m in messages[i + 1 :] if m.get("role") == "tool"
        }
        return [tc_id for tc_id in requested if tc_id not in answered]
    return []


def answer_pending_tool_calls(messages: list, text: str) -> int:
    """Close out unanswered invocations so the transcript can be sent again."""
    pending = pending_tool_calls(messages)
    for tc_id in pending:
        messages.append({"role": "tool", "tool_call_id": tc_id, "content": text})
    return len(pending)


def build_system_prompt(workspace: str, system_prompt: str | None = None) -> str:
    """Agent instructions plus workspace identity."""
    if system_prompt:
        template = system_prompt
    else:
        template = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    content = template.replace("{workspace}", workspace)
    if workspace not in content:
        content += f"\n\nWorkspace: {workspace}"
    return content


# ---------------------------------------------------------------------------
# Completion boundary
# ---------------------------------------------------------------------------


def resolve_model_string(model_id: str, api_base: str | None) -> str:
    """Bare model names behind a custom endpoint are OpenAI-compatible."""
    if api_base and "/" not in model_id:
        return f"openai/{model_id}"
    return model_id


def call_llm(
    model_id,
    messages,
    tools,
    *,
    api_base=None,
    api_key=None,
    max_output_tokens=None,
    temperature=None,
    verbose=False,
) -> Completion:
    """Call LiteLLM once. Returns a Completion or raises CompletionBoundaryError."""
    import litellm

    litellm.suppress_debug_info = True

    model_str = resolve_model_string(model_id, api_base)
    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        tools=tools,
        tool_choice="auto",
    )
    for key, val in [
        ("api_base", api_base),
        ("api_key", api_key),
        ("max_tokens", max_output_tokens),
        ("temperature", temperature),
    ]:
        if val is not None:
            completion_kwargs[key] = val

    if verbose:
        fmt.info(f"Calling model {model_str}")

    try:
        response = litellm.completion(**completion_kwargs)
    except Exception as e:
        raise CompletionBoundaryError(f"LLM call failed: {e}") from e

    choices = _get(response, "choices") or []
    if not choices:
        raise CompletionBoundaryError("LLM response contained no choices")
    choice = choices[0]
    msg = _get(choice, "message")
    if msg is None:
        raise CompletionBoundaryError("LLM response contained no message")

    message, invocations = _normalize_message(msg)
    return Completion(
        finish_reason=_get(choice, "finish_reason"),
        message=message,
        tool_calls=invocations,
    )


# ---------------------------------------------------------------------------
# Tool dispatch
# ---------------------------------------------------------------------------


def handle_tool_call(invocation: ToolInvocation, context: SessionContext):
    """Execute a single tool call and return (tool_msg, metadata).

    tool_msg is the message dict for the LLM conversation.
    metadata has stable keys: name, arguments, elapsed, succeeded.
    """
    name = invocation.name
    verbose = context.verbose

    t0 = time.monotonic()
    payload = None
    result = None
    # Lookup comes first: an unknown name is reported as such even when its
    # arguments are garbage too.
    if name not in TOOLS_BY_NAME:
        result = ToolResult(ok=False, error=UnknownTool(name))
    else:
        try:
            payload = decode_arguments(invocation.arguments)
        except InvalidArguments as e:
            result = ToolResult(ok=False, error=e)
    if result is None:
        if verbose:
            pretty = json.dumps(payload, indent=2)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(name, pretty)
        result = dispatch(name, payload, context)
    elapsed = time.monotonic() - t0

    content = result.text
    if verbose:
        if result.ok:
            preview = content
            if len(preview) > MAX_RESULT_PREVIEW:
                preview = preview[:MAX_RESULT_PREVIEW] + "..."
            fmt.tool_result(name, elapsed, preview)
        else:
            fmt.tool_error(name, str(result.error))

    return (
        {
            "role": "tool",
            "tool_call_id": invocation.id,
            "content": content,
        },
        {
            "name": name,
            "arguments": payload,
            "elapsed": elapsed,
            "succeeded": result.ok,
            "error_kind": None if result.ok else result.error.kind,
        },
    )


# ---------------------------------------------------------------------------
# Orchestration loop
# ---------------------------------------------------------------------------


def _last_assistant_text(messages: list) -> str | None:
    for m in reversed(messages):
        if m.get("role") == "assistant" and m.get("content"):
            return m["content"]
    return None


def run_agent_loop(
    context: SessionContext,
    tools: list,
    *,
    model_id: str,
    llm_kwargs: dict | None = None,
    max_turns: int | None = None,
    report: ReportCollector | None = None,
    turn_offset: int = 0,
) -> LoopOutcome:
    """Drive request/respond/act until the model stops or the session fails.

    Mutates context.messages in place. Tool calls of one assistant turn run
    one at a time, in the order the model issued them, because later calls
    may depend on what earlier ones did to the workspace.
    """
    llm_kwargs = llm_kwargs or {}
    messages = context.messages
    verbose = context.verbose

    state = LoopState.AWAITING_MODEL
    outcome = LoopOutcome(state=state, answer=None, turns=0)
    pending: list[ToolInvocation] = []

    def move(target: LoopState) -> None:
        nonlocal state
        outcome.transitions.append((state, target))
        if report:
            report.record_transition(
                outcome.turns + turn_offset, state.value, target.value
            )
        state = target

    def warn(message: str) -> None:
        outcome.warnings.append(message)
        if report:
            report.record_warning(outcome.turns + turn_offset, message)
        if verbose:
            fmt.warning(message)

    while state not in TERMINAL_STATES:
        if state is LoopState.AWAITING_MODEL:
            if max_turns is not None and outcome.turns >= max_turns:
                outcome.exhausted = True
                outcome.answer = _last_assistant_text(messages)
                warn("max turns reached")
                move(LoopState.DONE)
                break

            outcome.turns += 1
            turn = outcome.turns + turn_offset
            token_est = None
            if verbose or report:
                token_est = estimate_tokens(messages, tools)
            if verbose:
                fmt.turn_header(outcome.turns, max_turns, token_est)

            t0 = time.monotonic()
            try:
                completion = call_llm(
                    model_id, messages, tools, verbose=verbose, **llm_kwargs
                )
            except CompletionBoundaryError as e:
                elapsed = time.monotonic() - t0
                if report:
                    report.record_llm_call(turn, elapsed, token_est, "error")
                error_text = f"Error: {e}"
                messages.append({"role": "assistant", "content": error_text})
                outcome.answer = error_text
                if verbose:
                    fmt.error(str(e))
                move(LoopState.FAILED)
                break

            elapsed = time.monotonic() - t0
            finish_reason = completion.finish_reason
            if verbose:
                fmt.llm_timing(elapsed, finish_reason)
            if report:
                report.record_llm_call(turn, elapsed, token_est, str(finish_reason))

            signal = completion.signal
            message = completion.message

            if signal is FinishSignal.TOOL_CALLS and completion.tool_calls:
                messages.append(message)
                if message.get("content") and verbose:
                    fmt.assistant_text(message["content"])
                pending = list(completion.tool_calls)
                move(LoopState.PROCESSING_TOOLS)
                continue

            # Every other signal ends the session, so requested calls would
            # stay unanswered in the transcript.
            if completion.tool_calls:
                message = {k: v for k, v in message.items() if k != "tool_calls"}
                warn(
                    f"ignored {len(completion.tool_calls)} tool call(s) "
                    f"requested with finish_reason={finish_reason!r}"
                )
            messages.append(message)
            outcome.answer = message.get("content") or ""

            if signal is FinishSignal.TRUNCATED:
                warn("response truncated due to length limit")
            elif signal is FinishSignal.FILTERED:
                warn("response filtered by content policy")
            elif signal is FinishSignal.TOOL_CALLS:
                warn("finish_reason=tool_calls but no tool call was requested")
            elif signal is FinishSignal.UNRECOGNIZED:
                warn(f"unknown finish_reason: {finish_reason!r}")
            move(LoopState.DONE)

        elif state is LoopState.PROCESSING_TOOLS:
            results: list[dict] = []
            for invocation in pending:
                tool_msg, tool_meta = handle_tool_call(invocation, context)
                results.append(tool_msg)
                if report:
                    report.record_tool_call(
                        outcome.turns + turn_offset,
                        tool_meta["name"],
                        tool_meta["arguments"],
                        tool_meta["succeeded"],
                        tool_meta["elapsed"],
                        len(tool_msg["content"]),
                        error=tool_msg["content"] if not tool_meta["succeeded"] else None,
                    )
            messages.extend(results)
            pending = []
            move(LoopState.AWAITING_MODEL)

    outcome.state = state
    if verbose:
        fmt.completion(outcome.turns, "exhausted" if outcome.exhausted else state.value)
        summary = context.todos.summary_line()
        if summary:
            fmt.todo_summary(summary)
    return outcome


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that can also come from a config file default to _UNSET so that
    apply_config_to_args() can tell "not given" from "given".
    """
    parser = argparse.ArgumentParser(
        prog="minicoder",
        usage="%(prog)s [options] <task>\n       %(prog)s --repl [options] [task]",
        description="A tool-calling coding agent confined to one workspace directory.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The task for the agent."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of running a single task.",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (LiteLLM syntax, or a bare name with --base-url). Env: AI_MODEL.",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the endpoint. Env: API_KEY.",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="OpenAI-compatible endpoint base URL. Env: BASE_URL.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: provider default).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Stop after this many model calls (default: unlimited).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in agent instructions.",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help="Seconds before a bash tool call is killed (default: 120).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Workspace directory for all tools (default: current directory).",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (minicoder.toml) template.",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("minicoder")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("task is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None, todos=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model or "unknown",
            settings={
                "base_dir": args.base_dir,
                "max_turns": args.max_turns,
                "max_output_tokens": args.max_output_tokens,
                "temperature": args.temperature,
                "command_timeout": args.command_timeout,
                "deny_commands": list(args.deny_commands),
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=report.max_turn_seen,
            error_message=error_message,
            todos=todos,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("failed", exit_code=1, error_message=str(e))
        sys.exit(1)


def _make_context(args) -> SessionContext:
    workspace = Path(args.base_dir).expanduser()
    if not workspace.is_dir():
        raise ConfigError(f"workspace is not a directory: {args.base_dir}")
    context = SessionContext(
        workspace=str(workspace),
        todos=TodoList(verbose=args.verbose),
        denied_commands=DEFAULT_DENIED_COMMANDS + tuple(args.deny_commands),
        command_timeout=args.command_timeout,
        verbose=args.verbose,
    )
    context.messages.append(
        {
            "role": "system",
            "content": build_system_prompt(context.workspace, args.system_prompt),
        }
    )
    return context


def _run_main(args, report, _write_report):
    if not args.model:
        raise ConfigError(
            "no model configured: pass --model, set AI_MODEL, "
            "or add 'model' to a config file"
        )

    context = _make_context(args)
    tools = tool_schemas()
    llm_kwargs = dict(
        api_base=args.base_url,
        api_key=args.api_key,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
    )
    loop_kwargs = dict(
        model_id=args.model,
        llm_kwargs=llm_kwargs,
        max_turns=args.max_turns,
    )

    if args.verbose:
        fmt.info(f"Model: {args.model}  Workspace: {context.workspace}")

    if not args.repl:
        context.messages.append({"role": "user", "content": args.question})
        outcome = run_agent_loop(context, tools, **loop_kwargs, report=report)

        if outcome.answer is not None:
            print(outcome.answer)

        if outcome.state is LoopState.FAILED:
            result, exit_code = "failed", 1
        elif outcome.exhausted:
            result, exit_code = "exhausted", 2
        else:
            result, exit_code = "done", 0
        _write_report(
            result,
            answer=outcome.answer,
            exit_code=exit_code,
            error_message=outcome.answer if exit_code == 1 else None,
            todos=context.todos.to_list(),
        )
        if exit_code:
            sys.exit(exit_code)
        return

    if args.question:
        _repl_turn(context, tools, args.question, loop_kwargs)
    repl_loop(context, tools, **loop_kwargs)


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------

_EXIT_WORDS = {"/exit", "/quit", "exit", "quit", "q"}


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset conversation and task list\n"
        "  /todos             Show the current task list\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(context: SessionContext) -> None:
    """Clear conversation history, keeping only the leading system messages."""
    before = len(context.messages)
    context.reset()
    dropped = before - len(context.messages)
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_turn(context: SessionContext, tools: list, line: str, loop_kwargs: dict):
    """Run one user turn; errors stay scoped to the turn."""
    context.messages.append({"role": "user", "content": line})
    try:
        outcome = run_agent_loop(context, tools, **loop_kwargs)
    except KeyboardInterrupt:
        answer_pending_tool_calls(context.messages, "error: interrupted by user")
        fmt.warning("interrupted, question aborted.")
        return None

    if outcome.state is LoopState.FAILED:
        fmt.warning(f"turn failed: {outcome.answer}")
    elif outcome.answer is not None:
        print(outcome.answer)
    if outcome.exhausted:
        fmt.warning("max turns reached for this question.")
    return outcome


def repl_loop(
    context: SessionContext,
    tools: list,
    *,
    model_id: str,
    llm_kwargs: dict | None = None,
    max_turns: int | None = None,
) -> None:
    """Interactive read-eval-print loop sharing one transcript across turns."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(context.workspace, ".minicoder", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "minicoder> ")])

    if context.verbose:
        fmt.repl_banner(context.workspace)

    loop_kwargs = dict(model_id=model_id, llm_kwargs=llm_kwargs, max_turns=max_turns)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line.lower() in _EXIT_WORDS:
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(context)
            continue
        elif cmd == "/todos":
            fmt.info(context.todos.render())
            continue

        _repl_turn(context, tools, line, loop_kwargs)


if __name__ == "__main__":
    main()
