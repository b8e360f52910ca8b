"""Sandboxed executor: shell commands and file operations confined to a workspace."""

import os
import subprocess
import sys
from pathlib import Path

from .edit import replace
from .errors import DangerousCommand, ExecutionFailed, FileAccessError, UnsafePath

# Coarse substring filter. It is NOT a sandbox: trivial rewrites
# ("rm  -rf /", "$(echo sudo)") get through. Path confinement only applies
# to the file tools, not to what a shell command does.
DEFAULT_DENIED_COMMANDS = ("rm -rf /", "sudo", "shutdown", "reboot", "> /dev/")

DEFAULT_COMMAND_TIMEOUT = 120
MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Resolves symlinks for both the base directory and the target path, then
    checks containment component by component, so a sibling such as
    ``/ws-evil`` is never mistaken for a child of ``/ws``.

    Raises:
        UnsafePath: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()

    try:
        candidate = Path(file_path)
        if not candidate.is_absolute():
            candidate = base / candidate
        resolved = candidate.resolve()
    except (OSError, ValueError) as e:
        # e.g. embedded NUL bytes or a symlink loop
        raise UnsafePath(file_path, f"<unresolvable: {e}>", base) from e

    if not resolved.is_relative_to(base):
        raise UnsafePath(file_path, resolved, base)
    return resolved


def is_safe_path(base_dir: str, file_path: str) -> bool:
    try:
        safe_resolve(file_path, base_dir)
    except UnsafePath:
        return False
    return True


def check_command(command: str, denied: tuple[str, ...] = DEFAULT_DENIED_COMMANDS):
    """Raise DangerousCommand if command contains a denied substring."""
    for pattern in denied:
        if pattern and pattern in command:
            raise DangerousCommand(command, pattern)


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _decode_capped(data: bytes | None) -> str:
    if not data:
        return ""
    if len(data) <= MAX_OUTPUT_BYTES:
        return data.decode("utf-8", errors="replace")
    head = data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace")
    return head + f"\n[output truncated at 50KB, {len(data)} bytes total]"


def run_bash(
    command: str,
    base_dir: str,
    *,
    denied: tuple[str, ...] = DEFAULT_DENIED_COMMANDS,
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
) -> str:
    """Run a shell string in base_dir and return its textual output.

    Returns stdout if non-empty, else stderr, else "". A non-zero exit status
    is not an error; the model reads the output and decides.

    Raises:
        DangerousCommand: command matched the deny list (nothing is spawned).
        ExecutionFailed: the shell could not be started or timed out.
    """
    check_command(command, denied)

    base_path = Path(base_dir)
    if not base_path.is_dir():
        raise ExecutionFailed(f"workspace is not a directory: {base_dir}")

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        raise ExecutionFailed(f"failed to start shell command: {e}") from e

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        try:
            _, stderr = proc.communicate(timeout=_KILL_WAIT_TIMEOUT)
        except (subprocess.TimeoutExpired, ValueError, OSError):
            stderr = b""
        raise ExecutionFailed(
            f"command timed out after {timeout}s", _decode_capped(stderr)
        )

    out = _decode_capped(stdout)
    if out:
        return out
    return _decode_capped(stderr)


def read_file(file_path: str, base_dir: str, line_limit: int | None = None) -> str:
    """Return the text of a file, optionally cut to its first line_limit lines."""
    resolved = safe_resolve(file_path, base_dir)

    if not resolved.exists():
        raise FileAccessError(f"path does not exist: {file_path}")
    if resolved.is_dir():
        raise FileAccessError(f"path is a directory: {file_path}")

    try:
        text = resolved.read_bytes().decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FileAccessError(f"failed to decode {file_path} as UTF-8: {exc}")
    except OSError as exc:
        raise FileAccessError(str(exc))

    if line_limit is None:
        return text

    lines = text.splitlines(keepends=True)
    if len(lines) <= line_limit:
        return text

    kept = "".join(lines[:line_limit])
    if kept and not kept.endswith("\n"):
        kept += "\n"
    return kept + f"\n... truncated ({len(lines) - line_limit} more lines)"


def write_file(file_path: str, content: str, base_dir: str) -> str:
    """Create or overwrite a file with content."""
    resolved = safe_resolve(file_path, base_dir)

    if resolved.is_dir():
        raise FileAccessError(f"path is a directory: {file_path}")

    data = content.encode("utf-8")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
    except OSError as exc:
        raise FileAccessError(str(exc))
    return f"Wrote {len(data)} bytes to {file_path}"


def edit_file(file_path: str, old_content: str, new_content: str, base_dir: str) -> str:
    """Replace the unique occurrence of old_content in an existing file."""
    resolved = safe_resolve(file_path, base_dir)

    if not resolved.is_file():
        raise FileAccessError(f"file does not exist: {file_path}")

    try:
        content = resolved.read_bytes().decode("utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        raise FileAccessError(str(exc))

    updated = replace(content, old_content, new_content, path=file_path)

    try:
        resolved.write_bytes(updated.encode("utf-8"))
    except OSError as exc:
        raise FileAccessError(str(exc))
    return f"Edited {file_path}"
