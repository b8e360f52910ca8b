"""Tests for the sandboxed executor: path confinement, files and shell."""

import sys
from unittest.mock import patch

import pytest

from minicoder import sandbox
from minicoder.errors import (
    AmbiguousPattern,
    DangerousCommand,
    ExecutionFailed,
    FileAccessError,
    PatternNotFound,
    UnsafePath,
)
from minicoder.sandbox import (
    edit_file,
    is_safe_path,
    read_file,
    run_bash,
    safe_resolve,
    write_file,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")


@pytest.fixture
def ws(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    return root


class TestPathSafety:
    def test_relative_inside(self, ws):
        assert safe_resolve("a/b.txt", str(ws)) == ws.resolve() / "a" / "b.txt"

    def test_root_itself_allowed(self, ws):
        assert safe_resolve(".", str(ws)) == ws.resolve()

    def test_dotdot_escape(self, ws):
        with pytest.raises(UnsafePath):
            safe_resolve("../outside.txt", str(ws))

    def test_dotdot_that_comes_back_is_fine(self, ws):
        assert is_safe_path(str(ws), "sub/../file.txt")

    def test_sibling_with_shared_prefix(self, ws, tmp_path):
        (tmp_path / "ws-evil").mkdir()
        assert not is_safe_path(str(ws), "../ws-evil/x.txt")

    def test_absolute_outside(self, ws):
        assert not is_safe_path(str(ws), "/etc/passwd")

    def test_absolute_inside(self, ws):
        assert is_safe_path(str(ws), str(ws / "x.txt"))

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks")
    def test_symlink_escape(self, ws, tmp_path):
        outside = tmp_path / "secret"
        outside.mkdir()
        (ws / "link").symlink_to(outside)
        with pytest.raises(UnsafePath):
            safe_resolve("link/data.txt", str(ws))

    def test_nul_byte_is_unsafe(self, ws):
        assert is_safe_path(str(ws), "a\x00b") is False
        with pytest.raises(UnsafePath):
            safe_resolve("a\x00b", str(ws))

    def test_nul_byte_via_dispatch(self, ws):
        from minicoder.context import SessionContext
        from minicoder.tools import dispatch

        result = dispatch("read", {"path": "x\x00y"}, SessionContext(workspace=str(ws)))
        assert not result.ok
        assert result.error.kind == "unsafe_path"

    def test_unsafe_write_not_attempted(self, ws, tmp_path):
        with pytest.raises(UnsafePath):
            write_file("../escaped.txt", "x", str(ws))
        assert not (tmp_path / "escaped.txt").exists()


class TestReadWrite:
    def test_round_trip(self, ws):
        content = "line one\nünïcödé ✓\r\nno trailing newline"
        write_file("dir/sub/f.txt", content, str(ws))
        assert read_file("dir/sub/f.txt", str(ws)) == content

    def test_write_reports_bytes(self, ws):
        out = write_file("f.txt", "é", str(ws))
        assert out == "Wrote 2 bytes to f.txt"

    def test_write_overwrites(self, ws):
        write_file("f.txt", "first", str(ws))
        write_file("f.txt", "second", str(ws))
        assert (ws / "f.txt").read_text() == "second"

    def test_write_to_directory(self, ws):
        (ws / "d").mkdir()
        with pytest.raises(FileAccessError):
            write_file("d", "x", str(ws))

    def test_read_missing(self, ws):
        with pytest.raises(FileAccessError, match="does not exist"):
            read_file("nope.txt", str(ws))

    def test_read_directory(self, ws):
        (ws / "d").mkdir()
        with pytest.raises(FileAccessError, match="directory"):
            read_file("d", str(ws))

    def test_read_binary(self, ws):
        (ws / "b.bin").write_bytes(b"\xff\xfe\x00\x80")
        with pytest.raises(FileAccessError, match="UTF-8"):
            read_file("b.bin", str(ws))

    def test_line_limit_truncates(self, ws):
        (ws / "big.txt").write_text("".join(f"line {i}\n" for i in range(100)))
        out = read_file("big.txt", str(ws), line_limit=10)
        body, marker = out.split("\n\n... truncated ")
        assert body.splitlines() == [f"line {i}" for i in range(10)]
        assert marker == "(90 more lines)"

    def test_line_limit_not_reached(self, ws):
        (ws / "small.txt").write_text("a\nb\n")
        assert read_file("small.txt", str(ws), line_limit=10) == "a\nb\n"

    def test_line_limit_exact(self, ws):
        (ws / "f.txt").write_text("a\nb\n")
        assert read_file("f.txt", str(ws), line_limit=2) == "a\nb\n"

    def test_line_limit_zero(self, ws):
        (ws / "f.txt").write_text("a\nb\nc")
        assert read_file("f.txt", str(ws), line_limit=0) == "\n... truncated (3 more lines)"


class TestEditFile:
    def test_edit_unique(self, ws):
        (ws / "f.py").write_text("x = 1\ny = 2\n")
        assert edit_file("f.py", "y = 2", "y = 3", str(ws)) == "Edited f.py"
        assert (ws / "f.py").read_text() == "x = 1\ny = 3\n"

    def test_ambiguous_leaves_bytes_unchanged(self, ws):
        original = b"x = 1\nx = 1\n"
        (ws / "f.py").write_bytes(original)
        with pytest.raises(AmbiguousPattern):
            edit_file("f.py", "x = 1", "x = 2", str(ws))
        assert (ws / "f.py").read_bytes() == original

    def test_not_found_leaves_bytes_unchanged(self, ws):
        (ws / "f.py").write_bytes(b"a\n")
        with pytest.raises(PatternNotFound):
            edit_file("f.py", "b", "c", str(ws))
        assert (ws / "f.py").read_bytes() == b"a\n"

    def test_edit_missing_file(self, ws):
        with pytest.raises(FileAccessError):
            edit_file("nope.py", "a", "b", str(ws))

    def test_edit_outside(self, ws):
        with pytest.raises(UnsafePath):
            edit_file("../f.py", "a", "b", str(ws))


@posix_only
class TestRunBash:
    def test_stdout(self, ws):
        assert run_bash("echo hello", str(ws)) == "hello\n"

    def test_runs_in_workspace(self, ws):
        (ws / "marker.txt").write_text("")
        assert "marker.txt" in run_bash("ls", str(ws))

    def test_stderr_when_stdout_empty(self, ws):
        assert run_bash("echo oops >&2", str(ws)) == "oops\n"

    def test_stdout_wins_over_stderr(self, ws):
        assert run_bash("echo out; echo err >&2", str(ws)) == "out\n"

    def test_no_output(self, ws):
        assert run_bash("true", str(ws)) == ""

    def test_nonzero_exit_is_not_an_error(self, ws):
        assert run_bash("echo failing; exit 3", str(ws)) == "failing\n"

    def test_timeout(self, ws):
        with pytest.raises(ExecutionFailed, match="timed out"):
            run_bash("sleep 10", str(ws), timeout=1)

    def test_output_capped(self, ws):
        out = run_bash("head -c 100000 /dev/zero | tr '\\0' a", str(ws))
        assert "output truncated at 50KB" in out
        assert len(out) < 60000

    def test_missing_workspace(self, tmp_path):
        with pytest.raises(ExecutionFailed):
            run_bash("echo hi", str(tmp_path / "gone"))


class TestDenyList:
    @pytest.mark.parametrize(
        "command",
        [
            "rm -rf /",
            "sudo ls",
            "shutdown now",
            "reboot",
            "echo x > /dev/sda",
        ],
    )
    def test_denied_without_spawning(self, ws, command):
        with patch("subprocess.Popen") as popen:
            with pytest.raises(DangerousCommand):
                run_bash(command, str(ws))
            popen.assert_not_called()

    def test_denied_is_execution_failed(self, ws):
        with pytest.raises(ExecutionFailed, match="dangerous command blocked"):
            run_bash("sudo true", str(ws))

    def test_extra_patterns(self, ws):
        denied = sandbox.DEFAULT_DENIED_COMMANDS + ("curl",)
        with pytest.raises(DangerousCommand) as exc:
            run_bash("curl example.com", str(ws), denied=denied)
        assert exc.value.pattern == "curl"

    @posix_only
    def test_harmless_command_allowed(self, ws):
        assert run_bash("echo rm -rf tmp", str(ws)) == "rm -rf tmp\n"

    def test_spawn_failure(self, ws):
        with patch("subprocess.Popen", side_effect=OSError("no shell")):
            with pytest.raises(ExecutionFailed, match="failed to start"):
                run_bash("echo hi", str(ws))

