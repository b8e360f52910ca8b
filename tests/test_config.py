"""Tests for minicoder.config: TOML files, environment, and CLI integration."""

import argparse
import tomllib
from pathlib import Path

import pytest

from minicoder.config import (
    _UNSET,
    ConfigError,
    apply_config_to_args,
    config_to_session_kwargs,
    env_overrides,
    generate_config,
    global_config_dir,
    load_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for var in ("AI_MODEL", "API_KEY", "BASE_URL"):
        monkeypatch.delenv(var, raising=False)


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _global_toml(tmp_path):
    return tmp_path / "xdg" / "minicoder" / "config.toml"


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_output_tokens": _UNSET,
        "temperature": _UNSET,
        "max_turns": _UNSET,
        "system_prompt": _UNSET,
        "command_timeout": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path):
        _write_toml(_global_toml(tmp_path), 'model = "gpt-4o-mini"\n')
        result = load_config(tmp_path / "project")
        assert result["model"] == "gpt-4o-mini"

    def test_project_only(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", "max_turns = 42\n")
        assert load_config(tmp_path)["max_turns"] == 42

    def test_project_overrides_global(self, tmp_path):
        _write_toml(_global_toml(tmp_path), "max_turns = 10\ntemperature = 0.1\n")
        _write_toml(tmp_path / "minicoder.toml", "max_turns = 50\n")
        result = load_config(tmp_path)
        assert result["max_turns"] == 50
        assert result["temperature"] == 0.1

    def test_env_overrides_files(self, tmp_path, monkeypatch):
        _write_toml(tmp_path / "minicoder.toml", 'model = "from-file"\n')
        monkeypatch.setenv("AI_MODEL", "from-env")
        monkeypatch.setenv("BASE_URL", "http://localhost:8080/v1")
        result = load_config(tmp_path)
        assert result["model"] == "from-env"
        assert result["base_url"] == "http://localhost:8080/v1"

    def test_explicit_environ(self, tmp_path):
        result = load_config(tmp_path, environ={"API_KEY": "sk-x"})
        assert result == {"api_key": "sk-x"}

    def test_unknown_keys_warn(self, tmp_path, capsys):
        _write_toml(tmp_path / "minicoder.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml_raises(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)


class TestEnvOverrides:
    def test_mapping(self):
        env = {"AI_MODEL": "m", "API_KEY": "k", "BASE_URL": "u", "OTHER": "x"}
        assert env_overrides(env) == {"model": "m", "api_key": "k", "base_url": "u"}

    def test_empty_values_ignored(self):
        assert env_overrides({"AI_MODEL": ""}) == {}


# ===========================================================================
# Type validation
# ===========================================================================


class TestTypeValidation:
    def test_wrong_type_raises(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", 'max_turns = "not a number"\n')
        with pytest.raises(ConfigError, match="max_turns.*expected int.*got str"):
            load_config(tmp_path)

    def test_bool_rejected_for_int(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", "command_timeout = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_int_accepted_for_temperature(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    def test_non_positive_rejected(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", "max_turns = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_deny_commands_must_be_strings(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", "deny_commands = [1]\n")
        with pytest.raises(ConfigError, match=r"deny_commands\[0\]"):
            load_config(tmp_path)

    def test_deny_commands_no_blank(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", 'deny_commands = [" "]\n')
        with pytest.raises(ConfigError, match="must not be empty"):
            load_config(tmp_path)


# ===========================================================================
# Applying to argparse
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "m", "max_turns": 7})
        assert args.model == "m"
        assert args.max_turns == 7

    def test_cli_wins(self):
        args = _make_args(model="cli-model")
        apply_config_to_args(args, {"model": "cfg-model"})
        assert args.model == "cli-model"

    def test_defaults_swept(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.model is None
        assert args.max_turns is None
        assert args.command_timeout == 120
        assert args.deny_commands == []
        assert args.quiet is False

    def test_color_true(self):
        args = _make_args()
        apply_config_to_args(args, {"color": True})
        assert args.color is True
        assert args.no_color is False

    def test_color_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_cli_no_color_beats_config(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False


class TestConfigToSessionKwargs:
    def test_quiet_inverted(self):
        assert config_to_session_kwargs({"quiet": True}) == {"verbose": False}

    def test_color_dropped(self):
        assert config_to_session_kwargs({"color": True, "model": "m"}) == {"model": "m"}

    def test_session_accepts_kwargs(self, tmp_path):
        from minicoder import Session

        kwargs = config_to_session_kwargs(
            {
                "model": "m",
                "max_turns": 3,
                "deny_commands": ["curl"],
                "command_timeout": 5,
                "quiet": False,
            }
        )
        session = Session(base_dir=str(tmp_path), **kwargs)
        assert session.verbose is True
        assert session.deny_commands == ["curl"]


# ===========================================================================
# Templates and misc
# ===========================================================================


class TestGenerateConfig:
    def test_is_valid_toml(self):
        content = generate_config()
        lines = []
        for line in content.splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        tomllib.loads("\n".join(lines))

    def test_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "minicoder.toml" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


class TestApiKeyWarning:
    def test_api_key_in_git_repo_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "minicoder.toml", 'api_key = "sk-secret"\n')
        load_config(tmp_path)
        assert "api_key" in capsys.readouterr().err

    def test_api_key_without_git_no_warning(self, tmp_path, capsys):
        _write_toml(tmp_path / "minicoder.toml", 'api_key = "sk-secret"\n')
        load_config(tmp_path)
        assert "api_key" not in capsys.readouterr().err


class TestGlobalConfigDir:
    def test_respects_xdg(self, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", "/custom/xdg")
        assert global_config_dir() == Path("/custom/xdg/minicoder")

    def test_default_home(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert global_config_dir() == Path.home() / ".config" / "minicoder"


class TestCLIIntegration:
    def test_parse_load_apply(self, tmp_path):
        _write_toml(tmp_path / "minicoder.toml", 'max_turns = 42\ndeny_commands = ["curl"]\n')

        from minicoder.agent import build_parser

        args = build_parser().parse_args(["--base-dir", str(tmp_path), "question"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_turns == 42
        assert args.deny_commands == ["curl"]
        assert args.command_timeout == 120

    def test_cli_flag_overrides_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AI_MODEL", "env-model")

        from minicoder.agent import build_parser

        args = build_parser().parse_args(["--model", "cli-model", "question"])
        apply_config_to_args(args, load_config(tmp_path))
        assert args.model == "cli-model"
