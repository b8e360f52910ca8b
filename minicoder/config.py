"""Configuration loading and merging for minicoder.

Reads TOML config from ~/.config/minicoder/config.toml (global) and
<base_dir>/minicoder.toml (project), then the AI_MODEL, API_KEY and
BASE_URL environment variables. Precedence: CLI > env > project > global >
defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .sandbox import DEFAULT_COMMAND_TIMEOUT

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_turns": int,
    "system_prompt": str,
    "deny_commands": list,
    "command_timeout": int,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"deny_commands"}

_POSITIVE_INT_KEYS = {"max_output_tokens", "max_turns", "command_timeout"}

# Environment variable -> config key
ENV_KEYS: dict[str, str] = {
    "AI_MODEL": "model",
    "API_KEY": "api_key",
    "BASE_URL": "base_url",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": None,
    "temperature": None,
    "max_turns": None,
    "system_prompt": None,
    "deny_commands": [],
    "command_timeout": DEFAULT_COMMAND_TIMEOUT,
    "color": False,
    "no_color": False,
    "quiet": False,
}

PROJECT_CONFIG_NAME = "minicoder.toml"


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "minicoder"
    return Path.home() / ".config" / "minicoder"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )
                if not elem.strip():
                    raise ConfigError(f"{source}: {key}[{i}]: must not be empty")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using API_KEY instead.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


def env_overrides(environ=None) -> dict:
    """Config values taken from the environment. Empty variables are ignored."""
    environ = os.environ if environ is None else environ
    found = {}
    for var, key in ENV_KEYS.items():
        value = environ.get(var)
        if value:
            found[key] = value
    return found


# --- Public API ---


def load_config(base_dir: Path, environ=None) -> dict:
    """Load and merge global config, project config and environment.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set somewhere are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config, **env_overrides(environ)}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, checks if the argparse value is still _UNSET. If
    so, applies the config value. After processing all config keys, sweeps
    remaining _UNSET sentinels and replaces them with hardcoded defaults
    from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue  # Already handled above
        if _is_unset(key):
            setattr(args, key, value)

    # Sweep: replace remaining sentinels with hardcoded defaults
    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet becomes verbose (inverted). color is a terminal concern and is
    dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# minicoder configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/' + PROJECT_CONFIG_NAME if project else '~/.config/minicoder/config.toml'}",
        "#",
        "# CLI flags and AI_MODEL / API_KEY / BASE_URL override these values.",
        "# Only uncomment what you need.",
        "",
        "# --- Model endpoint ---",
        '# model = "gpt-4o-mini"           # LiteLLM model string, or bare name with base_url',
        '# api_key = "sk-..."              # prefer API_KEY; this is a fallback',
        '# base_url = "http://localhost:8080/v1"',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 4096",
        "# temperature = 0.2",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 50                  # absent = unlimited",
        '# system_prompt = "You are a careful coding agent in {workspace}."',
        "",
        "# --- Sandbox ---",
        '# deny_commands = ["curl", "git push"]   # added to the built-in deny list',
        f"# command_timeout = {DEFAULT_COMMAND_TIMEOUT}",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
