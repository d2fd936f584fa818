"""Configuration file loading and merging for inkwell.

Reads TOML config from ~/.config/inkwell/config.toml (global) and
<project>/inkwell.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError  # noqa: F401 (re-export)

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG_FILE = "inkwell.toml"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_loops": int,
    "window_size": int,
    "retries": int,
    "retry_delay": (int, float),
    "safety_threshold": str,
    "reasoning_gate": str,
    "approval": str,
    "plan_mode": bool,
    "system_prompt": str,
    "no_instructions": bool,
    "color": bool,
    "quiet": bool,
}

# Keys restricted to a fixed set of values
_CHOICES: dict[str, tuple[str, ...]] = {
    "provider": ("gemini", "deepseek", "moonshot", "openai", "openrouter", "lmstudio"),
    "safety_threshold": (
        "BLOCK_NONE",
        "BLOCK_ONLY_HIGH",
        "BLOCK_MEDIUM_AND_ABOVE",
        "BLOCK_LOW_AND_ABOVE",
    ),
    "reasoning_gate": ("first_iteration", "until_reasoned", "off"),
    "approval": ("ask", "auto"),
}

_POSITIVE_INT_KEYS = {"max_output_tokens", "max_loops", "window_size", "retries"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "deepseek",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "temperature": None,
    "max_loops": 30,
    "window_size": 30,
    "retries": 3,
    "retry_delay": 2.0,
    "safety_threshold": "BLOCK_NONE",
    "reasoning_gate": "first_iteration",
    "approval": "ask",
    "plan_mode": False,
    "system_prompt": None,
    "no_instructions": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "inkwell"
    return Path.home() / ".config" / "inkwell"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and allowed values in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _CHOICES and value not in _CHOICES[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICES[key])}, got {value!r}"
            )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")
        if key == "retry_delay" and value < 0:
            raise ConfigError(f"{source}: 'retry_delay' must not be negative")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
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


# --- Public API ---


def load_config(project_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only keys actually set in config files (no
    defaults injected), plus ``config_dir`` pointing at the global config
    directory.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(project_dir).resolve() / PROJECT_CONFIG_FILE
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to the argparse namespace where the CLI didn't set one.

    Remaining ``_UNSET`` sentinels are then replaced with hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_client_kwargs(args: argparse.Namespace) -> dict:
    """LLMClient constructor kwargs from resolved arguments."""
    return {
        "provider": args.provider,
        "model": args.model,
        "api_key": args.api_key,
        "base_url": args.base_url,
        "max_output_tokens": args.max_output_tokens,
        "temperature": args.temperature,
        "retries": args.retries,
        "retry_delay": float(args.retry_delay),
        "safety_threshold": args.safety_threshold,
    }


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# inkwell configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/inkwell.toml' if project else '~/.config/inkwell/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "deepseek"   # "gemini" | "deepseek" | "moonshot" | "openai" | "openrouter" | "lmstudio"',
        '# model = "deepseek-chat"',
        '# api_key = "sk-..."        # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        '# safety_threshold = "BLOCK_NONE"   # Gemini models only',
        "",
        "# --- Retries ---",
        "# retries = 3",
        "# retry_delay = 2.0",
        "",
        "# --- Agent behaviour ---",
        "# max_loops = 30",
        "# window_size = 30",
        '# reasoning_gate = "first_iteration"   # "first_iteration" | "until_reasoned" | "off"',
        '# approval = "ask"                     # "ask" | "auto"',
        "# plan_mode = false",
        '# system_prompt = "You are a helpful writing assistant."',
        "# no_instructions = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
