"""Configuration file loading and merging for cinder.

Reads TOML config from ~/.config/cinder/config.toml (global) and
<base_dir>/cinder.toml (project). Precedence: CLI > environment > project >
global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .client import CEREBRAS_BASE_URL
from .models import DEFAULT_PROVIDER, PROVIDERS
from .report import ConfigError
from .state import PERMISSION_MODES, REASONING_MODES

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_iterations": int,
    "stream": bool,
    "system_prompt": str,
    "no_instructions": bool,
    "reasoning": str,
    "permission_mode": str,
    "allowed_commands": list,
    "token_estimator": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"allowed_commands"}

_CHOICES: dict[str, tuple[str, ...]] = {
    "provider": PROVIDERS,
    "reasoning": REASONING_MODES,
    "permission_mode": PERMISSION_MODES,
    "token_estimator": ("chars", "tiktoken"),
}

_POSITIVE_INT_KEYS = {"max_output_tokens", "max_iterations"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": DEFAULT_PROVIDER,
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": None,
    "temperature": 0.7,
    "max_iterations": 20,
    "stream": True,
    "system_prompt": None,
    "no_instructions": False,
    "reasoning": "balanced",
    "permission_mode": "interactive",
    "allowed_commands": None,
    "token_estimator": "chars",
    "color": False,
    "no_color": False,
    "quiet": False,
}

ENV_PREFIX = {"cerebras": "CEREBRAS", "openai": "OPENAI"}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "cinder"
    return Path.home() / ".config" / "cinder"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and allowed values in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _CHOICES and value not in _CHOICES[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICES[key])}, got {value!r}"
            )

        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")


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


# --- Environment ---


def resolve_api_key(provider: str, explicit: str | None, env) -> str | None:
    """Explicit key first, then <PROVIDER>_API_KEY from env."""
    if explicit:
        return explicit
    return env.get(f"{ENV_PREFIX[provider]}_API_KEY") or None


def resolve_base_url(provider: str, explicit: str | None, env) -> str | None:
    """Explicit URL first, then <PROVIDER>_BASE_URL, then the provider default."""
    if explicit:
        return explicit
    url = env.get(f"{ENV_PREFIX[provider]}_BASE_URL")
    if url:
        return url
    if provider == "cerebras":
        return CEREBRAS_BASE_URL
    return None


def _env_number(env, name: str, kind):
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name}: expected {kind.__name__}, got {raw!r}") from None


def env_settings(provider: str, env) -> dict:
    """Settings supplied through <PROVIDER>_* environment variables."""
    prefix = ENV_PREFIX[provider]
    settings: dict[str, Any] = {}
    api_key = resolve_api_key(provider, None, env)
    if api_key:
        settings["api_key"] = api_key
    if env.get(f"{prefix}_BASE_URL"):
        settings["base_url"] = env[f"{prefix}_BASE_URL"]
    if env.get(f"{prefix}_MODEL"):
        settings["model"] = env[f"{prefix}_MODEL"]
    max_tokens = _env_number(env, f"{prefix}_MAX_TOKENS", int)
    if max_tokens is not None:
        settings["max_output_tokens"] = max_tokens
    temperature = _env_number(env, f"{prefix}_TEMPERATURE", float)
    if temperature is not None:
        settings["temperature"] = temperature
    return settings


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "cinder.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(
    args: argparse.Namespace, config: dict, env=None
) -> None:
    """Fill in argparse values the CLI left unset.

    Environment variables for the selected provider are applied first,
    then config file values, then the hardcoded defaults in
    _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if _is_unset("provider"):
        args.provider = config.get("provider", DEFAULT_PROVIDER)

    if env is not None:
        for key, value in env_settings(args.provider, env).items():
            if _is_unset(key):
                setattr(args, key, value)

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    args.base_url = resolve_base_url(args.provider, args.base_url, env or {})


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet -> verbose (inverted), no_instructions -> instructions (inverted).
    Drops keys that are only CLI concerns (color).
    """
    kwargs = {}
    _DROP_KEYS = {"color"}
    _INVERT_KEYS = {"quiet": "verbose", "no_instructions": "instructions"}

    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# cinder configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/cinder.toml' if project else '~/.config/cinder/config.toml'}",
        "#",
        "# CLI flags and environment variables override these values.",
        "# Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "cerebras"          # "cerebras" | "openai"',
        '# model = "qwen-3-235b-a22b-instruct-2507"',
        '# api_key = "csk-..."             # prefer CEREBRAS_API_KEY / OPENAI_API_KEY',
        '# base_url = "https://api.cerebras.ai/v1"',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 4096",
        "# temperature = 0.7",
        "",
        "# --- Agent behaviour ---",
        "# max_iterations = 20",
        "# stream = true",
        '# system_prompt = "Prefer small, reviewable diffs."',
        "# no_instructions = false",
        '# reasoning = "balanced"        # "fast" | "balanced" | "thorough"',
        '# token_estimator = "chars"     # "chars" | "tiktoken"',
        "",
        "# --- Permissions ---",
        '# permission_mode = "interactive"  # "interactive" | "auto-accept" | "yolo"',
        '# allowed_commands = ["git status*", "pytest*", "ls*"]',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
