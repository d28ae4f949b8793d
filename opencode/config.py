"""Configuration loading and merging for opencode.

Reads TOML config from ~/.config/opencode/config.toml (global) and
<cwd>/opencode.toml (project), or a single file named with --config.
Precedence: CLI > environment (.env included) > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_BASE_URL = "http://localhost:5000/v1"
DEFAULT_MODEL = "qwen2.5-coder:7b"
LOG_LEVELS = ("quiet", "normal", "verbose", "debug")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "base_url": str,
    "model": str,
    "api_key": str,
    "timeout": int,
    "retries": int,
    "max_steps": int,
    "stream": bool,
    "auto_approve": bool,
    "allowed_commands": list,
    "dry_run": bool,
    "audit_log": str,
    "plugin_dir": str,
    "log_level": str,
    "color": bool,
}

_LIST_OF_STR_KEYS = {"allowed_commands"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "base_url": DEFAULT_BASE_URL,
    "model": DEFAULT_MODEL,
    "api_key": None,
    "timeout": 60000,
    "retries": 3,
    "max_steps": 10,
    "stream": False,
    "auto_approve": False,
    "allowed_commands": [],
    "dry_run": False,
    "audit_log": None,
    "plugin_dir": None,
    "log_level": "normal",
    "color": None,
}

# Environment variable -> config key. Integers are parsed leniently.
_ENV_VARS: dict[str, str] = {
    "OPENCODE_BASE_URL": "base_url",
    "OPENCODE_MODEL": "model",
    "OPENCODE_API_KEY": "api_key",
    "OPENAI_API_KEY": "api_key",
    "OPENCODE_TIMEOUT": "timeout",
    "OPENCODE_RETRIES": "retries",
}


@dataclass
class Settings:
    """Fully resolved runtime configuration."""

    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    api_key: str | None = None
    timeout: int = 60000
    retries: int = 3
    max_steps: int = 10
    stream: bool = False
    auto_approve: bool = False
    allowed_commands: list[str] = field(default_factory=list)
    dry_run: bool = False
    audit_log: str | None = None
    plugin_dir: str | None = None
    log_level: str = "normal"
    color: bool | None = None

    @property
    def verbose(self) -> bool:
        return self.log_level in ("verbose", "debug")


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "opencode"
    return Path.home() / ".config" / "opencode"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
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

    if "log_level" in config and config["log_level"] not in LOG_LEVELS:
        raise ConfigError(
            f"{source}: 'log_level' must be one of {', '.join(LOG_LEVELS)}"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths against the config file's directory."""
    for key in ("audit_log", "plugin_dir"):
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    _resolve_paths(known, path.parent)
    return known


def _parse_int(name: str, raw: str) -> int | None:
    try:
        return int(raw.strip())
    except ValueError:
        print(f"warning: ignoring non-integer {name}={raw!r}", file=sys.stderr)
        return None


# --- Public API ---


def load_config(base_dir: Path, explicit: str | Path | None = None) -> dict:
    """Load and merge config files.

    With ``explicit`` only that file is read and it must exist. Otherwise the
    global file is read first and the project file overrides it. Returns only
    keys actually set in files.
    """
    if explicit is not None:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigError(f"config file not found: {path}")
        return _load_single(path, str(path))

    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "opencode.toml"
    project_config = _load_single(project_path, str(project_path))

    return {**global_config, **project_config}


def load_env(base_dir: Path, environ=None) -> dict:
    """Read overrides from the environment, after loading ``<base_dir>/.env``.

    Existing environment variables win over .env entries. ``OPENCODE_API_KEY``
    wins over ``OPENAI_API_KEY``. Invalid integers are ignored.
    """
    if environ is None:
        load_dotenv(Path(base_dir) / ".env", override=False)
        environ = os.environ

    values: dict = {}
    for var, key in _ENV_VARS.items():
        raw = environ.get(var)
        if not raw or key in values:
            continue
        if CONFIG_KEYS[key] is int:
            parsed = _parse_int(var, raw)
            if parsed is None:
                continue
            values[key] = parsed
        else:
            values[key] = raw
    return values


def apply_config_to_args(
    args: argparse.Namespace, config: dict, env: dict | None = None
) -> None:
    """Fill argparse dests the CLI left unset.

    Each dest still holding _UNSET takes the environment value, then the
    config value, then the hardcoded default from _ARGPARSE_DEFAULTS.
    """
    env = env or {}
    for dest, default in _ARGPARSE_DEFAULTS.items():
        if getattr(args, dest, _UNSET) is not _UNSET:
            continue
        if dest in env:
            value = env[dest]
        elif dest in config:
            value = config[dest]
        else:
            value = default
        setattr(args, dest, value)


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Build Settings from a namespace already passed through apply_config_to_args."""
    allowed = args.allowed_commands or []
    if isinstance(allowed, str):
        allowed = allowed.split(",")
    return Settings(
        base_url=args.base_url,
        model=args.model,
        api_key=args.api_key,
        timeout=max(1, int(args.timeout)),
        retries=max(0, int(args.retries)),
        max_steps=max(1, int(args.max_steps)),
        stream=bool(args.stream),
        auto_approve=bool(args.auto_approve),
        allowed_commands=[c.strip() for c in allowed if c.strip()],
        dry_run=bool(args.dry_run),
        audit_log=args.audit_log,
        plugin_dir=args.plugin_dir,
        log_level=args.log_level,
        color=args.color,
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# opencode configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/opencode.toml' if project else '~/.config/opencode/config.toml'}",
        "#",
        "# Environment variables and CLI flags override these values.",
        "",
        "# --- Endpoint / model ---",
        f'# base_url = "{DEFAULT_BASE_URL}"',
        f'# model = "{DEFAULT_MODEL}"',
        '# api_key = "sk-..."            # prefer OPENCODE_API_KEY',
        "# timeout = 60000                # per-request timeout in milliseconds",
        "# retries = 3",
        "",
        "# --- Agent behaviour ---",
        "# max_steps = 10",
        "# stream = false",
        "",
        "# --- Shell commands ---",
        "# auto_approve = false",
        '# allowed_commands = ["git", "ls", "pytest"]',
        "# dry_run = false",
        "",
        "# --- Extras ---",
        '# audit_log = ".opencode/audit.jsonl"',
        '# plugin_dir = ".opencode/plugins"',
        "",
        "# --- UI ---",
        '# log_level = "normal"          # quiet | normal | verbose | debug',
        "# color = true                  # true = force color, false = no color, absent = auto",
        "",
    ]
    return "\n".join(lines)
