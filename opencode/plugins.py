"""Discover extra tools from Python files in a plugin directory.

Each ``*.py`` file may define ``TOOLS``, a list of dicts::

    TOOLS = [
        {
            "name": "word_count",
            "description": "Count words in a string",
            "parameters": {"type": "object", "properties": {"text": {"type": "string"}}},
            "execute": lambda args: str(len(args["text"].split())),
        },
    ]
"""

import importlib.util
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from . import fmt
from .tools import BUILTIN_NAMES

logger = logging.getLogger(__name__)


@dataclass
class PluginSet:
    definitions: list[dict] = field(default_factory=list)
    handlers: dict[str, Callable[[dict], str]] = field(default_factory=dict)


def _load_module(path: Path):
    name = f"opencode_plugin_{path.stem}"
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _validate(entry) -> str | None:
    if not isinstance(entry, dict):
        return "entry is not a dict"
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        return "missing name"
    if not callable(entry.get("execute")):
        return f"{name}: execute is not callable"
    params = entry.get("parameters", {"type": "object", "properties": {}})
    if not isinstance(params, dict):
        return f"{name}: parameters must be a dict"
    return None


def load_plugins(plugin_dir: str | Path | None, verbose: bool = False) -> PluginSet:
    """Import every plugin file and collect its tool schemas and handlers."""
    plugins = PluginSet()
    if not plugin_dir:
        return plugins
    root = Path(plugin_dir)
    if not root.is_dir():
        logger.debug("plugin directory %s does not exist", root)
        return plugins

    for path in sorted(root.glob("*.py")):
        if path.name.startswith("_"):
            continue
        try:
            module = _load_module(path)
        except Exception as e:
            fmt.warning(f"failed to load plugin {path.name}: {e}")
            continue

        entries = getattr(module, "TOOLS", [])
        if not isinstance(entries, (list, tuple)):
            fmt.warning(f"plugin {path.name}: TOOLS must be a list")
            continue

        for entry in entries:
            problem = _validate(entry)
            if problem:
                fmt.warning(f"plugin {path.name}: skipping tool ({problem})")
                continue
            name = entry["name"]
            if name in BUILTIN_NAMES or name in plugins.handlers:
                fmt.warning(f"plugin {path.name}: tool {name!r} already defined, skipping")
                continue
            plugins.definitions.append(
                {
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": entry.get("description", ""),
                        "parameters": entry.get(
                            "parameters", {"type": "object", "properties": {}}
                        ),
                    },
                }
            )
            plugins.handlers[name] = entry["execute"]
            if verbose:
                fmt.info(f"Loaded plugin tool {name} from {path.name}")

    return plugins
