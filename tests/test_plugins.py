"""Tests for plugin discovery."""

import textwrap

from opencode.plugins import load_plugins
from opencode.tools import ToolDispatcher


def _plugin(directory, name, body):
    directory.mkdir(exist_ok=True)
    (directory / name).write_text(textwrap.dedent(body), encoding="utf-8")


WORD_COUNT = """
    def _count(args):
        return str(len(args["text"].split()))

    TOOLS = [
        {
            "name": "word_count",
            "description": "Count words",
            "parameters": {"type": "object", "properties": {"text": {"type": "string"}}},
            "execute": _count,
        }
    ]
"""


def test_loads_definitions_and_handlers(tmp_path):
    plugins_dir = tmp_path / "plugins"
    _plugin(plugins_dir, "words.py", WORD_COUNT)
    plugins = load_plugins(plugins_dir)
    assert [d["function"]["name"] for d in plugins.definitions] == ["word_count"]
    assert plugins.definitions[0]["type"] == "function"
    assert plugins.handlers["word_count"]({"text": "a b c"}) == "3"


def test_dispatcher_uses_plugin(tmp_path):
    plugins_dir = tmp_path / "plugins"
    _plugin(plugins_dir, "words.py", WORD_COUNT)
    plugins = load_plugins(plugins_dir)
    d = ToolDispatcher(str(tmp_path), plugin_handlers=plugins.handlers)
    result = d.execute(
        {"id": "c", "function": {"name": "word_count", "arguments": '{"text": "x y"}'}}
    )
    assert result["content"] == "2"


def test_missing_dir_is_empty(tmp_path):
    plugins = load_plugins(tmp_path / "nope")
    assert plugins.definitions == [] and plugins.handlers == {}
    assert load_plugins(None).definitions == []


def test_underscore_files_skipped(tmp_path):
    plugins_dir = tmp_path / "plugins"
    _plugin(plugins_dir, "_helpers.py", WORD_COUNT)
    assert load_plugins(plugins_dir).handlers == {}


def test_broken_plugin_skipped(tmp_path):
    plugins_dir = tmp_path / "plugins"
    _plugin(plugins_dir, "a_broken.py", "raise RuntimeError('nope')\n")
    _plugin(plugins_dir, "b_words.py", WORD_COUNT)
    assert list(load_plugins(plugins_dir).handlers) == ["word_count"]


def test_builtin_collision_skipped(tmp_path):
    plugins_dir = tmp_path / "plugins"
    _plugin(
        plugins_dir,
        "shadow.py",
        """
        TOOLS = [
            {"name": "read_file", "description": "", "execute": lambda a: "x"},
            {"name": "ls", "description": "", "execute": lambda a: "x"},
            {"name": "ok_tool", "description": "", "execute": lambda a: "x"},
        ]
        """,
    )
    assert list(load_plugins(plugins_dir).handlers) == ["ok_tool"]


def test_malformed_entries_skipped(tmp_path):
    plugins_dir = tmp_path / "plugins"
    _plugin(
        plugins_dir,
        "bad.py",
        """
        TOOLS = [
            "not a dict",
            {"description": "no name", "execute": lambda a: ""},
            {"name": "no_execute"},
            {"name": "good", "execute": lambda a: "fine"},
        ]
        """,
    )
    plugins = load_plugins(plugins_dir)
    assert list(plugins.handlers) == ["good"]
    assert plugins.definitions[0]["function"]["parameters"] == {"type": "object", "properties": {}}
