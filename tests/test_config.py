"""Tests for opencode.config: TOML loading, env overrides and CLI integration."""

import argparse
import tomllib

import pytest

from opencode.config import (
    _ARGPARSE_DEFAULTS,
    _UNSET,
    ConfigError,
    Settings,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    load_env,
    settings_from_args,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    values = {dest: _UNSET for dest in _ARGPARSE_DEFAULTS}
    values.update(overrides)
    return argparse.Namespace(**values)


@pytest.fixture(autouse=True)
def _isolated_config_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_dir_respects_xdg(self, tmp_path):
        assert global_config_dir() == tmp_path / "xdg" / "opencode"

    def test_global_only(self, tmp_path):
        _write_toml(tmp_path / "xdg" / "opencode" / "config.toml", 'model = "g"\n')
        assert load_config(tmp_path / "project") == {"model": "g"}

    def test_project_overrides_global(self, tmp_path):
        _write_toml(tmp_path / "xdg" / "opencode" / "config.toml", 'model = "g"\nretries = 5\n')
        _write_toml(tmp_path / "project" / "opencode.toml", 'model = "p"\n')
        result = load_config(tmp_path / "project")
        assert result == {"model": "p", "retries": 5}

    def test_explicit_file_only(self, tmp_path):
        _write_toml(tmp_path / "project" / "opencode.toml", 'model = "p"\n')
        _write_toml(tmp_path / "custom.toml", "max_steps = 4\n")
        assert load_config(tmp_path / "project", tmp_path / "custom.toml") == {"max_steps": 4}

    def test_explicit_file_must_exist(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path, tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path):
        _write_toml(tmp_path / "opencode.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_wrong_type(self, tmp_path):
        _write_toml(tmp_path / "opencode.toml", 'timeout = "fast"\n')
        with pytest.raises(ConfigError, match="'timeout' expected int, got str"):
            load_config(tmp_path)

    def test_bool_for_int_rejected(self, tmp_path):
        _write_toml(tmp_path / "opencode.toml", "retries = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_list_elements_must_be_strings(self, tmp_path):
        _write_toml(tmp_path / "opencode.toml", 'allowed_commands = ["git", 3]\n')
        with pytest.raises(ConfigError, match=r"allowed_commands\[1\]"):
            load_config(tmp_path)

    def test_bad_log_level(self, tmp_path):
        _write_toml(tmp_path / "opencode.toml", 'log_level = "loud"\n')
        with pytest.raises(ConfigError, match="log_level"):
            load_config(tmp_path)

    def test_unknown_key_warns_and_is_dropped(self, tmp_path, capsys):
        _write_toml(tmp_path / "opencode.toml", 'model = "m"\nflavor = "x"\n')
        assert load_config(tmp_path) == {"model": "m"}
        assert "unknown config key 'flavor'" in capsys.readouterr().err

    def test_relative_paths_resolved_against_config_dir(self, tmp_path):
        _write_toml(tmp_path / "opencode.toml", 'plugin_dir = "plugins"\naudit_log = "/abs/a.jsonl"\n')
        result = load_config(tmp_path)
        assert result["plugin_dir"] == str(tmp_path.resolve() / "plugins")
        assert result["audit_log"] == "/abs/a.jsonl"


# ===========================================================================
# Environment
# ===========================================================================


class TestLoadEnv:
    def test_reads_known_variables(self, tmp_path):
        env = {
            "OPENCODE_BASE_URL": "http://h/v1",
            "OPENCODE_MODEL": "m",
            "OPENCODE_TIMEOUT": "5000",
            "OPENCODE_RETRIES": "1",
        }
        assert load_env(tmp_path, env) == {
            "base_url": "http://h/v1",
            "model": "m",
            "timeout": 5000,
            "retries": 1,
        }

    def test_opencode_key_beats_openai_key(self, tmp_path):
        env = {"OPENAI_API_KEY": "openai", "OPENCODE_API_KEY": "opencode"}
        assert load_env(tmp_path, env)["api_key"] == "opencode"
        assert load_env(tmp_path, {"OPENAI_API_KEY": "openai"})["api_key"] == "openai"

    def test_invalid_integer_ignored(self, tmp_path, capsys):
        assert load_env(tmp_path, {"OPENCODE_TIMEOUT": "soon"}) == {}
        assert "OPENCODE_TIMEOUT" in capsys.readouterr().err

    def test_dotenv_file_loaded(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("OPENCODE_MODEL=from-dotenv\n", encoding="utf-8")
        # load_dotenv writes into os.environ; setenv first so monkeypatch removes it afterwards.
        monkeypatch.setenv("OPENCODE_MODEL", "")
        monkeypatch.delenv("OPENCODE_MODEL")
        assert load_env(tmp_path)["model"] == "from-dotenv"

    def test_real_env_beats_dotenv(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("OPENCODE_MODEL=from-dotenv\n", encoding="utf-8")
        monkeypatch.setenv("OPENCODE_MODEL", "from-env")
        assert load_env(tmp_path)["model"] == "from-env"


# ===========================================================================
# Merging into argparse
# ===========================================================================


class TestApplyConfig:
    def test_defaults_fill_unset(self):
        args = _make_args()
        apply_config_to_args(args, {})
        s = settings_from_args(args)
        assert s == Settings()
        assert s.base_url == "http://localhost:5000/v1"
        assert s.model == "qwen2.5-coder:7b"
        assert s.timeout == 60000
        assert s.retries == 3
        assert s.max_steps == 10

    def test_precedence_cli_env_config(self):
        args = _make_args(model="cli")
        apply_config_to_args(
            args,
            {"model": "cfg", "base_url": "http://cfg", "retries": 9},
            {"model": "env", "base_url": "http://env"},
        )
        assert args.model == "cli"
        assert args.base_url == "http://env"
        assert args.retries == 9

    def test_negative_retries_clamped(self):
        args = _make_args()
        apply_config_to_args(args, {"retries": -2})
        assert settings_from_args(args).retries == 0

    def test_allowlist_from_comma_string(self):
        args = _make_args(allowed_commands="git, ls,,")
        apply_config_to_args(args, {})
        assert settings_from_args(args).allowed_commands == ["git", "ls"]

    def test_verbose_levels(self):
        assert Settings(log_level="debug").verbose
        assert Settings(log_level="verbose").verbose
        assert not Settings(log_level="normal").verbose
        assert not Settings(log_level="quiet").verbose


class TestGenerateConfig:
    def test_template_is_valid_toml(self):
        assert tomllib.loads(generate_config()) == {}

    def test_uncommented_template_is_valid(self, tmp_path):
        lines = []
        for line in generate_config().splitlines():
            if line.startswith("# ") and "=" in line.split("#")[1]:
                lines.append(line[2:])
        _write_toml(tmp_path / "opencode.toml", "\n".join(lines) + "\n")
        config = load_config(tmp_path)
        assert config["model"] == "qwen2.5-coder:7b"
        assert config["allowed_commands"] == ["git", "ls", "pytest"]

    def test_project_flag(self):
        assert "<project>/opencode.toml" in generate_config(project=True)
