"""Tests for configuration loading, the CLI config and twist manifests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from twister.config import (
    expand_env_vars,
    find_config_file,
    load_cli_config,
    load_config,
    load_manifest,
    save_cli_config,
    save_manifest,
)
from twister.exceptions import ConfigError
from twister.models import CliConfig, GmailConfig, TwistManifest


class TestExpandEnvVars:
    """Tests for environment variable expansion."""

    def test_expands_both_forms(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test ${VAR} and $VAR substitution."""
        monkeypatch.setenv("SLACK_SECRET", "abc")

        assert expand_env_vars("${SLACK_SECRET}") == "abc"
        assert expand_env_vars("key-$SLACK_SECRET") == "key-abc"

    def test_missing_var_left_unchanged(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that unknown variables keep their placeholder."""
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)

        assert expand_env_vars("${NOT_SET_ANYWHERE}") == "${NOT_SET_ANYWHERE}"

    def test_nested_structures(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test expansion inside dicts and lists, leaving other types alone."""
        monkeypatch.setenv("TOKEN", "t")

        assert expand_env_vars({"a": ["$TOKEN", 1], "b": {"c": "${TOKEN}"}, "d": True}) == {
            "a": ["t", 1],
            "b": {"c": "t"},
            "d": True,
        }


class TestLoadConfig:
    """Tests for .twister.yaml loading."""

    def test_defaults_without_file(self, tmp_path: Path) -> None:
        """Test that a missing file yields the default config."""
        config = load_config(tmp_path / "missing.yaml")

        assert config.tasks.max_attempts == 5
        assert config.sources.github.page_size == 50
        assert isinstance(config.sources.gmail, GmailConfig)
        assert config.sources.gmail.page_size == 20

    def test_loads_yaml_with_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a full file with env expansion and source sections."""
        monkeypatch.setenv("GH_TOKEN", "gh-123")
        path = tmp_path / ".twister.yaml"
        path.write_text(
            "store:\n"
            "  path: ':memory:'\n"
            "tasks:\n"
            "  max_attempts: null\n"
            "  backoff_seconds: 5\n"
            "tokens:\n"
            "  github: ${GH_TOKEN}\n"
            "sources:\n"
            "  github:\n"
            "    page_size: 25\n"
            "    recent_days: 7\n"
        )

        config = load_config(path)

        assert config.store.path == ":memory:"
        assert config.tasks.max_attempts is None
        assert config.tokens == {"github": "gh-123"}
        assert config.sources.github.page_size == 25
        assert config.sources.for_source("github").recent_days == 7
        assert config.sources.for_source("google-calendar") is config.sources.google_calendar
        assert config.sources.for_source("jira") is None

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that broken YAML raises ConfigError."""
        path = tmp_path / ".twister.yaml"
        path.write_text("tasks: [unclosed\n")

        with pytest.raises(ConfigError):
            load_config(path)

    def test_page_size_out_of_range(self, tmp_path: Path) -> None:
        """Test that page sizes outside 20..50 fail validation."""
        path = tmp_path / ".twister.yaml"
        path.write_text("sources:\n  slack:\n    page_size: 500\n")

        with pytest.raises(ConfigError) as exc_info:
            load_config(path)
        assert "errors" in exc_info.value.details

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        """Test that a top-level list is rejected."""
        path = tmp_path / ".twister.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError):
            load_config(path)

    def test_find_config_in_parent(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that the search walks up from the working directory."""
        (tmp_path / ".twister.yaml").write_text("tokens: {}\n")
        child = tmp_path / "a" / "b"
        child.mkdir(parents=True)
        monkeypatch.chdir(child)

        assert find_config_file() == tmp_path / ".twister.yaml"


class TestCliConfig:
    """Tests for ~/.plot/config.json."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        """Test that no file means no tokens."""
        config = load_cli_config(tmp_path / "config.json")

        assert config.api_url is None
        assert config.deploy_token is None

    def test_round_trip_uses_camel_case(self, tmp_path: Path) -> None:
        """Test that saved files use the camelCase keys."""
        path = tmp_path / ".plot" / "config.json"
        save_cli_config(CliConfig(api_token="api", deploy_token="deploy"), path)

        assert json.loads(path.read_text()) == {"apiToken": "api", "deployToken": "deploy"}
        assert load_cli_config(path).deploy_token == "deploy"

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Test that a corrupt file raises ConfigError."""
        path = tmp_path / "config.json"
        path.write_text("{not json")

        with pytest.raises(ConfigError):
            load_cli_config(path)


class TestManifest:
    """Tests for twist.yaml."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """Test saving and loading a manifest."""
        manifest = TwistManifest(name="standup", entry="twist:StandupTwist", twist_id="t-1")
        save_manifest(tmp_path, manifest)

        loaded = load_manifest(tmp_path)
        assert loaded == manifest
        assert loaded.entry_module == "twist"
        assert loaded.entry_class == "StandupTwist"
        assert "display_name" not in (tmp_path / "twist.yaml").read_text()

    def test_missing_manifest(self, tmp_path: Path) -> None:
        """Test that a directory without twist.yaml raises ConfigError."""
        with pytest.raises(ConfigError):
            load_manifest(tmp_path)

    def test_bad_entry(self, tmp_path: Path) -> None:
        """Test that an entry without a class is rejected."""
        (tmp_path / "twist.yaml").write_text("name: x\nentry: twist\n")

        with pytest.raises(ConfigError):
            load_manifest(tmp_path)
