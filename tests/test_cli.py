"""Tests for the `plot` CLI."""

from __future__ import annotations

import base64
import io
import json
import logging
import re
import zipfile
from collections.abc import Iterator
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from pytest_httpx import HTTPXMock

from twister.cli import cli

API_URL = "https://api.plot.day"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Point HOME at a temp dir, clear PLOT_* variables, and restore logging afterwards."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in ("PLOT_API_URL", "PLOT_API_TOKEN", "PLOT_DEPLOY_TOKEN"):
        monkeypatch.delenv(var, raising=False)

    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    twister_level = logging.getLogger("twister").level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("twister").setLevel(twister_level)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def twist_dir(tmp_path: Path, runner: CliRunner) -> Path:
    """A freshly scaffolded twist."""
    directory = tmp_path / "standup-notes"
    result = runner.invoke(cli, ["create", "--dir", str(directory), "--name", "standup-notes"])
    assert result.exit_code == 0, result.output
    return directory


def write_cli_config(tmp_path: Path, data: dict[str, str]) -> None:
    config_dir = tmp_path / "home" / ".plot"
    config_dir.mkdir(parents=True)
    (config_dir / "config.json").write_text(json.dumps(data))


class TestCreate:
    """Tests for `plot create`."""

    def test_scaffolds_twist(self, twist_dir: Path) -> None:
        """Test that the manifest, entry module and spec are written."""
        manifest = yaml.safe_load((twist_dir / "twist.yaml").read_text())

        assert manifest["name"] == "standup-notes"
        assert manifest["entry"] == "twist:StandupNotesTwist"
        assert "class StandupNotesTwist" in (twist_dir / "twist.py").read_text()
        assert (twist_dir / "plot-twist.md").exists()

    def test_scaffolds_source(self, tmp_path: Path, runner: CliRunner) -> None:
        """Test that --source writes a Source subclass."""
        directory = tmp_path / "jira"
        result = runner.invoke(cli, ["create", "--dir", str(directory), "--name", "jira", "--source"])

        assert result.exit_code == 0
        assert "class JiraSource(Source)" in (directory / "source.py").read_text()
        assert yaml.safe_load((directory / "twist.yaml").read_text())["kind"] == "source"

    def test_refuses_existing_twist(self, twist_dir: Path, runner: CliRunner) -> None:
        """Test that an existing manifest is not overwritten."""
        result = runner.invoke(cli, ["create", "--dir", str(twist_dir), "--name", "again"])

        assert result.exit_code == 1
        assert "Could not create twist" in result.output

    def test_prompts_for_name(self, tmp_path: Path, runner: CliRunner) -> None:
        """Test that a missing name is prompted for."""
        directory = tmp_path / "prompted"
        result = runner.invoke(cli, ["create", "--dir", str(directory)], input="my-twist\n")

        assert result.exit_code == 0
        assert yaml.safe_load((directory / "twist.yaml").read_text())["name"] == "my-twist"


class TestLint:
    """Tests for `plot lint`."""

    def test_clean_twist(self, twist_dir: Path, runner: CliRunner) -> None:
        """Test that a scaffolded twist has no problems."""
        result = runner.invoke(cli, ["lint", "--dir", str(twist_dir)])

        assert result.exit_code == 0
        assert "No problems found" in result.output

    def test_reports_problems(self, twist_dir: Path, runner: CliRunner) -> None:
        """Test that syntax errors and a missing entry class are reported."""
        (twist_dir / "twist.py").write_text("class Other:\n    pass\n")
        (twist_dir / "broken.py").write_text("def oops(:\n")

        result = runner.invoke(cli, ["lint", "--dir", str(twist_dir)])

        assert result.exit_code == 1
        assert "broken.py:1" in result.output
        assert "Entry class 'StandupNotesTwist' not defined in twist.py" in result.output

    def test_missing_manifest(self, tmp_path: Path, runner: CliRunner) -> None:
        """Test that a directory without twist.yaml fails."""
        result = runner.invoke(cli, ["lint", "--dir", str(tmp_path)])

        assert result.exit_code == 1
        assert "No twist.yaml found" in result.output


class TestDeploy:
    """Tests for `plot deploy`."""

    def test_dry_run(self, twist_dir: Path, runner: CliRunner) -> None:
        """Test that --dry-run validates without a token or network."""
        result = runner.invoke(cli, ["deploy", "--dir", str(twist_dir), "--dry-run"])

        assert result.exit_code == 0
        assert "Validation passed" in result.output

    def test_description_required_outside_personal(
        self, tmp_path: Path, runner: CliRunner
    ) -> None:
        """Test that private deploys need a description."""
        directory = tmp_path / "bare"
        directory.mkdir()
        (directory / "twist.yaml").write_text("name: bare\nentry: twist:Bare\n")
        (directory / "twist.py").write_text("class Bare:\n    pass\n")

        result = runner.invoke(
            cli, ["deploy", "--dir", str(directory), "--environment", "private", "--dry-run"]
        )

        assert result.exit_code == 1
        assert "A description is required to deploy to 'private'" in result.output

    def test_missing_token(self, twist_dir: Path, runner: CliRunner) -> None:
        """Test that deploying without any token exits 1."""
        result = runner.invoke(cli, ["deploy", "--dir", str(twist_dir)])

        assert result.exit_code == 1
        assert "No deploy token found." in result.output

    def test_deploy_uploads_bundle(
        self, twist_dir: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test the upload body and that the returned id lands in the manifest."""
        httpx_mock.add_response(
            method="POST",
            url=f"{API_URL}/v1/twist/personal",
            json={"id": "tw-1", "version": 3},
        )

        result = runner.invoke(
            cli, ["deploy", "--dir", str(twist_dir), "--deploy-token", "dep-token"]
        )

        assert result.exit_code == 0, result.output
        assert "Twist id: tw-1" in result.output
        assert "Version: 3" in result.output
        assert yaml.safe_load((twist_dir / "twist.yaml").read_text())["twist_id"] == "tw-1"

        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer dep-token"
        body = json.loads(request.content)
        assert body["entry"] == "twist:StandupNotesTwist"
        assert body["environment"] == "personal"
        archive = zipfile.ZipFile(io.BytesIO(base64.b64decode(body["module"])))
        assert sorted(archive.namelist()) == ["plot-twist.md", "twist.py", "twist.yaml"]

    def test_token_from_config_file(
        self, tmp_path: Path, twist_dir: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test that the deploy token and API URL come from ~/.plot/config.json."""
        write_cli_config(tmp_path, {"apiUrl": "https://plot.internal", "deployToken": "file-token"})
        httpx_mock.add_response(
            method="POST",
            url="https://plot.internal/v1/twist/personal",
            json={"id": "tw-2"},
        )

        result = runner.invoke(cli, ["deploy", "--dir", str(twist_dir)])

        assert result.exit_code == 0, result.output
        assert httpx_mock.get_request().headers["Authorization"] == "Bearer file-token"

    def test_auth_failure(
        self, twist_dir: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test that a 401 gives a dedicated message."""
        httpx_mock.add_response(
            method="POST",
            url=f"{API_URL}/v1/twist/personal",
            status_code=401,
        )

        result = runner.invoke(
            cli, ["deploy", "--dir", str(twist_dir)], env={"PLOT_DEPLOY_TOKEN": "expired"}
        )

        assert result.exit_code == 1
        assert "Authentication failed." in result.output


class TestGenerate:
    """Tests for `plot generate`."""

    def test_writes_files_and_records_id(
        self, twist_dir: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test that generated files are written and the twist id saved."""
        httpx_mock.add_response(
            method="POST",
            url=f"{API_URL}/v1/twist/generate",
            json={"files": {"twist.py": "class StandupNotesTwist:\n    pass\n"}, "twistId": "tw-9"},
        )

        result = runner.invoke(
            cli, ["generate", "--dir", str(twist_dir), "--deploy-token", "dep-token"]
        )

        assert result.exit_code == 0, result.output
        assert (twist_dir / "twist.py").read_text() == "class StandupNotesTwist:\n    pass\n"
        assert yaml.safe_load((twist_dir / "twist.yaml").read_text())["twist_id"] == "tw-9"
        sent = json.loads(httpx_mock.get_request().content)
        assert sent["spec"] == (twist_dir / "plot-twist.md").read_text()

    def test_rejects_escaping_paths(
        self, twist_dir: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test that files outside the twist directory are refused."""
        httpx_mock.add_response(
            method="POST",
            url=f"{API_URL}/v1/twist/generate",
            json={"files": {"../evil.py": "x = 1\n"}},
        )

        result = runner.invoke(
            cli, ["generate", "--dir", str(twist_dir), "--deploy-token", "dep-token"]
        )

        assert result.exit_code == 1
        assert "Generate failed" in result.output
        assert not (twist_dir.parent / "evil.py").exists()

    def test_missing_spec(self, tmp_path: Path, runner: CliRunner) -> None:
        """Test that generate needs a spec file."""
        result = runner.invoke(cli, ["generate", "--dir", str(tmp_path), "--deploy-token", "t"])

        assert result.exit_code == 1
        assert "Spec file not found" in result.output


class TestLogs:
    """Tests for `plot logs`."""

    LOGS_URL = re.compile(re.escape(f"{API_URL}/v1/twist/tw-1/logs"))

    def test_streams_entries(self, runner: CliRunner, httpx_mock: HTTPXMock) -> None:
        """Test that log events are printed with time and severity."""
        stream = (
            ": keep-alive\n"
            "\n"
            "event: log\n"
            'data: {"timestamp": "2024-05-01T08:00:00Z", "severity": "error", "message": "Sync failed"}\n'
            "\n"
            "event: log\n"
            "data: plain text line\n"
            "\n"
        )
        httpx_mock.add_response(url=self.LOGS_URL, content=stream.encode())

        result = runner.invoke(cli, ["logs", "tw-1", "--deploy-token", "dep-token"])

        assert result.exit_code == 0, result.output
        assert "08:00:00" in result.output
        assert "ERROR" in result.output
        assert "Sync failed" in result.output
        assert "plain text line" in result.output
        assert httpx_mock.get_request().headers["Accept"] == "text/event-stream"

    def test_error_event(self, runner: CliRunner, httpx_mock: HTTPXMock) -> None:
        """Test that an error event ends the stream with exit 1."""
        httpx_mock.add_response(
            url=self.LOGS_URL,
            content=b'event: error\ndata: {"message": "Twist not found"}\n\n',
        )

        result = runner.invoke(cli, ["logs", "tw-1", "--deploy-token", "dep-token"])

        assert result.exit_code == 1
        assert "Log stream failed: Twist not found" in result.output

    def test_twist_id_from_manifest(
        self, twist_dir: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test that the manifest's twist id and the environment parameter are used."""
        manifest = twist_dir / "twist.yaml"
        data = yaml.safe_load(manifest.read_text())
        manifest.write_text(yaml.safe_dump({**data, "twist_id": "tw-1"}))
        httpx_mock.add_response(url=self.LOGS_URL, content=b"")

        result = runner.invoke(
            cli,
            ["logs", "--dir", str(twist_dir), "--environment", "review", "--deploy-token", "t"],
        )

        assert result.exit_code == 0, result.output
        assert httpx_mock.get_request().url.params["environment"] == "review"

    def test_no_twist_id(self, tmp_path: Path, runner: CliRunner) -> None:
        """Test that logs without an id or manifest fails."""
        result = runner.invoke(cli, ["logs", "--dir", str(tmp_path), "--deploy-token", "t"])

        assert result.exit_code == 1
        assert "No twist id" in result.output


class TestPriority:
    """Tests for `plot priority`."""

    def test_list_empty(
        self, runner: CliRunner, httpx_mock: HTTPXMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the message shown when there are no priorities."""
        monkeypatch.setenv("PLOT_API_TOKEN", "api-token")
        httpx_mock.add_response(url=f"{API_URL}/v1/priorities", json=[])

        result = runner.invoke(cli, ["priority", "list"])

        assert result.exit_code == 0
        assert "No priorities yet." in result.output
        assert httpx_mock.get_request().headers["Authorization"] == "Bearer api-token"

    def test_list_table(
        self, tmp_path: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test that priorities are listed and the config file's API token is used."""
        write_cli_config(tmp_path, {"apiToken": "file-api-token", "deployToken": "dep"})
        httpx_mock.add_response(
            url=f"{API_URL}/v1/priorities",
            json=[
                {"id": "p-1", "title": "Work"},
                {"id": "p-2", "title": "Launch", "parentId": "p-1"},
            ],
        )

        result = runner.invoke(cli, ["priority", "list"])

        assert result.exit_code == 0
        assert "Work" in result.output
        assert "Launch" in result.output
        assert httpx_mock.get_request().headers["Authorization"] == "Bearer file-api-token"

    def test_falls_back_to_deploy_token(
        self, runner: CliRunner, httpx_mock: HTTPXMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that PLOT_DEPLOY_TOKEN is used when no API token is set."""
        monkeypatch.setenv("PLOT_DEPLOY_TOKEN", "dep-token")
        httpx_mock.add_response(url=f"{API_URL}/v1/priorities", json=[])

        result = runner.invoke(cli, ["priority", "list"])

        assert result.exit_code == 0
        assert httpx_mock.get_request().headers["Authorization"] == "Bearer dep-token"

    def test_no_token(self, runner: CliRunner) -> None:
        """Test that priority commands need a token."""
        result = runner.invoke(cli, ["priority", "list"])

        assert result.exit_code == 1
        assert "No API token found." in result.output

    def test_create_with_prompts(
        self, runner: CliRunner, httpx_mock: HTTPXMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that name and parent are prompted and a blank parent is omitted."""
        monkeypatch.setenv("PLOT_API_TOKEN", "api-token")
        httpx_mock.add_response(
            method="POST",
            url=f"{API_URL}/v1/priority",
            json={"id": "p-3", "title": "Ship it"},
        )

        result = runner.invoke(cli, ["priority", "create"], input="Ship it\n\n")

        assert result.exit_code == 0, result.output
        assert "Created priority 'Ship it'" in result.output
        assert "ID: p-3" in result.output
        assert json.loads(httpx_mock.get_request().content) == {"title": "Ship it"}

    def test_create_with_parent(
        self, runner: CliRunner, httpx_mock: HTTPXMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a valid parent UUID is sent as parentId."""
        monkeypatch.setenv("PLOT_API_TOKEN", "api-token")
        parent = "0b5c3f0e-6b7a-4c43-9a57-2a1f8a9d9c11"
        httpx_mock.add_response(
            method="POST",
            url=f"{API_URL}/v1/priority",
            json={"id": "p-4", "title": "Child", "parentId": parent},
        )

        result = runner.invoke(cli, ["priority", "create", "--name", "Child", "--parent-id", parent])

        assert result.exit_code == 0, result.output
        assert json.loads(httpx_mock.get_request().content) == {"title": "Child", "parentId": parent}

    def test_create_rejects_bad_parent(self, runner: CliRunner) -> None:
        """Test that a non-UUID parent id is rejected before any request."""
        result = runner.invoke(cli, ["priority", "create", "--name", "Child", "--parent-id", "nope"])

        assert result.exit_code == 1
        assert "Invalid parent id 'nope'" in result.output

    def test_create_rejects_blank_name(self, runner: CliRunner) -> None:
        """Test that whitespace-only names are rejected."""
        result = runner.invoke(cli, ["priority", "create", "--name", "  ", "--parent-id", ""])

        assert result.exit_code == 1
        assert "Priority name cannot be empty" in result.output


class TestLocalCommands:
    """Tests for `plot sources` and `plot sync`."""

    def test_sources(self, runner: CliRunner) -> None:
        """Test that built-in sources are listed with their providers."""
        result = runner.invoke(cli, ["sources"])

        assert result.exit_code == 0
        for name in ("github", "github-issues", "linear", "asana", "gmail", "google-calendar", "slack"):
            assert name in result.output

    @pytest.fixture
    def config_path(self, tmp_path: Path) -> Path:
        path = tmp_path / ".twister.yaml"
        path.write_text("store:\n  path: ':memory:'\ntokens:\n  github: gh-token\n")
        return path

    def test_sync_unknown_source(self, config_path: Path, runner: CliRunner) -> None:
        """Test that an unknown source name exits 1 with a hint."""
        result = runner.invoke(cli, ["sync", "nope", "C1", "--config", str(config_path)])

        assert result.exit_code == 1
        assert "Unknown source 'nope'" in result.output

    def test_sync_github(
        self, config_path: Path, runner: CliRunner, httpx_mock: HTTPXMock
    ) -> None:
        """Test a local sync of a repository with no recent pull requests."""
        httpx_mock.add_response(
            url=re.compile(re.escape("https://api.github.com/repos/acme/api/pulls?")),
            json=[],
        )

        result = runner.invoke(cli, ["sync", "github", "acme/api", "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        assert "Upserted 0 links (0 saves)" in result.output
        assert "Ran 1 tasks" in result.output
        assert httpx_mock.get_request().headers["Authorization"] == "Bearer gh-token"
