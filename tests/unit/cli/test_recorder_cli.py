"""Tests for the retrieval-recorder CLI."""

import json
from pathlib import Path
from uuid import uuid4

import pytest
import yaml
from typer.testing import CliRunner

from retrieval_recorder import __version__
from retrieval_recorder.cli import app
from retrieval_recorder.contracts import EventCode, Phase
from retrieval_recorder.storage import EventRepository, RecorderDB
from tests.fixtures import make_event

runner = CliRunner()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'events.db'}"
    rid = uuid4()
    with RecorderDB(url) as db:
        EventRepository(db).insert_events(
            [
                make_event(rid, Phase.INDEXER, EventCode.STARTED, at_ms=0),
                make_event(rid, Phase.RETRIEVAL, EventCode.FIRST_BYTE, at_ms=1000, sp="Bitswap"),
                make_event(
                    rid, Phase.RETRIEVAL, EventCode.SUCCESS, at_ms=2000, sp="Bitswap", details={"receivedSize": 500}
                ),
            ]
        )
    return url


@pytest.fixture(autouse=True)
def no_database_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RETRIEVAL_RECORDER_DB_DSN", raising=False)


class TestGlobalOptions:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"retrieval-recorder version {__version__}" in result.output

    def test_missing_env_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--env-file", str(tmp_path / "absent.env"), "show-config"])

        assert result.exit_code == 1


class TestShowConfig:
    def test_defaults(self) -> None:
        result = runner.invoke(app, ["--no-dotenv", "show-config"])

        assert result.exit_code == 0
        dumped = yaml.safe_load(result.stdout)
        assert dumped["server"]["port"] == 8080
        assert dumped["database"]["url"] is None

    def test_file_values(self, tmp_path: Path) -> None:
        config_file = tmp_path / "recorder.yaml"
        config_file.write_text("server:\n  port: 9100\n")

        result = runner.invoke(app, ["--no-dotenv", "show-config", "--config", str(config_file)])

        assert result.exit_code == 0
        assert yaml.safe_load(result.stdout)["server"]["port"] == 9100

    def test_invalid_config_lists_errors(self, tmp_path: Path) -> None:
        config_file = tmp_path / "recorder.yaml"
        config_file.write_text("server:\n  port: -1\n")

        result = runner.invoke(app, ["--no-dotenv", "show-config", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "server.port" in result.output

    def test_missing_config_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--no-dotenv", "show-config", "--config", str(tmp_path / "absent.yaml")])

        assert result.exit_code == 1
        assert "not found" in result.output


class TestStats:
    def test_requires_database(self) -> None:
        result = runner.invoke(app, ["--no-dotenv", "stats"])

        assert result.exit_code == 1
        assert "no database configured" in result.output

    def test_json_summary(self, database_url: str) -> None:
        result = runner.invoke(app, ["--no-dotenv", "stats", "--database", database_url, "--json"])

        assert result.exit_code == 0
        summary = json.loads(result.stdout)
        assert summary["totalAttempts"] == 1
        assert summary["bitswapSuccesses"] == 1
        assert summary["avgBandwidth"] == pytest.approx(500.0)

    def test_text_summary(self, database_url: str) -> None:
        result = runner.invoke(app, ["--no-dotenv", "stats", "--database", database_url])

        assert result.exit_code == 0
        assert "Total Attempts" in result.stdout
        assert "Bitswap Successes" in result.stdout

    def test_database_from_environment(self, database_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RETRIEVAL_RECORDER_DB_DSN", database_url)

        result = runner.invoke(app, ["--no-dotenv", "stats", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["totalAttempts"] == 1

    def test_wipe(self, database_url: str) -> None:
        result = runner.invoke(app, ["--no-dotenv", "stats", "--database", database_url, "--wipe"])

        assert result.exit_code == 0
        with RecorderDB(database_url) as db:
            assert EventRepository(db).fetch_events() == []
