from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from autotrade.config import Settings
from autotrade.main import cli


@pytest.fixture
def cli_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Settings:
    settings = Settings(data_dir=tmp_path / "data", journal_dir=tmp_path / "journal")
    monkeypatch.setattr("autotrade.main.get_settings", lambda: settings)
    return settings


def test_cli_bot_lifecycle(cli_settings: Settings) -> None:
    runner = CliRunner()

    result = runner.invoke(
        cli,
        ["create-bot", "--owner", "u1", "--symbol", "btcusdt", "--timeframe", "4h", "--id", "b1"],
    )
    assert result.exit_code == 0, result.output
    assert result.output.strip().endswith("b1")

    result = runner.invoke(cli, ["start", "b1"])
    assert result.exit_code == 0, result.output
    assert "started" in result.output

    result = runner.invoke(cli, ["bots"])
    assert "[ON]  b1  BTCUSDT  4h  ma_crossover" in result.output

    result = runner.invoke(cli, ["stop", "b1"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["status", "b1"])
    assert result.exit_code == 0, result.output
    assert "Active: No" in result.output
    assert "[Performance]" in result.output


def test_cli_reports_unknown_bot(cli_settings: Settings) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["start", "ghost"])
    assert result.exit_code == 1
    assert "bot_not_found" in result.output


def test_cli_once_for_missing_bot_is_inactive(cli_settings: Settings) -> None:
    result = CliRunner().invoke(cli, ["once", "ghost"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{\n"):])
    assert payload["status"] == "inactive"


def test_cli_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "autotrade version" in result.output
