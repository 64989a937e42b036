"""Tests for the cohort CLI."""

from typer.testing import CliRunner

from cohort import __version__
from cohort.cli.main import app

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_simulate_without_journal():
    result = runner.invoke(app, [
        "simulate", "--tasks", "3", "--workers", "3", "--failure-rate", "0",
        "--window", "0.05", "--seed", "3",
    ])
    assert result.exit_code == 0, result.output
    assert "Summary" in result.output
    assert "policy_version" in result.output
