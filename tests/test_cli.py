"""Tests for the Typer CLI."""

from typer.testing import CliRunner

from repoverify.cli import app

from tests.conftest import requires_git


runner = CliRunner()


@requires_git
def test_verify_passing_repository(git_repo):
    result = runner.invoke(app, ["verify", git_repo, "--fake-sandbox", "--command", "npm start"])

    assert result.exit_code == 0, result.output
    assert "PASS (completed)" in result.output
    assert "Command: npm start" in result.output


@requires_git
def test_verify_failing_command(git_repo):
    result = runner.invoke(
        app, ["verify", git_repo, "--fake-sandbox", "--command", "exit 2", "--no-logs"]
    )

    assert result.exit_code == 1
    assert "FAIL (completed)" in result.output
    assert "Reason: Setup failed with exit code 2" in result.output


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("worker", "api", "verify"):
        assert command in result.output
