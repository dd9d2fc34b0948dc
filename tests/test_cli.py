"""Tests for the CLI."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from agent_company.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        repo_path = Path(tmp) / "repo"
        repo_path.mkdir()

        # Init git repo
        subprocess.run(["git", "init"], cwd=repo_path, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=repo_path, capture_output=True, check=True)
        (repo_path / "README.md").write_text("# Test")
        subprocess.run(["git", "add", "."], cwd=repo_path, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=repo_path,
            capture_output=True,
            check=True,
            env={**os.environ, "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
                 "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com"},
        )

        env = {
            "AC_DB_PATH": str(db_path),
            "AC_REPO_PATH": str(repo_path),
            "AC_GIT_AUTHOR_NAME": "Agent Bot",
            "AC_GIT_AUTHOR_EMAIL": "bot@example.com",
            "AC_RETRY_INITIAL_DELAY": "0",
            "AC_RETRY_MAX_DELAY": "0",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), str(repo_path)

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _invoke(runner, *args):
    result = runner.invoke(main, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def _seed(runner, repo_path):
    _invoke(runner, "init", "web", "--repo-path", repo_path)
    _invoke(runner, "ticket", "create", "Add login page", "--project", "web")
    _invoke(runner, "ticket", "decompose", "web-0001", "--child", "Login form::developer")
    _invoke(runner, "ticket", "split", "web-0001-01", "Form markup", "-c", "Has email field")


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "ticket orchestrator" in result.output

    def test_init_and_ticket_tree(self, cli_env):
        runner, repo_path = cli_env
        output = _invoke(runner, "init", "web", "--repo-path", repo_path)
        assert "Agent branch: agent/web" in output

        assert "web-0001" in _invoke(runner, "ticket", "create", "Add login page", "--project", "web")
        output = _invoke(runner, "ticket", "decompose", "web-0001",
                         "--child", "Login form::developer", "--child", "Login tests")
        assert "web-0001-01 [developer]" in output
        assert "web-0001-02 [test]" in output
        assert "web-0001-01-001" in _invoke(runner, "ticket", "split", "web-0001-01", "Form markup")

        output = _invoke(runner, "ticket", "list", "--project", "web")
        assert "web-0001: Add login page (decomposing)" in output
        assert "web-0001-01-001: Form markup (pending)" in output

        output = _invoke(runner, "ticket", "show", "web-0001-01")
        assert "Worker type: developer" in output
        assert "History:" in output

    def test_json_listing(self, cli_env):
        runner, repo_path = cli_env
        _seed(runner, repo_path)
        output = _invoke(runner, "ticket", "list", "--project", "web", "--json")
        assert '"childTickets"' in output

    def test_invalid_status_exits_nonzero(self, cli_env):
        runner, repo_path = cli_env
        _seed(runner, repo_path)
        result = runner.invoke(main, ["ticket", "status", "web-0001-01-001", "completed"])
        assert result.exit_code == 1
        assert "Invalid transition" in result.output

    def test_show_missing_ticket(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["ticket", "show", "web-0009"])
        assert result.exit_code == 1

    def test_work_review_merge_flow(self, cli_env):
        runner, repo_path = cli_env
        _seed(runner, repo_path)
        gc = "web-0001-01-001"

        output = _invoke(runner, "ticket", "start", gc, "--assignee", "dev-1")
        assert f"task/{gc}" in output

        worktree = Path(repo_path) / ".worktrees" / f"task-{gc}"
        (worktree / "form.ts").write_text("export const form = 1;\n")
        assert f"[{gc}]" in _invoke(runner, "branch", "commit", gc, "-m", "Add form")
        _invoke(runner, "ticket", "artifact", gc, "form.ts")

        assert "Review round 1" in _invoke(runner, "review", "request", gc, "--reviewer", "rev-1")
        assert "review_request" in _invoke(runner, "bus", "receive", "rev-1", "--ack")
        assert "No messages." in _invoke(runner, "bus", "receive", "rev-1")

        output = _invoke(runner, "review", "submit", gc, "--reviewer", "rev-1", "--approve")
        assert f"{gc}: completed" in output
        assert "approved by rev-1" in _invoke(runner, "review", "status", gc)

        assert "Status: completed" in _invoke(runner, "ticket", "show", "web-0001")
        assert len(_invoke(runner, "branch", "log", gc).split()) == 1
        shown = subprocess.run(
            ["git", "show", "agent/web:form.ts"], cwd=repo_path, capture_output=True, text=True, check=True
        )
        assert "form = 1" in shown.stdout

        preview = _invoke(runner, "pr", "preview", "web-0001")
        assert preview.startswith("[AgentCompany] Add login page")
        assert "## Review Approvals" in preview

    def test_reject(self, cli_env):
        runner, repo_path = cli_env
        _seed(runner, repo_path)
        gc = "web-0001-01-001"
        _invoke(runner, "ticket", "start", gc, "--assignee", "dev-1")
        _invoke(runner, "ticket", "artifact", gc, "notes.md")
        _invoke(runner, "review", "request", gc, "--reviewer", "rev-1")
        output = _invoke(runner, "review", "submit", gc, "--reviewer", "rev-1", "--reject", "-m", "missing tests")
        assert f"{gc}: revision_required" in output
        assert "missing tests" in _invoke(runner, "bus", "history", "web-0001", "--type", "review_response")

    def test_submit_needs_verdict(self, cli_env):
        runner, repo_path = cli_env
        _seed(runner, repo_path)
        result = runner.invoke(main, ["review", "submit", "web-0001-01-001", "--reviewer", "rev-1"])
        assert result.exit_code == 1

    def test_pause_resume_archive(self, cli_env):
        runner, repo_path = cli_env
        _seed(runner, repo_path)
        _invoke(runner, "ticket", "pause", "web-0001-01-001", "--run-id", "run-7", "--state", '{"dev-1": "step 2"}')
        assert "Paused: yes" in _invoke(runner, "ticket", "show", "web-0001-01-001")
        result = runner.invoke(main, ["ticket", "start", "web-0001-01-001", "--assignee", "dev-1"])
        assert result.exit_code == 1
        assert "step 2" in _invoke(runner, "ticket", "resume", "web-0001-01-001")

        _invoke(runner, "ticket", "archive", "web-0001")
        assert "No tickets found." in _invoke(runner, "ticket", "list", "--project", "web")
        assert "web-0001" in _invoke(runner, "ticket", "list", "--project", "web", "--archived")

    def test_bus_send_and_history(self, cli_env):
        runner, _ = cli_env
        _invoke(runner, "bus", "send", "escalate", "--sender", "rev-1", "--recipient", "orchestrator",
                "--workflow", "web-0001", "--payload", '{"ticketId": "web-0001-01-001", "reason": "stuck"}')
        assert "stuck" in _invoke(runner, "bus", "history", "web-0001")
        result = runner.invoke(main, ["bus", "send", "gossip", "--sender", "a", "--recipient", "b"])
        assert result.exit_code == 1

    def test_classify(self, cli_env):
        runner, _ = cli_env
        assert _invoke(runner, "ticket", "classify", "Write e2e tests").strip() == "test"
