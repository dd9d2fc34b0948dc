"""Tests for pull request composition, creation and the gh CLI host."""

import subprocess
import tempfile
from pathlib import Path

import pytest

from agent_company.core import tickets as tickets_mod
from agent_company.core.errors import GitHostError, InvalidStateError
from agent_company.core.pull_requests import (
    PR_FOOTER,
    create_pull_request,
    generate_pr_body,
    generate_pr_title,
)
from agent_company.core.retry import RetryPolicy
from agent_company.core.reviews import create_review_result
from agent_company.db.engine import init_db
from agent_company.db.models import ParentTicket, PRResult
from agent_company.integrations.github import GitHubCLIHost


class FakeHost:
    """Git host that fails a given number of times before opening the PR."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def create_pull_request(self, title, body, base, head):
        self.calls.append((title, body, base, head))
        if len(self.calls) <= self.failures:
            raise GitHostError("502 Bad Gateway")
        return PRResult(url="https://github.com/acme/web/pull/12", number=12)


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def completed_parent(db):
    parent = tickets_mod.create_parent_ticket(db, "web", "Add a login page\nwith remember-me")
    tickets_mod.decompose_parent_ticket(db, parent.id, [
        {"title": "Login form", "worker_type": "developer"},
        {"title": "Login tests", "worker_type": "test"},
    ])
    gc = tickets_mod.decompose_child_ticket(db, f"{parent.id}-01", [{"title": "Form markup"}])[0]
    tickets_mod.update_ticket_status(db, gc.id, "in_progress")
    tickets_mod.add_artifacts(db, gc.id, ["src/Login.tsx"])
    tickets_mod.open_review_round(db, gc.id, "rev-1")
    tickets_mod.record_review_decision(db, gc.id, create_review_result("rev-1", True, "Clean"))
    tickets_mod.update_ticket_status(db, f"{parent.id}-02", "in_progress")
    tickets_mod.update_ticket_status(db, f"{parent.id}-02", "completed")
    assert tickets_mod.get_parent_ticket(db, parent.id).status == "completed"
    return parent.id


NO_WAIT = RetryPolicy(initial_delay=0, max_delay=0)


class TestComposition:
    def test_title_uses_first_line(self):
        parent = ParentTicket(id="web-0001", project_id="web", instruction="Add a login page\nwith details")
        assert generate_pr_title(parent) == "[AgentCompany] Add a login page"

    def test_title_truncated(self):
        parent = ParentTicket(id="web-0001", project_id="web", instruction="x" * 200)
        title = generate_pr_title(parent)
        assert title.endswith("...")
        assert len(title) == len("[AgentCompany] ") + 72

    def test_body_sections(self, db, completed_parent):
        body = generate_pr_body(tickets_mod.get_parent_ticket(db, completed_parent))
        assert body.startswith("## Overview\n\nAdd a login page\nwith remember-me")
        assert "- [developer] Login form" in body
        assert "    - `src/Login.tsx`" in body
        assert "## Review Approvals" in body
        assert "- web-0001-01-001: approved by rev-1 (Clean)" in body
        assert "- web-0001-02" in body
        assert body.endswith(PR_FOOTER)

    def test_body_without_children(self):
        parent = ParentTicket(id="web-0001", project_id="web", instruction="Tiny fix")
        body = generate_pr_body(parent)
        assert "No changes recorded." in body
        assert "## Review Approvals" not in body


class TestCreatePullRequest:
    def test_success(self, db, completed_parent):
        host = FakeHost()
        result = create_pull_request(db, completed_parent, host, "main", "agent/web", NO_WAIT)
        assert result.number == 12
        title, _, base, head = host.calls[0]
        assert title.startswith("[AgentCompany]")
        assert (base, head) == ("main", "agent/web")

        parent = tickets_mod.get_parent_ticket(db, completed_parent)
        assert parent.status == "pr_created"
        assert parent.metadata.pr_url == "https://github.com/acme/web/pull/12"
        assert parent.metadata.pr_number == 12

    def test_transient_failures_retried(self, db, completed_parent):
        host = FakeHost(failures=2)
        slept = []
        create_pull_request(
            db, completed_parent, host, "main", "agent/web", RetryPolicy(), sleep=slept.append
        )
        assert len(host.calls) == 3
        assert slept == [1.0, 2.0]

    def test_exhaustion_leaves_ticket_completed(self, db, completed_parent):
        host = FakeHost(failures=10)
        with pytest.raises(GitHostError):
            create_pull_request(db, completed_parent, host, "main", "agent/web", NO_WAIT)
        assert len(host.calls) == 3
        assert tickets_mod.get_parent_ticket(db, completed_parent).status == "completed"
        events = [e.event_type for e in tickets_mod.get_ticket_events(db, completed_parent)]
        assert "pull_request_failed" in events

    def test_requires_completed_parent(self, db):
        parent = tickets_mod.create_parent_ticket(db, "web", "Not done yet")
        with pytest.raises(InvalidStateError):
            create_pull_request(db, parent.id, FakeHost(), "main", "agent/web", NO_WAIT)

    def test_push_before_create(self, db, completed_parent):
        pushed = []
        create_pull_request(db, completed_parent, FakeHost(), "main", "agent/web", NO_WAIT, push=pushed.append)
        assert pushed == ["agent/web"]


class TestGitHubCLIHost:
    def _fake_run(self, stdout="", returncode=0, exc=None):
        calls = []

        def run(cmd, **kwargs):
            calls.append(cmd)
            if exc is not None:
                raise exc
            if returncode:
                raise subprocess.CalledProcessError(returncode, cmd, output=stdout, stderr="auth required")
            return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

        return run, calls

    def test_parses_url(self, monkeypatch):
        run, calls = self._fake_run("Creating pull request\nhttps://github.com/acme/web/pull/34\n")
        monkeypatch.setattr(subprocess, "run", run)
        result = GitHubCLIHost("/tmp").create_pull_request("T", "B", "main", "agent/web")
        assert result == PRResult(url="https://github.com/acme/web/pull/34", number=34)
        assert calls[0][:3] == ["gh", "pr", "create"]
        assert "--head" in calls[0] and "agent/web" in calls[0]

    def test_failure(self, monkeypatch):
        run, _ = self._fake_run(returncode=1)
        monkeypatch.setattr(subprocess, "run", run)
        with pytest.raises(GitHostError, match="auth required"):
            GitHubCLIHost("/tmp").create_pull_request("T", "B", "main", "agent/web")

    def test_missing_binary(self, monkeypatch):
        run, _ = self._fake_run(exc=FileNotFoundError("gh"))
        monkeypatch.setattr(subprocess, "run", run)
        with pytest.raises(GitHostError, match="not installed"):
            GitHubCLIHost("/tmp").create_pull_request("T", "B", "main", "agent/web")

    def test_timeout(self, monkeypatch):
        run, _ = self._fake_run(exc=subprocess.TimeoutExpired(["gh"], 60))
        monkeypatch.setattr(subprocess, "run", run)
        with pytest.raises(GitHostError, match="timed out"):
            GitHubCLIHost("/tmp").create_pull_request("T", "B", "main", "agent/web")

    def test_unparseable_output(self, monkeypatch):
        run, _ = self._fake_run("done\n")
        monkeypatch.setattr(subprocess, "run", run)
        with pytest.raises(GitHostError, match="Could not parse"):
            GitHubCLIHost("/tmp").create_pull_request("T", "B", "main", "agent/web")
