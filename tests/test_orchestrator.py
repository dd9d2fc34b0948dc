"""End-to-end tests: intake, work, review, merge and pull request against a real git repo."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from agent_company.config import Config
from agent_company.core import projects as projects_mod
from agent_company.core import tickets as tickets_mod
from agent_company.core.branches import GitLifecycleManager
from agent_company.core.bus import AgentBus
from agent_company.core.errors import (
    DuplicateReviewError,
    GitHostError,
    InvalidStateError,
    MergeConflictError,
    ValidationError,
)
from agent_company.core.orchestrator import Orchestrator
from agent_company.core.retry import RetryPolicy
from agent_company.core.reviews import ReviewWorkflow, create_review_result
from agent_company.db.engine import init_db
from agent_company.db.models import PRResult
from agent_company.integrations.git import branch_exists, find_worktree, run_git

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


class FakeHost:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def create_pull_request(self, title, body, base, head):
        self.calls.append((title, base, head))
        if self.fail:
            raise GitHostError("GitHub is down")
        return PRResult(url="https://github.com/acme/web/pull/5", number=5)


@pytest.fixture
def workspace():
    """A temp dir holding a git repo with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        repo.mkdir()
        subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=repo, capture_output=True, check=True)
        (repo / "x.ts").write_text("export const x = 0;\n")
        subprocess.run(["git", "add", "."], cwd=repo, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=repo,
            capture_output=True,
            check=True,
            env={**os.environ, **GIT_ENV},
        )
        yield Path(tmp)


@pytest.fixture
def db(workspace):
    conn = init_db(workspace / "test.db")
    yield conn
    conn.close()


def _orchestrator(db, workspace, host=None):
    policy = RetryPolicy(initial_delay=0, max_delay=0)
    bus = AgentBus(workspace / "test.db", policy)
    git = GitLifecycleManager(
        db, bus, workspace / "repo", "web",
        agent_branch="agent/web",
        retry_policy=policy,
        author_name="Agent Bot", author_email="bot@example.com",
        sleep=lambda s: None,
    )
    return Orchestrator(db, bus, git, ReviewWorkflow(db, bus), host=host, sleep=lambda s: None)


@pytest.fixture
def orch(db, workspace):
    return _orchestrator(db, workspace, host=FakeHost())


LOGIN_PLAN = [
    {
        "title": "Login form",
        "worker_type": "developer",
        "grandchildren": [
            {"title": "Form markup", "acceptance_criteria": ["Email and password fields"]},
            {"title": "Submit handler", "acceptance_criteria": ["Posts to /login"]},
        ],
    },
    {
        "title": "Login tests",
        "worker_type": "test",
        "grandchildren": [{"title": "E2E login test"}],
    },
]


def _do_work(orch, ticket_id, filename, content, worker="dev-1"):
    """Start a grandchild, commit a file on its branch and ask for review."""
    ticket = orch.start_work(ticket_id, worker)
    (orch.git.worktree_for(ticket.git_branch) / filename).write_text(content)
    orch.git.commit_with_ticket_id(ticket.git_branch, ticket_id, f"Work on {filename}")
    tickets_mod.add_artifacts(orch.db, ticket_id, [filename])
    orch.reviews.request_review(ticket_id, "rev-1")


class TestIntake:
    def test_builds_hierarchy(self, orch):
        parent = orch.intake("Add login page", LOGIN_PLAN, priority="high")
        assert parent.id == "web-0001"
        assert parent.metadata.priority == "high"
        assert [c.worker_type for c in parent.child_tickets] == ["developer", "test"]
        assert [g.id for g in parent.child_tickets[0].grandchild_tickets] == ["web-0001-01-001", "web-0001-01-002"]
        assert parent.status == "decomposing"


class TestLoginScenario:
    def test_full_flow_to_pull_request(self, orch, workspace):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1, g2 = (g.id for g in parent.child_tickets[0].grandchild_tickets)
        g3 = parent.child_tickets[1].grandchild_tickets[0].id

        _do_work(orch, g1, "form.ts", "form\n")
        assigned = orch.bus.receive("dev-1")
        assert [m.type for m in assigned] == ["task_assign"]
        assert assigned[0].payload["branch"] == f"task/{g1}"

        assert orch.approve(g1, create_review_result("rev-1", True)) is None
        _do_work(orch, g2, "handler.ts", "handler\n")
        assert orch.approve(g2, create_review_result("rev-1", True)) is None

        current = tickets_mod.get_parent_ticket(orch.db, parent.id)
        assert current.child_tickets[0].status == "completed"
        assert current.status == "in_progress"

        _do_work(orch, g3, "login.spec.ts", "spec\n", worker="qa-1")
        pr = orch.approve(g3, create_review_result("rev-1", True))

        assert pr.number == 5
        title, base, head = orch.host.calls[0]
        assert title.startswith("[AgentCompany]")
        assert (base, head) == ("main", "agent/web")
        final = tickets_mod.get_parent_ticket(orch.db, parent.id)
        assert final.status == "pr_created"
        assert final.metadata.pr_url.endswith("/pull/5")

        repo = workspace / "repo"
        for name in ("form.ts", "handler.ts", "login.spec.ts"):
            run_git(["show", f"agent/web:{name}"], cwd=repo)
        done = orch.bus.history(workflow_id=parent.id, type="task_complete")
        assert [m.payload["ticketId"] for m in done] == [g1, g2, g3]
        assert done[2].sender == "qa-1"
        assert done[0].payload["artifacts"] == ["form.ts"]

        # worktrees are cleaned up, branches kept
        assert find_worktree(repo, f"task/{g1}") is None
        assert branch_exists(repo, f"task/{g1}")

    def test_rejection_goes_back_to_worker(self, orch):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1 = parent.child_tickets[0].grandchild_tickets[0].id
        _do_work(orch, g1, "form.ts", "form\n")
        orch.bus.acknowledge("dev-1", orch.bus.receive("dev-1")[0])

        ticket = orch.reject(g1, create_review_result("rev-1", False, "missing tests"))
        assert ticket.status == "revision_required"
        responses = orch.bus.receive("dev-1")
        assert [m.type for m in responses] == ["review_response"]
        assert responses[0].payload["feedback"] == "missing tests"

    def test_conflict_blocks_completion(self, orch):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1, g2 = (g.id for g in parent.child_tickets[0].grandchild_tickets)
        orch.start_work(g1, "dev-1")
        orch.start_work(g2, "dev-2")
        for ticket_id, value in ((g1, 1), (g2, 2)):
            branch = f"task/{ticket_id}"
            (orch.git.worktree_for(branch) / "x.ts").write_text(f"export const x = {value};\n")
            orch.git.commit_with_ticket_id(branch, ticket_id, "Change x")
            tickets_mod.add_artifacts(orch.db, ticket_id, ["x.ts"])
            orch.reviews.request_review(ticket_id, "rev-1")

        orch.approve(g1, create_review_result("rev-1", True))
        with pytest.raises(MergeConflictError) as exc:
            orch.approve(g2, create_review_result("rev-1", True))
        assert exc.value.conflict_files == ["x.ts"]

        ticket = tickets_mod.get_ticket(orch.db, g2)
        assert ticket.status == "failed"
        assert ticket.review_result is None
        inbox = orch.bus.receive("orchestrator")
        assert [m.type for m in inbox] == ["task_complete", "conflict_escalate"]
        assert inbox[0].payload["ticketId"] == g1
        assert inbox[1].payload["conflictFiles"] == ["x.ts"]

    def test_host_failure_keeps_parent_completed(self, db, workspace):
        orch = _orchestrator(db, workspace, host=FakeHost(fail=True))
        parent = orch.intake("Tiny fix", [{"title": "Fix", "worker_type": "developer",
                                          "grandchildren": [{"title": "Patch"}]}])
        gc = parent.child_tickets[0].grandchild_tickets[0].id
        _do_work(orch, gc, "fix.ts", "fix\n")
        with pytest.raises(GitHostError):
            orch.approve(gc, create_review_result("rev-1", True))
        assert tickets_mod.get_parent_ticket(db, parent.id).status == "completed"
        assert len(orch.host.calls) == 3


class TestGuards:
    def test_paused_ticket_cannot_start(self, orch):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1 = parent.child_tickets[0].grandchild_tickets[0].id
        tickets_mod.pause_ticket(orch.db, g1, "run-1")
        with pytest.raises(InvalidStateError):
            orch.start_work(g1, "dev-1")

    def test_approve_needs_open_review(self, orch):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1 = parent.child_tickets[0].grandchild_tickets[0].id
        orch.start_work(g1, "dev-1")
        with pytest.raises(InvalidStateError):
            orch.approve(g1, create_review_result("rev-1", True))

    def test_wrong_reviewer_merges_nothing(self, orch, workspace):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1 = parent.child_tickets[0].grandchild_tickets[0].id
        _do_work(orch, g1, "form.ts", "form\n")
        with pytest.raises(ValidationError):
            orch.approve(g1, create_review_result("mallory", True))

        assert tickets_mod.get_ticket(orch.db, g1).status == "review_requested"
        files = run_git(["ls-tree", "-r", "--name-only", "agent/web"], cwd=workspace / "repo").split()
        assert "form.ts" not in files
        assert orch.bus.history(type="task_complete") == []

    def test_second_approval_merges_nothing(self, orch, workspace):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1 = parent.child_tickets[0].grandchild_tickets[0].id
        _do_work(orch, g1, "form.ts", "form\n")
        orch.approve(g1, create_review_result("rev-1", True))
        head = run_git(["rev-parse", "agent/web"], cwd=workspace / "repo")

        with pytest.raises(DuplicateReviewError):
            orch.approve(g1, create_review_result("rev-1", True))
        assert run_git(["rev-parse", "agent/web"], cwd=workspace / "repo") == head

    def test_approve_rejects_negative_result(self, orch):
        with pytest.raises(ValueError):
            orch.approve("web-0001-01-001", create_review_result("rev-1", False))

    def test_fail_reports_on_bus(self, orch):
        parent = orch.intake("Add login page", LOGIN_PLAN)
        g1 = parent.child_tickets[0].grandchild_tickets[0].id
        tickets_mod.assign_ticket(orch.db, g1, "dev-1")
        orch.fail(g1, GitHostError("boom"))
        assert tickets_mod.get_ticket(orch.db, g1).failure_reason == "GitHostError: boom"
        reports = orch.bus.receive("orchestrator")
        assert [m.type for m in reports] == ["task_failed"]
        assert reports[0].sender == "dev-1"
        assert reports[0].payload["error"] == "GitHostError: boom"

    def test_open_pull_request_without_host(self, db, workspace):
        orch = _orchestrator(db, workspace)
        with pytest.raises(InvalidStateError):
            orch.open_pull_request("web-0001")


class TestFromConfig:
    def test_project_settings_win(self, db, workspace):
        projects_mod.create_project(
            db, "web", "Web", str(workspace / "repo"), base_branch="main", agent_branch="integration/web"
        )
        config = Config(db_path=workspace / "test.db", repo_path=workspace / "elsewhere", max_review_rounds=5)
        orch = Orchestrator.from_config(db, config, "web")
        assert orch.git.repo_path == workspace / "repo"
        assert orch.git.agent_branch == "integration/web"
        assert orch.reviews.max_review_rounds == 5

    def test_falls_back_to_config(self, db, workspace):
        config = Config(db_path=workspace / "test.db", repo_path=workspace / "repo")
        orch = Orchestrator.from_config(db, config, "web")
        assert orch.git.agent_branch == "agent/web"
        assert orch.git.repo_path == workspace / "repo"
