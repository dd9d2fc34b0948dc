"""Git branch lifecycle tied to grandchild tickets.

Every grandchild ticket gets one task branch, checked out in its own
worktree under the project's worktree directory. Finished task branches are
merged into the project's agent branch inside a dedicated integration
worktree, so the main checkout is never touched. Conflicts are escalated
over the agent bus, never resolved here.
"""

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from agent_company.core import tickets
from agent_company.core.bus import ORCHESTRATOR, AgentBus, create_conflict_escalate_message
from agent_company.core.errors import InvalidStateError, NotFoundError, ValidationError
from agent_company.core.retry import RetryPolicy, with_retry
from agent_company.core.tickets import DONE_STATUSES
from agent_company.db.models import BusMessage, MergeResult
from agent_company.integrations.git import (
    GitError,
    GitTimeoutError,
    branch_exists,
    commit_all,
    commit_message,
    conflicted_files,
    create_branch,
    find_worktree,
    has_remote,
    get_status,
    log_grep,
    merge_abort,
    merge_in_progress,
    merge_no_ff,
    push,
    rev_parse,
    worktree_add,
    worktree_remove,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TASK_BRANCH_PREFIX = "task/"
TICKET_TRAILER = "Ticket-Id"

_merge_locks_guard = threading.Lock()
_merge_locks: dict[tuple[str, str], threading.Lock] = {}


def _merge_lock(repo_path: Path, agent_branch: str) -> threading.Lock:
    key = (str(repo_path.resolve()), agent_branch)
    with _merge_locks_guard:
        lock = _merge_locks.get(key)
        if lock is None:
            lock = _merge_locks[key] = threading.Lock()
        return lock


def task_branch_name(ticket_id: str) -> str:
    """Deterministic task branch for a grandchild ticket."""
    if tickets.ticket_level(ticket_id) != "grandchild":
        raise ValidationError(f"Task branches belong to grandchild tickets, not {ticket_id}")
    return f"{TASK_BRANCH_PREFIX}{ticket_id}"


def ticket_for_branch(branch: str) -> str:
    """Inverse of task_branch_name."""
    if not branch.startswith(TASK_BRANCH_PREFIX):
        raise ValidationError(f"Not a task branch: {branch}")
    ticket_id = branch[len(TASK_BRANCH_PREFIX):]
    tickets.ticket_level(ticket_id)
    return ticket_id


def format_commit_message(ticket_id: str, message: str) -> str:
    subject = message.strip().splitlines()[0] if message.strip() else "update"
    body = "\n".join(message.strip().splitlines()[1:]).strip()
    parts = [f"[{ticket_id}] {subject}"]
    if body:
        parts.append(body)
    parts.append(f"{TICKET_TRAILER}: {ticket_id}")
    return "\n\n".join(parts)


class GitLifecycleManager:
    def __init__(
        self,
        db: sqlite3.Connection,
        bus: AgentBus,
        repo_path: str | Path,
        project_id: str,
        base_branch: str = "main",
        agent_branch: str | None = None,
        worktree_dir: str = ".worktrees",
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = 120.0,
        author_name: str | None = None,
        author_email: str | None = None,
        escalation_recipient: str = ORCHESTRATOR,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.bus = bus
        self.repo_path = Path(repo_path)
        self.project_id = project_id
        self.base_branch = base_branch
        self.agent_branch = agent_branch or f"agent/{project_id}"
        self.worktree_dir = worktree_dir
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.identity = (author_name, author_email) if author_name and author_email else None
        self.escalation_recipient = escalation_recipient
        self._sleep = sleep

    def _retry(self, description: str, operation: Callable[[], T]) -> T:
        return with_retry(operation, self.retry_policy, description, sleep=self._sleep)

    def _worktree_path(self, name: str) -> Path:
        return self.repo_path / self.worktree_dir / name.replace("/", "-")

    def _check_project(self, ticket_id: str):
        if tickets.project_of(ticket_id) != self.project_id:
            raise ValidationError(f"{ticket_id} does not belong to project {self.project_id}")

    def task_branch_name(self, ticket_id: str) -> str:
        return task_branch_name(ticket_id)

    def ensure_agent_branch(self) -> str:
        """Create the agent branch from the base branch if it does not exist yet."""
        if not branch_exists(self.repo_path, self.agent_branch):
            if not branch_exists(self.repo_path, self.base_branch):
                raise NotFoundError(f"Base branch not found: {self.base_branch}")
            self._retry(
                f"create {self.agent_branch}",
                lambda: create_branch(self.repo_path, self.agent_branch, self.base_branch, self.timeout),
            )
            logger.info("Created agent branch %s from %s", self.agent_branch, self.base_branch)
        return self.agent_branch

    def create_task_branch(self, grandchild_id: str) -> str:
        """Create (or return the existing) task branch and worktree for a grandchild ticket."""
        self._check_project(grandchild_id)
        branch = task_branch_name(grandchild_id)
        ticket = tickets.require_ticket(self.db, grandchild_id)

        if find_worktree(self.repo_path, branch) is None:
            exists = branch_exists(self.repo_path, branch)
            if not exists:
                self.ensure_agent_branch()
            wt_path = self._worktree_path(branch)
            self._retry(
                f"worktree for {branch}",
                lambda: worktree_add(
                    self.repo_path, wt_path, branch, self.agent_branch,
                    create_branch=not branch_exists(self.repo_path, branch),
                    timeout=self.timeout,
                ),
            )
            logger.info("Task branch %s ready at %s", branch, wt_path)

        if ticket.git_branch != branch:
            tickets.set_git_branch(self.db, grandchild_id, branch)
        return branch

    def worktree_for(self, branch: str) -> Path:
        wt = find_worktree(self.repo_path, branch)
        if wt is None:
            raise NotFoundError(f"No worktree has {branch} checked out")
        return Path(wt.path)

    def commit_with_ticket_id(self, branch: str, ticket_id: str, message: str) -> str:
        """Commit all changes in branch's worktree with the ticket id embedded. Returns the hash."""
        self._check_project(ticket_id)
        cwd = self.worktree_for(branch)
        if not get_status(cwd):
            raise InvalidStateError(f"Nothing to commit on {branch}")
        full_message = format_commit_message(ticket_id, message)
        commit = self._retry(
            f"commit on {branch}",
            lambda: commit_all(cwd, full_message, identity=self.identity, timeout=self.timeout),
        )
        tickets.record_ticket_event(self.db, ticket_id, "commit", None, commit)
        logger.info("Committed %s on %s for %s", commit[:10], branch, ticket_id)
        return commit

    def find_ticket_commits(self, ticket_id: str) -> list[str]:
        """Hashes of every commit carrying ticket_id's trailer, newest first."""
        trailer = f"{TICKET_TRAILER}: {ticket_id}"
        return [
            commit
            for commit in log_grep(self.repo_path, trailer)
            if trailer in commit_message(self.repo_path, commit).splitlines()
        ]

    def _integration_worktree(self) -> Path:
        existing = find_worktree(self.repo_path, self.agent_branch)
        if existing:
            return Path(existing.path)
        path = self._worktree_path(f"integration/{self.agent_branch}")
        self._retry(
            f"integration worktree for {self.agent_branch}",
            lambda: worktree_add(
                self.repo_path, path, self.agent_branch, create_branch=False, timeout=self.timeout
            ),
        )
        return path

    def merge_to_agent_branch(self, branch: str) -> MergeResult:
        """Merge a task branch into the agent branch.

        On conflicts the merge is aborted, the conflict is escalated and a
        failed MergeResult listing the files is returned. Timeouts and other
        git failures abort the merge and propagate without touching the
        ticket.
        """
        if not branch_exists(self.repo_path, branch):
            raise NotFoundError(f"Branch not found: {branch}")

        with _merge_lock(self.repo_path, self.agent_branch):
            self.ensure_agent_branch()
            cwd = self._integration_worktree()

            def attempt() -> str:
                if merge_in_progress(cwd):
                    merge_abort(cwd)
                return merge_no_ff(
                    cwd, branch, f"Merge {branch} into {self.agent_branch}",
                    identity=self.identity, timeout=self.timeout,
                )

            try:
                self._retry(f"merge {branch}", attempt)
            except GitTimeoutError:
                if merge_in_progress(cwd):
                    merge_abort(cwd)
                raise
            except GitError:
                files = conflicted_files(cwd) if merge_in_progress(cwd) else []
                if merge_in_progress(cwd):
                    merge_abort(cwd)
                if not files:
                    raise
                logger.warning("Merge of %s into %s conflicts in %s", branch, self.agent_branch, files)
                self.escalate_conflict(branch, files)
                return MergeResult(
                    success=False, branch=branch, agent_branch=self.agent_branch, conflict_files=files
                )

            commit = rev_parse(cwd)

        if branch.startswith(TASK_BRANCH_PREFIX):
            tickets.record_ticket_event(self.db, ticket_for_branch(branch), "merged", self.agent_branch, commit)
        logger.info("Merged %s into %s at %s", branch, self.agent_branch, commit[:10])
        return MergeResult(success=True, branch=branch, agent_branch=self.agent_branch, commit=commit)

    def escalate_conflict(self, branch: str, conflict_files: list[str]) -> BusMessage:
        """Report a blocked merge and fail the owning ticket. Never resolves anything."""
        ticket_id = ticket_for_branch(branch)
        message = self.bus.send(
            create_conflict_escalate_message(
                ticket_id,
                branch,
                conflict_files,
                self.agent_branch,
                recipient=self.escalation_recipient,
            )
        )
        reason = f"Merge conflict into {self.agent_branch}: {', '.join(conflict_files)}"
        ticket = tickets.get_ticket(self.db, ticket_id)
        if ticket is None:
            logger.warning("Escalated conflict for unknown ticket %s", ticket_id)
        elif ticket.status in DONE_STATUSES:
            tickets.record_ticket_event(self.db, ticket_id, "conflict", None, reason)
        else:
            tickets.mark_failed(self.db, ticket_id, reason)
        logger.warning("Escalated conflict on %s to %s", branch, self.escalation_recipient)
        return message

    def push_branch(self, branch: str, remote: str = "origin") -> str:
        if not has_remote(self.repo_path, remote):
            raise GitError(f"No remote named {remote!r} in {self.repo_path}")
        return self._retry(
            f"push {branch}",
            lambda: push(self.repo_path, branch, remote=remote, timeout=self.timeout),
        )

    def remove_task_worktree(self, grandchild_id: str, force: bool = False) -> bool:
        """Remove a task branch's worktree. The branch itself is kept."""
        branch = task_branch_name(grandchild_id)
        wt = find_worktree(self.repo_path, branch)
        if wt is None:
            return False
        worktree_remove(self.repo_path, wt.path, force=force)
        tickets.record_ticket_event(self.db, grandchild_id, "worktree_removed", wt.path, None)
        return True
