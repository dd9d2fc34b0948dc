"""Orchestrator: drives a parent ticket from intake to pull request."""

import logging
import sqlite3
import time
from collections.abc import Callable

from agent_company.config import Config
from agent_company.core import tickets
from agent_company.core.branches import GitLifecycleManager
from agent_company.core.bus import (
    ORCHESTRATOR,
    AgentBus,
    create_task_assign_message,
    create_task_complete_message,
    create_task_failed_message,
)
from agent_company.core.errors import InvalidStateError, MergeConflictError
from agent_company.core.projects import resolve_project
from agent_company.core.pull_requests import GitHost, create_pull_request
from agent_company.core.reviews import ReviewWorkflow
from agent_company.db.models import GrandchildTicket, ParentTicket, PRResult, ReviewResult
from agent_company.integrations.git import GitError

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        db: sqlite3.Connection,
        bus: AgentBus,
        git: GitLifecycleManager,
        reviews: ReviewWorkflow,
        host: GitHost | None = None,
        push_before_pr: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.bus = bus
        self.git = git
        self.reviews = reviews
        self.host = host
        self.push_before_pr = push_before_pr
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        db: sqlite3.Connection,
        config: Config,
        project_id: str,
        host: GitHost | None = None,
    ) -> "Orchestrator":
        """Wire all components for one project. Registered project settings win over config."""
        project = resolve_project(db, project_id, config)
        policy = config.retry_policy()
        bus = AgentBus(config.db_path, policy)
        git = GitLifecycleManager(
            db,
            bus,
            project.repo_path,
            project_id,
            base_branch=project.base_branch,
            agent_branch=project.agent_branch,
            worktree_dir=config.worktree_dir,
            retry_policy=policy,
            timeout=config.git_timeout,
            author_name=config.git_author_name,
            author_email=config.git_author_email,
            escalation_recipient=config.escalation_recipient,
        )
        reviews = ReviewWorkflow(
            db, bus,
            max_review_rounds=config.max_review_rounds,
            escalation_recipient=config.escalation_recipient,
        )
        return cls(db, bus, git, reviews, host=host)

    def intake(self, instruction: str, children: list[dict], **metadata) -> ParentTicket:
        """Create a parent ticket and decompose it.

        Each child dict may carry a 'grandchildren' list of grandchild specs,
        which are decomposed under that child.
        """
        parent = tickets.create_parent_ticket(self.db, self.git.project_id, instruction, **metadata)
        created = tickets.decompose_parent_ticket(self.db, parent.id, children)
        for child, spec in zip(created, children):
            if spec.get("grandchildren"):
                tickets.decompose_child_ticket(self.db, child.id, spec["grandchildren"])
        logger.info("Intake %s: %d child ticket(s)", parent.id, len(created))
        return tickets.get_parent_ticket(self.db, parent.id)

    def start_work(self, grandchild_id: str, assignee: str) -> GrandchildTicket:
        """Assign a grandchild, give it a task branch and tell the worker."""
        if tickets.is_paused(self.db, grandchild_id):
            raise InvalidStateError(f"{grandchild_id} is paused")
        tickets.assign_ticket(self.db, grandchild_id, assignee)
        try:
            branch = self.git.create_task_branch(grandchild_id)
        except GitError as e:
            self.fail(grandchild_id, e)
            raise
        ticket = tickets.require_ticket(self.db, grandchild_id)
        if ticket.status in ("pending", "failed"):
            ticket = tickets.update_ticket_status(self.db, grandchild_id, "in_progress")
        self.bus.send(
            create_task_assign_message(
                grandchild_id, assignee, branch=branch, instructions=ticket.description or ticket.title
            )
        )
        return ticket

    def approve(self, grandchild_id: str, result: ReviewResult) -> PRResult | None:
        """Merge an approved grandchild's branch, then record the approval.

        The round is checked before anything is merged, and the merge happens
        before the approval is recorded so a conflicting branch never reaches
        completed; in that case the conflict has already been escalated and
        MergeConflictError is raised. Returns the pull request when this
        approval completed the parent ticket and a host is configured.
        """
        if not result.approved:
            raise ValueError("approve() needs an approving review result")
        ticket = tickets.check_review_decision(self.db, grandchild_id, result)
        if ticket.git_branch:
            try:
                merge = self.git.merge_to_agent_branch(ticket.git_branch)
            except GitError as e:
                self.fail(grandchild_id, e)
                raise
            if not merge.success:
                raise MergeConflictError(ticket.git_branch, merge.conflict_files)
        self.reviews.submit_review(grandchild_id, result)
        if ticket.git_branch:
            self.git.remove_task_worktree(grandchild_id, force=True)
        self.bus.send(
            create_task_complete_message(
                grandchild_id,
                sender=ticket.assignee or result.reviewer_id,
                recipient=self.reviews.escalation_recipient,
                artifacts=ticket.artifacts,
            )
        )

        parent = tickets.get_parent_ticket(self.db, tickets.root_ticket_id(grandchild_id))
        if parent.status == "completed" and self.host is not None:
            return self.open_pull_request(parent.id)
        return None

    def reject(self, grandchild_id: str, result: ReviewResult) -> GrandchildTicket:
        if result.approved:
            raise ValueError("reject() needs a rejecting review result")
        return self.reviews.submit_review(grandchild_id, result)

    def open_pull_request(self, parent_id: str) -> PRResult:
        """Open the agent branch -> base branch pull request for a completed parent."""
        if self.host is None:
            raise InvalidStateError("No git host configured")
        push = self.git.push_branch if self.push_before_pr else None
        return create_pull_request(
            self.db,
            parent_id,
            self.host,
            base_branch=self.git.base_branch,
            head_branch=self.git.agent_branch,
            retry_policy=self.git.retry_policy,
            push=push,
            sleep=self._sleep,
        )

    def fail(self, ticket_id: str, error: Exception) -> None:
        """Record a terminal external failure on a leaf ticket and report it on the bus."""
        reason = f"{type(error).__name__}: {error}"
        ticket = tickets.mark_failed(self.db, ticket_id, reason)
        self.bus.send(
            create_task_failed_message(
                ticket_id,
                sender=getattr(ticket, "assignee", None) or ORCHESTRATOR,
                error=reason,
                recipient=self.reviews.escalation_recipient,
            )
        )
