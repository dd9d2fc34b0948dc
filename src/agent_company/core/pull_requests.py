"""Pull request composition and creation for completed parent tickets."""

import logging
import sqlite3
import time
from collections.abc import Callable
from typing import Protocol

from agent_company.core import tickets
from agent_company.core.errors import InvalidStateError, NotFoundError
from agent_company.core.retry import RetryPolicy, with_retry
from agent_company.core.reviews import is_checklist_passed
from agent_company.db.models import ParentTicket, PRResult

logger = logging.getLogger(__name__)

PR_TITLE_PREFIX = "[AgentCompany]"
MAX_TITLE_SUMMARY = 72
PR_FOOTER = "*This PR was automatically created by AgentCompany.*"


class GitHost(Protocol):
    def create_pull_request(self, title: str, body: str, base: str, head: str) -> PRResult: ...


def generate_pr_title(parent: ParentTicket) -> str:
    lines = parent.instruction.strip().splitlines()
    summary = " ".join(lines[0].split()) if lines else parent.id
    if len(summary) > MAX_TITLE_SUMMARY:
        summary = summary[: MAX_TITLE_SUMMARY - 3].rstrip() + "..."
    return f"{PR_TITLE_PREFIX} {summary}"


def generate_pr_body(parent: ParentTicket) -> str:
    lines = ["## Overview", "", parent.instruction.strip(), "", "## Changes", ""]
    if parent.child_tickets:
        for child in parent.child_tickets:
            lines.append(f"- [{child.worker_type}] {child.title}")
            for grandchild in child.grandchild_tickets:
                lines.append(f"  - {grandchild.title}")
                for artifact in grandchild.artifacts:
                    lines.append(f"    - `{artifact}`")
    else:
        lines.append("No changes recorded.")
    lines.append("")

    approvals = [
        (g.id, g.review_result)
        for c in parent.child_tickets
        for g in c.grandchild_tickets
        if g.review_result and g.review_result.approved
    ]
    if approvals:
        lines += ["## Review Approvals", ""]
        for ticket_id, result in approvals:
            line = f"- {ticket_id}: approved by {result.reviewer_id}"
            if not is_checklist_passed(result.checklist):
                line += " [checklist incomplete]"
            if result.feedback:
                line += f" ({result.feedback})"
            lines.append(line)
        lines.append("")

    lines += ["## Related Tickets", ""]
    lines += [f"- {t.id}" for t in tickets.iter_tickets(parent)]
    lines += ["", "---", "", PR_FOOTER]
    return "\n".join(lines)


def create_pull_request(
    db: sqlite3.Connection,
    parent_id: str,
    host: GitHost,
    base_branch: str,
    head_branch: str,
    retry_policy: RetryPolicy | None = None,
    push: Callable[[str], object] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PRResult:
    """Open the pull request for a completed parent ticket.

    The ticket moves to pr_created only after the host confirms; if the host
    keeps failing the GitHostError propagates and the ticket stays completed.
    push, when given, is called with head_branch first.
    """
    parent = tickets.get_parent_ticket(db, parent_id)
    if parent is None:
        raise NotFoundError(f"Ticket not found: {parent_id}")
    if parent.status != "completed":
        raise InvalidStateError(f"{parent_id} is {parent.status}; pull requests need a completed ticket")

    title = generate_pr_title(parent)
    body = generate_pr_body(parent)
    policy = retry_policy or RetryPolicy()

    if push is not None:
        push(head_branch)
    try:
        result = with_retry(
            lambda: host.create_pull_request(title, body, base_branch, head_branch),
            policy,
            f"create pull request for {parent_id}",
            sleep=sleep,
        )
    except Exception as e:
        tickets.record_ticket_event(db, parent_id, "pull_request_failed", None, str(e))
        raise

    tickets.record_pull_request(db, parent_id, result.url, result.number)
    logger.info("Pull request #%d for %s: %s", result.number, parent_id, result.url)
    return result
