"""MCP server exposing ticket, review, bus and branch tools to worker and reviewer agents."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_company.config import Config, get_config
from agent_company.core import tickets as tickets_mod
from agent_company.core.bus import AgentBus, BusMonitor
from agent_company.core.errors import AgentCompanyError
from agent_company.core.orchestrator import Orchestrator
from agent_company.core.registry import match_worker_type
from agent_company.core.reviews import create_review_result
from agent_company.db.engine import init_db
from agent_company.integrations import slack as slack_mod
from agent_company.integrations.git import GitError
from agent_company.integrations.github import GitHubCLIHost


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    bus: AgentBus
    bus_monitor: BusMonitor | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection and bus on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    tickets_mod.set_snapshot_dir(config.snapshot_dir)
    bus = AgentBus(config.db_path, config.retry_policy())

    monitor = None
    if config.slack_bot_token and config.slack_channel:
        bus.subscribe(
            config.escalation_recipient,
            slack_mod.SlackEscalationNotifier(config.slack_bot_token, config.slack_channel),
        )
        monitor = BusMonitor(bus)
        monitor.start()

    try:
        yield AppContext(db=db, config=config, bus=bus, bus_monitor=monitor)
    finally:
        if monitor:
            monitor.stop()
        db.close()


mcp = FastMCP("agent-company", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _orchestrator(ctx: Context, ticket_id: str, with_host: bool = False) -> Orchestrator:
    app = _ctx(ctx)
    project_id = tickets_mod.project_of(ticket_id)
    orch = Orchestrator.from_config(app.db, app.config, project_id)
    if with_host:
        orch.host = GitHubCLIHost(orch.git.repo_path, timeout=app.config.pr_timeout)
    return orch


def _error(e: Exception) -> dict:
    return {"error": str(e), "type": type(e).__name__}


# ── Ticket Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def create_ticket(
    ctx: Context,
    project: str,
    instruction: str,
    priority: str = "medium",
    tags: list[str] | None = None,
) -> dict:
    """Create a parent ticket for an instruction. Priority: low, medium or high."""
    app = _ctx(ctx)
    try:
        ticket = tickets_mod.create_parent_ticket(app.db, project, instruction, priority, tags=tags)
    except AgentCompanyError as e:
        return _error(e)
    return ticket.to_dict()


@mcp.tool()
def list_tickets(ctx: Context, project: str, status: str | None = None) -> list[dict]:
    """List parent tickets of a project with their full hierarchy."""
    app = _ctx(ctx)
    return [t.to_dict() for t in tickets_mod.list_parent_tickets(app.db, project, status=status)]


@mcp.tool()
def get_ticket(ctx: Context, ticket_id: str) -> dict:
    """Get a ticket at any level, with its audit events."""
    app = _ctx(ctx)
    try:
        ticket = tickets_mod.require_ticket(app.db, ticket_id)
    except AgentCompanyError as e:
        return _error(e)
    result = ticket.to_dict()
    result["level"] = ticket.level
    result["events"] = [
        {"event_type": e.event_type, "old_value": e.old_value, "new_value": e.new_value}
        for e in tickets_mod.get_ticket_events(app.db, ticket_id)
    ]
    return result


@mcp.tool()
def decompose_ticket(ctx: Context, ticket_id: str, items: list[dict]) -> dict:
    """Split a ticket one level down.

    For a parent ticket each item is {title, description, worker_type?}; for a
    child ticket each item is {title, description, acceptance_criteria}.
    """
    app = _ctx(ctx)
    try:
        level = tickets_mod.ticket_level(ticket_id)
        if level == "parent":
            created = tickets_mod.decompose_parent_ticket(app.db, ticket_id, items)
        elif level == "child":
            created = tickets_mod.decompose_child_ticket(app.db, ticket_id, items)
        else:
            return {"error": "Grandchild tickets are atomic and cannot be decomposed"}
    except AgentCompanyError as e:
        return _error(e)
    return {"created": [t.to_dict() for t in created]}


@mcp.tool()
def update_ticket_status(ctx: Context, ticket_id: str, status: str, reason: str | None = None) -> dict:
    """Move a leaf ticket to a new status. Parents and decomposed children follow their sub-tickets.

    Review states and grandchild completion go through request_review and submit_review.
    """
    app = _ctx(ctx)
    try:
        ticket = tickets_mod.update_ticket_status(app.db, ticket_id, status, reason)
    except AgentCompanyError as e:
        return _error(e)
    return ticket.to_dict()


@mcp.tool()
def add_artifacts(ctx: Context, ticket_id: str, artifacts: list[str]) -> dict:
    """Attach deliverables (file paths or diff references) to a grandchild ticket."""
    app = _ctx(ctx)
    try:
        ticket = tickets_mod.add_artifacts(app.db, ticket_id, artifacts)
    except AgentCompanyError as e:
        return _error(e)
    return ticket.to_dict()


@mcp.tool()
def classify_worker_type(ctx: Context, text: str) -> dict:
    """Suggest the worker type for a piece of work."""
    return {"worker_type": match_worker_type(text)}


# ── Work and Review Tools ─────────────────────────────────────────────────────


@mcp.tool()
def start_work(ctx: Context, ticket_id: str, assignee: str) -> dict:
    """Assign a grandchild ticket, create its task branch and mark it in progress."""
    try:
        ticket = _orchestrator(ctx, ticket_id).start_work(ticket_id, assignee)
    except (AgentCompanyError, GitError) as e:
        return _error(e)
    return ticket.to_dict()


@mcp.tool()
def commit_work(ctx: Context, ticket_id: str, message: str) -> dict:
    """Commit everything in the ticket's task worktree with the ticket id embedded."""
    try:
        orch = _orchestrator(ctx, ticket_id)
        branch = orch.git.task_branch_name(ticket_id)
        commit = orch.git.commit_with_ticket_id(branch, ticket_id, message)
    except (AgentCompanyError, GitError) as e:
        return _error(e)
    return {"ticket_id": ticket_id, "branch": branch, "commit": commit}


@mcp.tool()
def request_review(ctx: Context, ticket_id: str, reviewer_id: str) -> dict:
    """Ask a reviewer to review a grandchild ticket's artifacts."""
    try:
        message = _orchestrator(ctx, ticket_id).reviews.request_review(ticket_id, reviewer_id)
    except AgentCompanyError as e:
        return _error(e)
    return message.to_dict()


@mcp.tool()
def submit_review(
    ctx: Context,
    ticket_id: str,
    reviewer_id: str,
    approved: bool,
    feedback: str | None = None,
    code_quality: bool | None = None,
    test_coverage: bool | None = None,
    acceptance_criteria: bool | None = None,
) -> dict:
    """Decide the open review round. Approval merges the task branch into the agent branch."""
    checklist = None
    if None not in (code_quality, test_coverage, acceptance_criteria):
        checklist = {
            "code_quality": code_quality,
            "test_coverage": test_coverage,
            "acceptance_criteria": acceptance_criteria,
        }
    try:
        result = create_review_result(reviewer_id, approved, feedback, checklist)
        orch = _orchestrator(ctx, ticket_id)
        if approved:
            orch.approve(ticket_id, result)
        else:
            orch.reject(ticket_id, result)
        ticket = tickets_mod.require_ticket(orch.db, ticket_id)
    except (AgentCompanyError, GitError) as e:
        return _error(e)
    return ticket.to_dict()


@mcp.tool()
def create_pull_request(ctx: Context, ticket_id: str) -> dict:
    """Open the pull request for a completed parent ticket."""
    try:
        pr = _orchestrator(ctx, ticket_id, with_host=True).open_pull_request(ticket_id)
    except (AgentCompanyError, GitError) as e:
        return _error(e)
    return {"url": pr.url, "number": pr.number}


# ── Bus Tools ─────────────────────────────────────────────────────────────────


@mcp.tool()
def receive_messages(ctx: Context, recipient: str, workflow_id: str | None = None) -> list[dict]:
    """Fetch unacknowledged bus messages for a recipient. Acknowledge each one once handled."""
    app = _ctx(ctx)
    return [m.to_dict() for m in app.bus.receive(recipient, workflow_id=workflow_id)]


@mcp.tool()
def acknowledge_message(ctx: Context, recipient: str, message_id: str) -> dict:
    """Mark a bus message as handled so it is not delivered again."""
    app = _ctx(ctx)
    try:
        app.bus.acknowledge(recipient, message_id)
    except AgentCompanyError as e:
        return _error(e)
    return {"acknowledged": message_id}


# ── Slack Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def notify_ticket(ctx: Context, ticket_id: str, channel: str | None = None) -> dict:
    """Post a ticket's current status to Slack."""
    app = _ctx(ctx)
    channel = channel or app.config.slack_channel
    if not channel:
        return {"error": "No Slack channel given and AC_SLACK_CHANNEL not set"}
    try:
        ticket = tickets_mod.require_ticket(app.db, ticket_id)
        title = getattr(ticket, "title", None) or getattr(ticket, "instruction", ticket_id)
        blocks = slack_mod.format_ticket_notification(
            ticket_id, title, ticket.status, tickets_mod.project_of(ticket_id)
        )
        sent = slack_mod.send_message(
            app.config.slack_bot_token, channel, f"{ticket_id}: {ticket.status}", blocks=blocks
        )
    except (AgentCompanyError, slack_mod.SlackError) as e:
        return _error(e)
    return {"channel": sent.channel, "ts": sent.ts}
