"""CLI entry point for the agent company orchestrator."""

import json
import logging
import os
import sys

import click

from agent_company.config import get_config
from agent_company.core import projects as projects_mod
from agent_company.core import tickets as tickets_mod
from agent_company.core.bus import AgentBus, create_message
from agent_company.core.errors import AgentCompanyError
from agent_company.core.orchestrator import Orchestrator
from agent_company.core.pull_requests import generate_pr_body, generate_pr_title
from agent_company.core.registry import match_worker_type
from agent_company.core.reviews import create_review_result
from agent_company.db.engine import get_db
from agent_company.integrations.git import GitError
from agent_company.integrations.github import GitHubCLIHost


def _get_db():
    config = get_config()
    tickets_mod.set_snapshot_dir(config.snapshot_dir)
    return get_db(config.db_path)


def _abort(e: Exception):
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


def _orchestrator(db, ticket_id: str, with_host: bool = False) -> Orchestrator:
    config = get_config()
    orch = Orchestrator.from_config(db, config, tickets_mod.project_of(ticket_id))
    if with_host:
        orch.host = GitHubCLIHost(orch.git.repo_path, timeout=config.pr_timeout)
    return orch


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """agentcompany - AI employees ticket orchestrator"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_id")
@click.option("--name", default=None, help="Display name (defaults to the id)")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Base branch pull requests target")
@click.option("--agent-branch", default=None, help="Integration branch (default: agent/<project>)")
@click.option("--slack-channel", default=None, help="Channel for escalations")
def init_project(project_id, name, repo_path, branch, agent_branch, slack_channel):
    """Register a project and its repository."""
    config = get_config()
    repo_path = os.path.abspath(repo_path)
    agent_branch = agent_branch or config.agent_branch_for(project_id)

    with _get_db() as db:
        try:
            project = projects_mod.create_project(
                db, project_id, name or project_id, repo_path, branch, agent_branch, slack_channel
            )
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Base branch: {project.base_branch}")
        click.echo(f"  Agent branch: {project.agent_branch}")


# ── Ticket Commands ───────────────────────────────────────────────────────────


STATUS_ICONS = {
    "pending": "○",
    "decomposing": "◇",
    "in_progress": "●",
    "review_requested": "?",
    "revision_required": "!",
    "completed": "✓",
    "pr_created": "⇪",
    "failed": "✗",
}


@main.group("ticket")
def ticket_group():
    """Manage tickets."""
    pass


@ticket_group.command("create")
@click.argument("instruction")
@click.option("--project", required=True, help="Project ID")
@click.option("--priority", "-p", default="medium", type=click.Choice(["low", "medium", "high"]))
@click.option("--deadline", default=None, help="ISO date")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
def ticket_create(instruction, project, priority, deadline, tags):
    """Create a parent ticket for an instruction."""
    with _get_db() as db:
        try:
            ticket = tickets_mod.create_parent_ticket(
                db, project, instruction, priority, deadline=deadline, tags=list(tags)
            )
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"Created ticket: {ticket.id}")


@ticket_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", default=None, help="Filter parent tickets by status")
@click.option("--archived", is_flag=True, help="Include archived tickets")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ticket_list(project, status, archived, json_output):
    """List tickets as a tree."""
    with _get_db() as db:
        parents = tickets_mod.list_parent_tickets(db, project, status=status, include_archived=archived)

        if json_output:
            click.echo(json.dumps([p.to_dict() for p in parents], indent=2, ensure_ascii=False))
            return

        if not parents:
            click.echo("No tickets found.")
            return

        for parent in parents:
            click.echo(f"  {STATUS_ICONS.get(parent.status, '?')} {parent.id}: {parent.instruction} ({parent.status})")
            for child in parent.child_tickets:
                icon = STATUS_ICONS.get(child.status, "?")
                click.echo(f"    {icon} {child.id} [{child.worker_type}]: {child.title} ({child.status})")
                for gc in child.grandchild_tickets:
                    who = f" @{gc.assignee}" if gc.assignee else ""
                    click.echo(f"      {STATUS_ICONS.get(gc.status, '?')} {gc.id}: {gc.title} ({gc.status}){who}")


@ticket_group.command("show")
@click.argument("ticket_id")
def ticket_show(ticket_id):
    """Show ticket details and history."""
    with _get_db() as db:
        ticket = tickets_mod.get_ticket(db, ticket_id)
        if not ticket:
            click.echo(f"Ticket not found: {ticket_id}", err=True)
            sys.exit(1)

        click.echo(f"Ticket: {ticket.id} ({ticket.level})")
        if ticket.level == "parent":
            click.echo(f"  Instruction: {ticket.instruction}")
            click.echo(f"  Priority: {ticket.metadata.priority}")
            if ticket.metadata.pr_url:
                click.echo(f"  PR: {ticket.metadata.pr_url}")
        else:
            click.echo(f"  Title: {ticket.title}")
            if ticket.description:
                click.echo(f"  Description: {ticket.description}")
        click.echo(f"  Status: {ticket.status}")
        if ticket.level == "child":
            click.echo(f"  Worker type: {ticket.worker_type}")
        if ticket.level == "grandchild":
            if ticket.assignee:
                click.echo(f"  Assignee: {ticket.assignee}")
            if ticket.git_branch:
                click.echo(f"  Branch: {ticket.git_branch}")
            for criterion in ticket.acceptance_criteria:
                click.echo(f"  - [ ] {criterion}")
            if ticket.artifacts:
                click.echo(f"  Artifacts: {', '.join(ticket.artifacts)}")
            if ticket.review_rounds:
                click.echo(f"  Review rounds: {ticket.review_rounds}")
        if ticket.failure_reason:
            click.echo(f"  Failure: {ticket.failure_reason}")
        for sub in ticket.children:
            click.echo(f"  - {sub.id}: {sub.title} ({sub.status})")
        if tickets_mod.is_paused(db, ticket_id):
            click.echo("  Paused: yes")

        events = tickets_mod.get_ticket_events(db, ticket_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@ticket_group.command("status")
@click.argument("ticket_id")
@click.argument("status")
@click.option("--reason", default=None, help="Failure reason")
def ticket_status(ticket_id, status, reason):
    """Move a ticket to a new status. Review states are set by `review request` and `review submit`."""
    with _get_db() as db:
        try:
            ticket = tickets_mod.update_ticket_status(db, ticket_id, status, reason)
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"{ticket.id}: {ticket.status}")


@ticket_group.command("decompose")
@click.argument("parent_id")
@click.option("--child", "children", multiple=True, required=True,
              help="Child title, optionally 'title::worker_type' (repeatable)")
def ticket_decompose(parent_id, children):
    """Split a parent ticket into child tickets."""
    specs = []
    for raw in children:
        title, _, worker_type = raw.partition("::")
        specs.append({"title": title.strip(), "worker_type": worker_type.strip() or None})
    with _get_db() as db:
        try:
            created = tickets_mod.decompose_parent_ticket(db, parent_id, specs)
        except AgentCompanyError as e:
            _abort(e)
        for child in created:
            click.echo(f"  {child.id} [{child.worker_type}]: {child.title}")


@ticket_group.command("split")
@click.argument("child_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Work description")
@click.option("--criterion", "-c", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
def ticket_split(child_id, title, description, criteria):
    """Add a grandchild work item under a child ticket."""
    with _get_db() as db:
        try:
            ticket = tickets_mod.get_ticket(db, child_id)
            if ticket is not None and ticket.level == "child" and ticket.status == "pending":
                created = tickets_mod.decompose_child_ticket(
                    db, child_id,
                    [{"title": title, "description": description, "acceptance_criteria": list(criteria)}],
                )[0]
            else:
                created = tickets_mod.create_grandchild_ticket(db, child_id, title, description, list(criteria))
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"Created ticket: {created.id}")


@ticket_group.command("classify")
@click.argument("text")
def ticket_classify(text):
    """Show which worker type a piece of work would go to."""
    click.echo(match_worker_type(text))


@ticket_group.command("start")
@click.argument("ticket_id")
@click.option("--assignee", required=True, help="Worker agent id")
def ticket_start(ticket_id, assignee):
    """Assign a grandchild ticket, create its task branch and mark it in progress."""
    with _get_db() as db:
        try:
            ticket = _orchestrator(db, ticket_id).start_work(ticket_id, assignee)
        except (AgentCompanyError, GitError) as e:
            _abort(e)
        click.echo(f"Started: {ticket.id}")
        click.echo(f"  Branch: {ticket.git_branch}")


@ticket_group.command("artifact")
@click.argument("ticket_id")
@click.argument("artifacts", nargs=-1, required=True)
def ticket_artifact(ticket_id, artifacts):
    """Attach deliverables to a grandchild ticket."""
    with _get_db() as db:
        try:
            ticket = tickets_mod.add_artifacts(db, ticket_id, list(artifacts))
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"{ticket.id}: {len(ticket.artifacts)} artifact(s)")


@ticket_group.command("pause")
@click.argument("ticket_id")
@click.option("--run-id", required=True, help="Run to resume later")
@click.option("--state", default=None, help="Worker states as JSON")
def ticket_pause(ticket_id, run_id, state):
    """Save a run's state so work on the ticket can resume later."""
    try:
        worker_states = json.loads(state) if state else None
    except json.JSONDecodeError as e:
        _abort(e)
    with _get_db() as db:
        try:
            tickets_mod.pause_ticket(db, ticket_id, run_id, worker_states)
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"Paused {ticket_id} (run {run_id})")


@ticket_group.command("resume")
@click.argument("ticket_id")
def ticket_resume(ticket_id):
    """Resume a paused ticket and print its saved state."""
    with _get_db() as db:
        try:
            paused = tickets_mod.resume_ticket(db, ticket_id)
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"Resumed {ticket_id} (run {paused.run_id})")
        click.echo(json.dumps(paused.worker_states, indent=2))


@ticket_group.command("archive")
@click.argument("parent_id")
def ticket_archive(parent_id):
    """Hide a parent ticket from listings."""
    with _get_db() as db:
        try:
            tickets_mod.archive_parent_ticket(db, parent_id)
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"Archived {parent_id}")


# ── Review Commands ───────────────────────────────────────────────────────────


@main.group("review")
def review_group():
    """Request and decide reviews."""
    pass


@review_group.command("request")
@click.argument("ticket_id")
@click.option("--reviewer", required=True, help="Reviewer agent id")
def review_request(ticket_id, reviewer):
    """Open a review round for a grandchild ticket."""
    with _get_db() as db:
        try:
            message = _orchestrator(db, ticket_id).reviews.request_review(ticket_id, reviewer)
        except AgentCompanyError as e:
            _abort(e)
        click.echo(f"Review round {message.payload['round']} of {ticket_id} requested from {reviewer}")


@review_group.command("submit")
@click.argument("ticket_id")
@click.option("--reviewer", required=True, help="Reviewer agent id")
@click.option("--approve/--reject", default=None, help="Verdict")
@click.option("--feedback", "-m", default=None, help="Feedback for the worker")
def review_submit(ticket_id, reviewer, approve, feedback):
    """Decide the open review round. Approval merges the task branch."""
    if approve is None:
        click.echo("Pass --approve or --reject", err=True)
        sys.exit(1)
    with _get_db() as db:
        try:
            result = create_review_result(reviewer, approve, feedback)
            orch = _orchestrator(db, ticket_id)
            if approve:
                orch.approve(ticket_id, result)
            else:
                orch.reject(ticket_id, result)
            ticket = tickets_mod.require_ticket(db, ticket_id)
        except (AgentCompanyError, GitError) as e:
            _abort(e)
        click.echo(f"{ticket.id}: {ticket.status}")


@review_group.command("status")
@click.argument("ticket_id")
def review_status(ticket_id):
    """Show the latest review decision on a grandchild ticket."""
    with _get_db() as db:
        try:
            result = _orchestrator(db, ticket_id).reviews.get_review_status(ticket_id)
        except AgentCompanyError as e:
            _abort(e)
        if result is None:
            click.echo("No review decision yet.")
            return
        verdict = "approved" if result.approved else "changes requested"
        click.echo(f"{verdict} by {result.reviewer_id} at {result.reviewed_at}")
        if result.feedback:
            click.echo(f"  {result.feedback}")


# ── Branch Commands ───────────────────────────────────────────────────────────


@main.group("branch")
def branch_group():
    """Task branches and the agent integration branch."""
    pass


@branch_group.command("commit")
@click.argument("ticket_id")
@click.option("--message", "-m", required=True, help="Commit subject and body")
def branch_commit(ticket_id, message):
    """Commit all changes in a ticket's task worktree."""
    with _get_db() as db:
        try:
            git = _orchestrator(db, ticket_id).git
            commit = git.commit_with_ticket_id(git.task_branch_name(ticket_id), ticket_id, message)
        except (AgentCompanyError, GitError) as e:
            _abort(e)
        click.echo(f"[{ticket_id}] {commit}")


@branch_group.command("merge")
@click.argument("ticket_id")
def branch_merge(ticket_id):
    """Merge a ticket's task branch into the agent branch."""
    with _get_db() as db:
        try:
            git = _orchestrator(db, ticket_id).git
            result = git.merge_to_agent_branch(git.task_branch_name(ticket_id))
        except (AgentCompanyError, GitError) as e:
            _abort(e)
        if not result.success:
            click.echo(f"Merge conflict in: {', '.join(result.conflict_files)}", err=True)
            sys.exit(1)
        click.echo(f"Merged {result.branch} into {result.agent_branch} ({result.commit})")


@branch_group.command("log")
@click.argument("ticket_id")
def branch_log(ticket_id):
    """List commits made for a ticket."""
    with _get_db() as db:
        try:
            commits = _orchestrator(db, ticket_id).git.find_ticket_commits(ticket_id)
        except (AgentCompanyError, GitError) as e:
            _abort(e)
        if not commits:
            click.echo("No commits found.")
        for commit in commits:
            click.echo(commit)


@branch_group.command("clean")
@click.argument("ticket_id")
@click.option("--force", is_flag=True, help="Remove even with uncommitted changes")
def branch_clean(ticket_id, force):
    """Remove a ticket's task worktree."""
    with _get_db() as db:
        try:
            removed = _orchestrator(db, ticket_id).git.remove_task_worktree(ticket_id, force=force)
        except (AgentCompanyError, GitError) as e:
            _abort(e)
        click.echo("Worktree removed" if removed else "No worktree found")


# ── Bus Commands ──────────────────────────────────────────────────────────────


def _bus() -> AgentBus:
    config = get_config()
    return AgentBus(config.db_path, config.retry_policy())


def _message_line(m) -> str:
    return f"  #{m.seq} [{m.type}] {m.sender} -> {m.recipient} ({m.workflow_id}) {json.dumps(m.payload, ensure_ascii=False)}"


@main.group("bus")
def bus_group():
    """Inspect and use the agent message bus."""
    pass


@bus_group.command("send")
@click.argument("type")
@click.option("--sender", required=True)
@click.option("--recipient", required=True)
@click.option("--workflow", default=None, help="Workflow (parent ticket) id")
@click.option("--payload", default="{}", help="Payload as JSON")
def bus_send(type, sender, recipient, workflow, payload):
    """Send a message."""
    try:
        message = create_message(type, sender, recipient, json.loads(payload), workflow_id=workflow)
        stored = _bus().send(message)
    except (AgentCompanyError, json.JSONDecodeError) as e:
        _abort(e)
    click.echo(f"Sent {stored.id}")


@bus_group.command("receive")
@click.argument("recipient")
@click.option("--workflow", default=None, help="Workflow (parent ticket) id")
@click.option("--ack", is_flag=True, help="Acknowledge what was printed")
def bus_receive(recipient, workflow, ack):
    """Print unacknowledged messages for a recipient."""
    bus = _bus()
    messages = bus.receive(recipient, workflow_id=workflow)
    if not messages:
        click.echo("No messages.")
        return
    for m in messages:
        click.echo(_message_line(m))
        if ack:
            bus.acknowledge(recipient, m)


@bus_group.command("history")
@click.argument("workflow_id")
@click.option("--type", "message_type", default=None, help="Filter by message type")
def bus_history(workflow_id, message_type):
    """Print every message of a workflow."""
    messages = _bus().history(workflow_id=workflow_id, type=message_type)
    if not messages:
        click.echo("No messages.")
        return
    for m in messages:
        click.echo(_message_line(m))


# ── Pull Request Commands ─────────────────────────────────────────────────────


@main.group("pr")
def pr_group():
    """Pull requests for completed parent tickets."""
    pass


@pr_group.command("preview")
@click.argument("parent_id")
def pr_preview(parent_id):
    """Print the title and body a pull request would get."""
    with _get_db() as db:
        try:
            parent = tickets_mod.get_parent_ticket(db, parent_id)
        except AgentCompanyError as e:
            _abort(e)
        if parent is None:
            click.echo(f"Ticket not found: {parent_id}", err=True)
            sys.exit(1)
        click.echo(generate_pr_title(parent))
        click.echo()
        click.echo(generate_pr_body(parent))


@pr_group.command("create")
@click.argument("parent_id")
@click.option("--push/--no-push", default=False, help="Push the agent branch first")
def pr_create(parent_id, push):
    """Open the pull request for a completed parent ticket."""
    with _get_db() as db:
        try:
            orch = _orchestrator(db, parent_id, with_host=True)
            orch.push_before_pr = push
            pr = orch.open_pull_request(parent_id)
        except (AgentCompanyError, GitError) as e:
            _abort(e)
        click.echo(f"Created PR #{pr.number}: {pr.url}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the JSON API."""
    from agent_company.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_company.mcp.server import mcp
    from agent_company.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
