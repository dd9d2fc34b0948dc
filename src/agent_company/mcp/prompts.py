"""MCP prompt templates for worker, reviewer and manager agents."""

from agent_company.core.registry import WorkerTypeRegistry
from agent_company.mcp.server import mcp


@mcp.prompt()
def decompose_instruction(project: str, instruction: str) -> str:
    """Prompt a manager agent to turn an instruction into a ticket hierarchy."""
    return (
        f"A new instruction arrived for the '{project}' project:\n\n"
        f"{instruction}\n\n"
        f"1. Use create_ticket to record it as a parent ticket.\n"
        f"2. Split it into functional slices with decompose_ticket. Give each slice a "
        f"worker_type (research, design, designer, developer, test, reviewer) or leave it "
        f"out to let classify_worker_type decide.\n"
        f"3. Split every slice into small, reviewable grandchild tickets, each with concrete "
        f"acceptance_criteria.\n"
        f"4. Summarize the resulting hierarchy."
    )


@mcp.prompt()
def work_on_ticket(ticket_id: str, worker_type: str = "developer") -> str:
    """Prompt a worker agent to carry a grandchild ticket to review."""
    persona = WorkerTypeRegistry().get_persona(worker_type)
    return (
        f"{persona}\n\n"
        f"You own ticket '{ticket_id}'.\n"
        f"1. Use get_ticket to read the title, description and acceptance criteria.\n"
        f"2. Use start_work to get your task branch, then do the work in its worktree.\n"
        f"3. Use commit_work for each coherent change.\n"
        f"4. Record deliverables with add_artifacts.\n"
        f"5. Use request_review with the reviewer you were given.\n"
        f"6. Poll receive_messages for review_response messages; revise and request review "
        f"again when changes are requested. Acknowledge every message you handle."
    )


@mcp.prompt()
def review_ticket(ticket_id: str, reviewer_id: str) -> str:
    """Prompt a reviewer agent to decide a review round."""
    return (
        f"You are reviewer '{reviewer_id}'. Review ticket '{ticket_id}'.\n\n"
        f"Use get_ticket to see the acceptance criteria and artifacts. Check:\n"
        f"1. Code quality\n"
        f"2. Test coverage\n"
        f"3. Whether every acceptance criterion is met\n\n"
        f"Then call submit_review with the checklist results. If you reject, give feedback "
        f"the worker can act on without asking follow-up questions."
    )


@mcp.prompt()
def status_report(project: str) -> str:
    """Generate a prompt for a project status report."""
    return (
        f"Please generate a status report for the '{project}' project.\n\n"
        f"Use list_tickets to get every parent ticket, then provide:\n"
        f"1. Overall progress per parent ticket\n"
        f"2. Grandchild tickets waiting for review or revision\n"
        f"3. Failed tickets and their failure reasons\n"
        f"4. Escalations that still need a human"
    )
