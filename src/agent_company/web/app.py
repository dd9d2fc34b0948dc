"""JSON API over persisted ticket state and the agent bus log."""

import json

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from agent_company.config import get_config
from agent_company.core import projects as projects_mod
from agent_company.core import tickets as tickets_mod
from agent_company.core.bus import AgentBus
from agent_company.core.errors import (
    AgentCompanyError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from agent_company.db.engine import init_db

ERROR_STATUS = {
    NotFoundError: 404,
    ValidationError: 400,
    InvalidTransitionError: 409,
    InvalidStateError: 409,
}


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _error(e: AgentCompanyError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(e, cls)), 500)
    return JSONResponse({"error": str(e), "type": type(e).__name__}, status_code=status)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        known = {p.id: _project_dict(p) for p in projects_mod.list_projects(db)}
        for project_id in tickets_mod.list_project_ids(db):
            known.setdefault(project_id, {"id": project_id})
        return JSONResponse(list(known.values()))
    finally:
        db.close()


async def api_project_tickets(request: Request):
    """The persisted ticket document: {projectId, parentTickets, lastUpdated}."""
    project_id = request.path_params["project_id"]
    include_archived = request.query_params.get("include_archived") in ("1", "true")
    db = _get_db()
    try:
        document = tickets_mod.load_document(db, project_id)
        data = document.to_dict()
        if not include_archived:
            data["parentTickets"] = [p for p in data["parentTickets"] if not p.get("archived")]
        return JSONResponse(data)
    finally:
        db.close()


async def api_project_summary(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        parents = tickets_mod.list_parent_tickets(db, project_id)
        counts: dict[str, int] = {}
        for parent in parents:
            for ticket in tickets_mod.iter_tickets(parent):
                key = f"{ticket.level}:{ticket.status}"
                counts[key] = counts.get(key, 0) + 1
        done = sum(1 for p in parents if p.status in tickets_mod.DONE_STATUSES)
        return JSONResponse({
            "project_id": project_id,
            "counts": counts,
            "parents": len(parents),
            "parents_done": done,
        })
    finally:
        db.close()


async def api_get_ticket(request: Request):
    ticket_id = request.path_params["ticket_id"]
    db = _get_db()
    try:
        ticket = tickets_mod.require_ticket(db, ticket_id)
        data = ticket.to_dict()
        data["level"] = ticket.level
        data["events"] = [_event_dict(e) for e in tickets_mod.get_ticket_events(db, ticket_id)]
        paused = tickets_mod.get_paused_run(db, ticket_id)
        data["paused"] = paused.run_id if paused else None
        return JSONResponse(data)
    except AgentCompanyError as e:
        return _error(e)
    finally:
        db.close()


async def api_update_ticket_status(request: Request):
    """Status changes go through the same transition rules as every other caller."""
    ticket_id = request.path_params["ticket_id"]
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return JSONResponse({"error": "Body must be JSON"}, status_code=400)
    status = body.get("status") if isinstance(body, dict) else None
    if not status:
        return JSONResponse({"error": "Missing 'status'"}, status_code=400)

    db = _get_db()
    try:
        ticket = tickets_mod.update_ticket_status(db, ticket_id, status, reason=body.get("reason"))
        return JSONResponse(ticket.to_dict())
    except AgentCompanyError as e:
        return _error(e)
    finally:
        db.close()


async def api_workflow_messages(request: Request):
    workflow_id = request.path_params["workflow_id"]
    config = get_config()
    bus = AgentBus(config.db_path, config.retry_policy())
    messages = bus.history(workflow_id=workflow_id)
    return JSONResponse([{**m.to_dict(), "seq": m.seq} for m in messages])


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "base_branch": p.base_branch,
        "agent_branch": p.agent_branch,
        "slack_channel": p.slack_channel,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}/tickets", api_project_tickets),
        Route("/api/projects/{project_id}/summary", api_project_summary),
        Route("/api/tickets/{ticket_id}", api_get_ticket),
        Route("/api/tickets/{ticket_id}/status", api_update_ticket_status, methods=["POST"]),
        Route("/api/workflows/{workflow_id}/messages", api_workflow_messages),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
