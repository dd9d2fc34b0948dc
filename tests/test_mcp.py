"""Tests for the MCP tool functions, called with a stand-in request context."""

import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from agent_company.config import Config
from agent_company.core.bus import AgentBus
from agent_company.core.retry import RetryPolicy
from agent_company.db.engine import init_db
from agent_company.mcp import server


@pytest.fixture
def ctx():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        config = Config(db_path=db_path, repo_path=Path(tmp))
        db = init_db(db_path)
        app = server.AppContext(
            db=db,
            config=config,
            bus=AgentBus(db_path, RetryPolicy(initial_delay=0, max_delay=0)),
        )
        yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))
        db.close()


def _seed(ctx):
    parent = server.create_ticket(ctx, "web", "Add login page", priority="high")
    server.decompose_ticket(ctx, parent["id"], [{"title": "Login form", "description": ""}])
    created = server.decompose_ticket(ctx, "web-0001-01", [
        {"title": "Form markup", "acceptance_criteria": ["Has email field"]},
    ])
    return created["created"][0]["id"]


class TestTicketTools:
    def test_create_and_get(self, ctx):
        gc = _seed(ctx)
        parent = server.get_ticket(ctx, "web-0001")
        assert parent["level"] == "parent"
        assert parent["metadata"]["priority"] == "high"
        assert parent["childTickets"][0]["workerType"] == "developer"
        assert server.get_ticket(ctx, gc)["acceptanceCriteria"] == ["Has email field"]

    def test_errors_come_back_as_dicts(self, ctx):
        assert server.get_ticket(ctx, "web-0009")["type"] == "NotFoundError"
        assert server.create_ticket(ctx, "web", "Bad", priority="urgent")["type"] == "ValidationError"

    def test_grandchildren_cannot_be_decomposed(self, ctx):
        gc = _seed(ctx)
        assert "error" in server.decompose_ticket(ctx, gc, [{"title": "More"}])

    def test_list_and_status(self, ctx):
        gc = _seed(ctx)
        server.update_ticket_status(ctx, gc, "in_progress")
        listed = server.list_tickets(ctx, "web")
        assert listed[0]["status"] == "in_progress"
        assert server.list_tickets(ctx, "web", status="completed") == []
        refused = server.update_ticket_status(ctx, "web-0001", "completed")
        assert refused["type"] == "InvalidTransitionError"
        assert server.update_ticket_status(ctx, gc, "review_requested")["type"] == "InvalidTransitionError"

    def test_classify(self, ctx):
        assert server.classify_worker_type(ctx, "Write e2e tests") == {"worker_type": "test"}


class TestReviewTools:
    def test_reject_then_acknowledge(self, ctx):
        gc = _seed(ctx)
        server.update_ticket_status(ctx, gc, "in_progress")
        server.add_artifacts(ctx, gc, ["form.ts"])

        request = server.request_review(ctx, gc, "rev-1")
        assert request["type"] == "review_request"
        inbox = server.receive_messages(ctx, "rev-1")
        assert [m["id"] for m in inbox] == [request["id"]]
        assert server.acknowledge_message(ctx, "rev-1", request["id"]) == {"acknowledged": request["id"]}
        assert server.receive_messages(ctx, "rev-1") == []

        ticket = server.submit_review(ctx, gc, "rev-1", approved=False, feedback="needs tests")
        assert ticket["status"] == "revision_required"
        assert ticket["reviewResult"]["approved"] is False

    def test_submit_without_open_round(self, ctx):
        gc = _seed(ctx)
        assert "error" in server.submit_review(ctx, gc, "rev-1", approved=False)


class TestNotifyTool:
    def test_needs_channel(self, ctx):
        gc = _seed(ctx)
        assert "error" in server.notify_ticket(ctx, gc)

    def test_needs_token(self, ctx):
        gc = _seed(ctx)
        assert server.notify_ticket(ctx, gc, channel="#dev")["type"] == "SlackError"
