"""Review workflow: the request -> decision protocol gating grandchild completion."""

import logging
import sqlite3
from datetime import datetime, timezone

from agent_company.core import tickets
from agent_company.core.bus import (
    ORCHESTRATOR,
    AgentBus,
    create_escalate_message,
    create_review_request_message,
    create_review_response_message,
)
from agent_company.core.errors import ValidationError
from agent_company.db.models import BusMessage, GrandchildTicket, ReviewChecklist, ReviewResult

logger = logging.getLogger(__name__)


def is_checklist_passed(checklist: ReviewChecklist) -> bool:
    return checklist.code_quality and checklist.test_coverage and checklist.acceptance_criteria


def create_review_result(
    reviewer_id: str,
    approved: bool,
    feedback: str | None = None,
    checklist: ReviewChecklist | dict | None = None,
) -> ReviewResult:
    """Build a ReviewResult. Without a checklist every item mirrors the verdict."""
    if not reviewer_id:
        raise ValidationError("Reviewer id must not be empty")
    if checklist is None:
        checklist = ReviewChecklist(approved, approved, approved)
    elif isinstance(checklist, dict):
        checklist = ReviewChecklist(
            code_quality=bool(checklist.get("code_quality", checklist.get("codeQuality", False))),
            test_coverage=bool(checklist.get("test_coverage", checklist.get("testCoverage", False))),
            acceptance_criteria=bool(
                checklist.get("acceptance_criteria", checklist.get("acceptanceCriteria", False))
            ),
        )
    if not approved and not feedback:
        feedback = "Changes requested"
    return ReviewResult(
        reviewer_id=reviewer_id,
        approved=approved,
        checklist=checklist,
        reviewed_at=datetime.now(timezone.utc),
        feedback=feedback,
    )


class ReviewWorkflow:
    def __init__(
        self,
        db: sqlite3.Connection,
        bus: AgentBus,
        max_review_rounds: int = 3,
        escalation_recipient: str = ORCHESTRATOR,
    ):
        if max_review_rounds < 0:
            raise ValueError("max_review_rounds must be >= 0")
        self.db = db
        self.bus = bus
        self.max_review_rounds = max_review_rounds
        self.escalation_recipient = escalation_recipient

    def request_review(
        self,
        grandchild_id: str,
        reviewer_id: str,
        sender: str | None = None,
    ) -> BusMessage:
        """Open a review round for a grandchild ticket and notify the reviewer."""
        ticket = tickets.open_review_round(self.db, grandchild_id, reviewer_id)
        message = create_review_request_message(
            grandchild_id,
            reviewer_id,
            sender=sender or ticket.assignee or "worker",
            artifacts=ticket.artifacts,
            round=ticket.review_rounds,
        )
        message = self.bus.send(message)
        logger.info("Review round %d of %s requested from %s", ticket.review_rounds, grandchild_id, reviewer_id)
        return message

    def submit_review(self, grandchild_id: str, result: ReviewResult) -> GrandchildTicket:
        """Record the reviewer's decision on the open round.

        Approval completes the ticket and propagates upward. Rejection sends
        the feedback to the assignee and asks for a revision, or fails the
        ticket and escalates once the round limit is used up.
        """
        ticket, outcome = tickets.record_review_decision(
            self.db, grandchild_id, result, max_review_rounds=self.max_review_rounds
        )
        logger.info("Review of %s by %s: %s", grandchild_id, result.reviewer_id, outcome)
        if outcome == "completed":
            return ticket

        self.bus.send(
            create_review_response_message(
                grandchild_id, result, recipient=ticket.assignee or self.escalation_recipient
            )
        )
        if outcome == "failed":
            self.bus.send(
                create_escalate_message(
                    grandchild_id,
                    reason=f"Rejected in {ticket.review_rounds} review rounds",
                    sender=result.reviewer_id,
                    recipient=self.escalation_recipient,
                    details={"feedback": result.feedback, "reviewRounds": ticket.review_rounds},
                )
            )
            logger.warning(
                "%s failed after %d rejected review rounds; escalated to %s",
                grandchild_id, ticket.review_rounds, self.escalation_recipient,
            )
        return ticket

    def get_review_status(self, grandchild_id: str) -> ReviewResult | None:
        ticket = tickets.require_ticket(self.db, grandchild_id)
        if ticket.level != "grandchild":
            raise ValidationError(f"{grandchild_id} is not a grandchild ticket")
        return ticket.review_result

    def pending_reviews(self, reviewer_id: str) -> list[BusMessage]:
        """Review requests waiting for reviewer_id."""
        return [m for m in self.bus.receive(reviewer_id) if m.type == "review_request"]
