"""Data models for the agent company orchestration core.

Ticket documents are persisted as JSON with camelCase keys; the dataclasses
below use snake_case attributes and convert at the to_dict/from_dict boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

TICKET_STATUSES = (
    "pending",
    "decomposing",
    "in_progress",
    "review_requested",
    "revision_required",
    "completed",
    "failed",
    "pr_created",
)

WORKER_TYPES = ("research", "design", "designer", "developer", "test", "reviewer")

PRIORITIES = ("low", "medium", "high")

MESSAGE_TYPES = (
    "review_request",
    "review_response",
    "conflict_escalate",
    "task_assign",
    "task_complete",
    "task_failed",
    "escalate",
)


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    base_branch: str = "main"
    agent_branch: str | None = None
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TicketMetadata:
    priority: str = "medium"
    deadline: str | None = None
    tags: list[str] = field(default_factory=list)
    pr_url: str | None = None
    pr_number: int | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"priority": self.priority, "tags": list(self.tags)}
        if self.deadline:
            d["deadline"] = self.deadline
        if self.pr_url:
            d["prUrl"] = self.pr_url
        if self.pr_number is not None:
            d["prNumber"] = self.pr_number
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TicketMetadata":
        return cls(
            priority=d.get("priority", "medium"),
            deadline=d.get("deadline"),
            tags=list(d.get("tags", [])),
            pr_url=d.get("prUrl"),
            pr_number=d.get("prNumber"),
        )


@dataclass
class ReviewChecklist:
    code_quality: bool = False
    test_coverage: bool = False
    acceptance_criteria: bool = False

    def to_dict(self) -> dict:
        return {
            "codeQuality": self.code_quality,
            "testCoverage": self.test_coverage,
            "acceptanceCriteria": self.acceptance_criteria,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ReviewChecklist":
        return cls(
            code_quality=bool(d.get("codeQuality", False)),
            test_coverage=bool(d.get("testCoverage", False)),
            acceptance_criteria=bool(d.get("acceptanceCriteria", False)),
        )


@dataclass(frozen=True)
class ReviewResult:
    reviewer_id: str
    approved: bool
    checklist: ReviewChecklist
    reviewed_at: datetime
    feedback: str | None = None

    def to_dict(self) -> dict:
        d = {
            "reviewerId": self.reviewer_id,
            "approved": self.approved,
            "checklist": self.checklist.to_dict(),
            "reviewedAt": _iso(self.reviewed_at),
        }
        if self.feedback is not None:
            d["feedback"] = self.feedback
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ReviewResult":
        return cls(
            reviewer_id=d["reviewerId"],
            approved=bool(d["approved"]),
            checklist=ReviewChecklist.from_dict(d.get("checklist", {})),
            reviewed_at=_parse_dt(d["reviewedAt"]),
            feedback=d.get("feedback"),
        )


@dataclass
class ReviewRequest:
    """The currently open (or last) review round of a grandchild ticket."""

    reviewer_id: str
    round: int
    requested_at: datetime
    decided: bool = False

    def to_dict(self) -> dict:
        return {
            "reviewerId": self.reviewer_id,
            "round": self.round,
            "requestedAt": _iso(self.requested_at),
            "decided": self.decided,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ReviewRequest":
        return cls(
            reviewer_id=d["reviewerId"],
            round=int(d["round"]),
            requested_at=_parse_dt(d["requestedAt"]),
            decided=bool(d.get("decided", False)),
        )


@dataclass
class GrandchildTicket:
    id: str
    parent_id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    status: str = "pending"
    assignee: str | None = None
    git_branch: str | None = None
    artifacts: list[str] = field(default_factory=list)
    review_result: ReviewResult | None = None
    review_request: ReviewRequest | None = None
    review_rounds: int = 0
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    level = "grandchild"

    @property
    def children(self) -> list:
        return []

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "parentId": self.parent_id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "status": self.status,
            "artifacts": list(self.artifacts),
            "reviewRounds": self.review_rounds,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.assignee:
            d["assignee"] = self.assignee
        if self.git_branch:
            d["gitBranch"] = self.git_branch
        if self.review_result:
            d["reviewResult"] = self.review_result.to_dict()
        if self.review_request:
            d["reviewRequest"] = self.review_request.to_dict()
        if self.failure_reason:
            d["failureReason"] = self.failure_reason
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "GrandchildTicket":
        return cls(
            id=d["id"],
            parent_id=d["parentId"],
            title=d["title"],
            description=d.get("description", ""),
            acceptance_criteria=list(d.get("acceptanceCriteria", [])),
            status=d.get("status", "pending"),
            assignee=d.get("assignee"),
            git_branch=d.get("gitBranch"),
            artifacts=list(d.get("artifacts", [])),
            review_result=ReviewResult.from_dict(d["reviewResult"]) if d.get("reviewResult") else None,
            review_request=ReviewRequest.from_dict(d["reviewRequest"]) if d.get("reviewRequest") else None,
            review_rounds=int(d.get("reviewRounds", 0)),
            failure_reason=d.get("failureReason"),
            created_at=_parse_dt(d.get("createdAt")),
            updated_at=_parse_dt(d.get("updatedAt")),
        )


@dataclass
class ChildTicket:
    id: str
    parent_id: str
    title: str
    description: str = ""
    worker_type: str = "developer"
    status: str = "pending"
    grandchild_tickets: list[GrandchildTicket] = field(default_factory=list)
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    level = "child"

    @property
    def children(self) -> list[GrandchildTicket]:
        return self.grandchild_tickets

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "parentId": self.parent_id,
            "title": self.title,
            "description": self.description,
            "workerType": self.worker_type,
            "status": self.status,
            "grandchildTickets": [g.to_dict() for g in self.grandchild_tickets],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.failure_reason:
            d["failureReason"] = self.failure_reason
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ChildTicket":
        return cls(
            id=d["id"],
            parent_id=d["parentId"],
            title=d["title"],
            description=d.get("description", ""),
            worker_type=d.get("workerType", "developer"),
            status=d.get("status", "pending"),
            grandchild_tickets=[GrandchildTicket.from_dict(g) for g in d.get("grandchildTickets", [])],
            failure_reason=d.get("failureReason"),
            created_at=_parse_dt(d.get("createdAt")),
            updated_at=_parse_dt(d.get("updatedAt")),
        )


@dataclass
class ParentTicket:
    id: str
    project_id: str
    instruction: str
    status: str = "pending"
    metadata: TicketMetadata = field(default_factory=TicketMetadata)
    child_tickets: list[ChildTicket] = field(default_factory=list)
    failure_reason: str | None = None
    archived: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    level = "parent"

    @property
    def children(self) -> list[ChildTicket]:
        return self.child_tickets

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "projectId": self.project_id,
            "instruction": self.instruction,
            "status": self.status,
            "metadata": self.metadata.to_dict(),
            "childTickets": [c.to_dict() for c in self.child_tickets],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.failure_reason:
            d["failureReason"] = self.failure_reason
        if self.archived:
            d["archived"] = True
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ParentTicket":
        return cls(
            id=d["id"],
            project_id=d["projectId"],
            instruction=d["instruction"],
            status=d.get("status", "pending"),
            metadata=TicketMetadata.from_dict(d.get("metadata", {})),
            child_tickets=[ChildTicket.from_dict(c) for c in d.get("childTickets", [])],
            failure_reason=d.get("failureReason"),
            archived=bool(d.get("archived", False)),
            created_at=_parse_dt(d.get("createdAt")),
            updated_at=_parse_dt(d.get("updatedAt")),
        )


TicketNode = Union[ParentTicket, ChildTicket, GrandchildTicket]


@dataclass
class TicketDocument:
    """All parent tickets of one project plus the version stamp used for CAS."""

    project_id: str
    parent_tickets: list[ParentTicket] = field(default_factory=list)
    version: int = 0
    last_updated: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "projectId": self.project_id,
            "parentTickets": [p.to_dict() for p in self.parent_tickets],
            "lastUpdated": _iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, d: dict, version: int = 0) -> "TicketDocument":
        return cls(
            project_id=d["projectId"],
            parent_tickets=[ParentTicket.from_dict(p) for p in d.get("parentTickets", [])],
            version=version,
            last_updated=_parse_dt(d.get("lastUpdated")),
        )


@dataclass
class TicketEvent:
    id: int | None = None
    ticket_id: str = ""
    project_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class BusMessage:
    id: str
    type: str
    payload: dict
    sender: str
    recipient: str
    timestamp: datetime
    workflow_id: str | None = None
    seq: int | None = field(default=None, compare=False)

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "sender": self.sender,
            "recipient": self.recipient,
            "timestamp": _iso(self.timestamp),
        }
        if self.workflow_id:
            d["workflowId"] = self.workflow_id
        return d

    @classmethod
    def from_dict(cls, d: dict, seq: int | None = None) -> "BusMessage":
        return cls(
            id=d["id"],
            type=d["type"],
            payload=d.get("payload", {}),
            sender=d["sender"],
            recipient=d["recipient"],
            timestamp=_parse_dt(d["timestamp"]),
            workflow_id=d.get("workflowId"),
            seq=seq,
        )


@dataclass
class MergeResult:
    success: bool
    branch: str
    agent_branch: str
    conflict_files: list[str] = field(default_factory=list)
    commit: str | None = None


@dataclass(frozen=True)
class PRResult:
    url: str
    number: int


@dataclass
class PausedRun:
    ticket_id: str
    project_id: str
    run_id: str
    worker_states: dict = field(default_factory=dict)
    paused_at: datetime | None = None
