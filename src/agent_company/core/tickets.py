"""Ticket hierarchy management: creation, status transitions and propagation.

Each project's parent/child/grandchild tickets live in a single JSON document
stored in the ``ticket_documents`` table. Every mutation loads the document,
applies its change in memory and saves it back with a compare-and-swap on the
document's version stamp, so a reader only ever sees states that were fully
written.
"""

import json
import logging
import os
import re
import sqlite3
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from agent_company.core.errors import (
    ConcurrentModificationError,
    DuplicateReviewError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from agent_company.core.registry import match_worker_type
from agent_company.db.models import (
    PRIORITIES,
    TICKET_STATUSES,
    WORKER_TYPES,
    ChildTicket,
    GrandchildTicket,
    ParentTicket,
    PausedRun,
    ReviewRequest,
    ReviewResult,
    TicketDocument,
    TicketEvent,
    TicketMetadata,
    TicketNode,
    _parse_dt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("decomposing", "in_progress", "failed"),
    "decomposing": ("in_progress", "failed"),
    "in_progress": ("review_requested", "completed", "failed"),
    "review_requested": ("revision_required", "completed", "failed"),
    "revision_required": ("in_progress", "failed"),
    "completed": ("pr_created",),
    "failed": ("in_progress",),
    "pr_created": (),
}

REVIEW_STATUSES = ("review_requested", "revision_required")
ACTIVE_STATUSES = ("decomposing", "in_progress", "review_requested", "revision_required")
DONE_STATUSES = ("completed", "pr_created")
# Tickets in these states cannot be paused, decomposed further or given sub-tickets.
CLOSED_STATUSES = ("completed", "pr_created")

MAX_CAS_ATTEMPTS = 5

_ID_SEGMENT_WIDTH = {"parent": 4, "child": 2, "grandchild": 3}
_ID_RE = re.compile(r"^(?P<base>\S+)-(?P<seq>\d+)$")

_locks_guard = threading.Lock()
_project_locks: dict[str, threading.Lock] = {}

_snapshot_dir: Path | None = None


# ---------------------------------------------------------------------------
# Ticket ids
# ---------------------------------------------------------------------------


def ticket_level(ticket_id: str) -> str:
    """Return 'parent', 'child' or 'grandchild' for a ticket id."""
    m = _ID_RE.match(ticket_id or "")
    if m:
        width = len(m.group("seq"))
        for level, w in _ID_SEGMENT_WIDTH.items():
            if w == width:
                return level
    raise ValidationError(f"Malformed ticket id: {ticket_id!r}")


def parent_id_of(ticket_id: str) -> str | None:
    """The id of the ticket one level up, or None for a parent ticket."""
    if ticket_level(ticket_id) == "parent":
        return None
    return ticket_id.rsplit("-", 1)[0]


def project_of(ticket_id: str) -> str:
    """Resolve the owning project from a ticket id."""
    level = ticket_level(ticket_id)
    strip = {"parent": 1, "child": 2, "grandchild": 3}[level]
    return ticket_id.rsplit("-", strip)[0]


def root_ticket_id(ticket_id: str) -> str:
    """The parent ticket at the top of ticket_id's hierarchy (its workflow id)."""
    return _ancestry(ticket_id)[0]


def _ancestry(ticket_id: str) -> list[str]:
    """Ids from the parent ticket down to ticket_id."""
    chain = [ticket_id]
    while (up := parent_id_of(chain[0])) is not None:
        chain.insert(0, up)
    return chain


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def set_snapshot_dir(path: str | Path | None):
    """Mirror every saved document to <path>/<project_id>.json (None disables)."""
    global _snapshot_dir
    _snapshot_dir = Path(path) if path else None


def _project_lock(project_id: str) -> threading.Lock:
    with _locks_guard:
        lock = _project_locks.get(project_id)
        if lock is None:
            lock = _project_locks[project_id] = threading.Lock()
        return lock


def load_document(db: sqlite3.Connection, project_id: str) -> TicketDocument:
    """Load a project's ticket document. A project with no tickets yields an empty one."""
    row = db.execute(
        "SELECT document, version FROM ticket_documents WHERE project_id = ?",
        (project_id,),
    ).fetchone()
    if not row:
        return TicketDocument(project_id=project_id)
    return TicketDocument.from_dict(json.loads(row["document"]), version=row["version"])


def load_tickets(db: sqlite3.Connection, project_id: str) -> list[ParentTicket]:
    return load_document(db, project_id).parent_tickets


def save_tickets(
    db: sqlite3.Connection,
    document: TicketDocument,
    snapshot_dir: str | Path | None = None,
) -> TicketDocument:
    """Persist a ticket document if nobody saved it since it was loaded.

    Raises ConcurrentModificationError when the stored version differs from
    document.version. On success the document's version is bumped and
    returned.
    """
    return _write_document(db, document, [], snapshot_dir)


def _write_document(
    db: sqlite3.Connection,
    document: TicketDocument,
    events: list[tuple[str, str, str | None, str | None]],
    snapshot_dir: str | Path | None = None,
) -> TicketDocument:
    expected = document.version
    document.last_updated = _now_after(document.last_updated)
    body = json.dumps(document.to_dict(), ensure_ascii=False)
    try:
        if expected == 0:
            try:
                db.execute(
                    "INSERT INTO ticket_documents (project_id, document, version) VALUES (?, ?, 1)",
                    (document.project_id, body),
                )
            except sqlite3.IntegrityError as e:
                raise ConcurrentModificationError(document.project_id, expected) from e
        else:
            cur = db.execute(
                """UPDATE ticket_documents
                   SET document = ?, version = version + 1, updated_at = datetime('now')
                   WHERE project_id = ? AND version = ?""",
                (body, document.project_id, expected),
            )
            if cur.rowcount != 1:
                raise ConcurrentModificationError(document.project_id, expected)
        for ticket_id, event_type, old_value, new_value in events:
            _log_event(db, ticket_id, document.project_id, event_type, old_value, new_value)
        db.commit()
    except Exception:
        db.rollback()
        raise

    document.version = expected + 1
    target = Path(snapshot_dir) if snapshot_dir else _snapshot_dir
    if target:
        _write_snapshot(target, document.project_id, body)
    return document


def _write_snapshot(directory: Path, project_id: str, body: str):
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{project_id}.", suffix=".tmp")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(body)
    os.replace(tmp, directory / f"{project_id}.json")


@dataclass
class _Mutation:
    document: TicketDocument
    events: list[tuple[str, str, str | None, str | None]] = field(default_factory=list)

    def log(self, ticket_id: str, event_type: str, old_value=None, new_value=None):
        self.events.append((
            ticket_id,
            event_type,
            None if old_value is None else str(old_value),
            None if new_value is None else str(new_value),
        ))

    def find(self, ticket_id: str) -> TicketNode:
        node = _find(self.document, ticket_id)
        if node is None:
            raise NotFoundError(f"Ticket not found: {ticket_id}")
        return node


def _mutate(db: sqlite3.Connection, project_id: str, fn: Callable[[_Mutation], T]) -> T:
    """Apply fn to a freshly loaded document and save it with compare-and-swap.

    A mutation that logs no events writes nothing.
    """
    attempt = 0
    with _project_lock(project_id):
        while True:
            attempt += 1
            mutation = _Mutation(load_document(db, project_id))
            result = fn(mutation)
            if not mutation.events:
                return result
            try:
                _write_document(db, mutation.document, mutation.events)
                return result
            except ConcurrentModificationError:
                if attempt >= MAX_CAS_ATTEMPTS:
                    raise
                logger.debug(
                    "Ticket document %s changed concurrently, reapplying (attempt %d)",
                    project_id, attempt,
                )


def _find(document: TicketDocument, ticket_id: str) -> TicketNode | None:
    chain = _ancestry(ticket_id)
    nodes: list = document.parent_tickets
    node = None
    for tid in chain:
        node = next((n for n in nodes if n.id == tid), None)
        if node is None:
            return None
        nodes = node.children
    return node


def _now_after(previous: datetime | None) -> datetime:
    now = datetime.now(timezone.utc)
    if previous is not None and previous > now:
        return previous
    return now


def _touch(node: TicketNode):
    node.updated_at = _now_after(node.updated_at)


# ---------------------------------------------------------------------------
# Status rules
# ---------------------------------------------------------------------------


def derive_status(statuses: list[str]) -> str | None:
    """Compute a ticket's status from its sub-tickets' statuses.

    Returns None when the sub-tickets give no reason to change (no
    sub-tickets, or all still pending).
    """
    if not statuses:
        return None
    if all(s in DONE_STATUSES for s in statuses):
        return "completed"
    active = any(s in ACTIVE_STATUSES for s in statuses)
    if "failed" in statuses and not active:
        return "failed"
    working = any(s in ("in_progress", "review_requested", "revision_required") for s in statuses)
    if working or any(s in DONE_STATUSES for s in statuses):
        return "in_progress"
    if "decomposing" in statuses:
        return "decomposing"
    return None


def check_transition(node: TicketNode, new_status: str):
    """Raise unless node may move directly to new_status."""
    old = node.status
    if new_status not in TICKET_STATUSES:
        raise ValidationError(f"Unknown status: {new_status}")
    if node.children and not (old == "completed" and new_status == "pr_created"):
        raise InvalidTransitionError(node.id, old, new_status, "status is derived from sub-tickets")
    if new_status not in ALLOWED_TRANSITIONS[old]:
        raise InvalidTransitionError(node.id, old, new_status)
    if new_status in REVIEW_STATUSES and node.level != "grandchild":
        raise InvalidTransitionError(node.id, old, new_status, "only grandchild tickets are reviewed")
    if new_status == "pr_created" and node.level != "parent":
        raise InvalidTransitionError(node.id, old, new_status, "only parent tickets get pull requests")
    if node.level == "grandchild" and new_status == "completed" and old != "review_requested":
        raise InvalidTransitionError(node.id, old, new_status, "grandchild tickets complete through review")


def _set_status(mutation: _Mutation, node: TicketNode, new_status: str, reason: str | None = None):
    check_transition(node, new_status)
    old = node.status
    node.status = new_status
    if new_status == "failed":
        node.failure_reason = reason or node.failure_reason or "failed"
    elif old == "failed":
        node.failure_reason = None
    _touch(node)
    mutation.log(node.id, "status_changed", old, new_status)
    logger.info("Ticket %s: %s -> %s", node.id, old, new_status)
    # A recovered grandchild gets a fresh review budget.
    if old == "failed" and getattr(node, "review_rounds", 0):
        mutation.log(node.id, "review_rounds_reset", str(node.review_rounds), "0")
        node.review_rounds = 0
    _propagate(mutation, node.id)


def _propagate(mutation: _Mutation, ticket_id: str):
    """Recompute derived statuses from ticket_id's parent up to the root."""
    current = parent_id_of(ticket_id)
    while current is not None:
        node = mutation.find(current)
        derived = derive_status([c.status for c in node.children])
        if derived and derived != node.status and not (
            node.status == "pr_created" and derived == "completed"
        ):
            old = node.status
            node.status = derived
            if derived == "failed":
                node.failure_reason = "sub-ticket failed"
            elif old == "failed":
                node.failure_reason = None
            _touch(node)
            mutation.log(node.id, "status_derived", old, derived)
            logger.info("Ticket %s derived: %s -> %s", node.id, old, derived)
        current = parent_id_of(current)


# ---------------------------------------------------------------------------
# Creation and decomposition
# ---------------------------------------------------------------------------


def _require_open(node: TicketNode, action: str):
    if node.status in CLOSED_STATUSES or getattr(node, "archived", False):
        raise InvalidStateError(f"Cannot {action} {node.id}: ticket is {node.status}")


def _new_parent(
    mutation: _Mutation,
    project_id: str,
    instruction: str,
    metadata: TicketMetadata,
) -> ParentTicket:
    seq = 1 + max(
        (int(p.id.rsplit("-", 1)[1]) for p in mutation.document.parent_tickets),
        default=0,
    )
    if seq > 9999:
        raise ValidationError(f"Project {project_id} has no parent ticket ids left")
    now = datetime.now(timezone.utc)
    parent = ParentTicket(
        id=f"{project_id}-{seq:04d}",
        project_id=project_id,
        instruction=instruction.strip(),
        metadata=metadata,
        created_at=now,
        updated_at=now,
    )
    mutation.document.parent_tickets.append(parent)
    mutation.log(parent.id, "created", None, "pending")
    return parent


def _new_child(
    mutation: _Mutation, parent: ParentTicket, title: str, description: str, worker_type: str | None
) -> ChildTicket:
    if not title or not title.strip():
        raise ValidationError("Child ticket title must not be empty")
    if worker_type is None:
        worker_type = match_worker_type(f"{title} {description}")
    if worker_type not in WORKER_TYPES:
        raise ValidationError(f"Unknown worker type: {worker_type}")
    _require_open(parent, "add child tickets to")
    seq = len(parent.child_tickets) + 1
    if seq > 99:
        raise ValidationError(f"Parent {parent.id} has no child ticket ids left")
    now = datetime.now(timezone.utc)
    child = ChildTicket(
        id=f"{parent.id}-{seq:02d}",
        parent_id=parent.id,
        title=title.strip(),
        description=description,
        worker_type=worker_type,
        created_at=now,
        updated_at=now,
    )
    parent.child_tickets.append(child)
    mutation.log(child.id, "created", None, "pending")
    return child


def _new_grandchild(
    mutation: _Mutation,
    child: ChildTicket,
    title: str,
    description: str,
    acceptance_criteria: list[str] | None,
) -> GrandchildTicket:
    if not title or not title.strip():
        raise ValidationError("Grandchild ticket title must not be empty")
    _require_open(child, "add grandchild tickets to")
    seq = len(child.grandchild_tickets) + 1
    if seq > 999:
        raise ValidationError(f"Child {child.id} has no grandchild ticket ids left")
    now = datetime.now(timezone.utc)
    grandchild = GrandchildTicket(
        id=f"{child.id}-{seq:03d}",
        parent_id=child.id,
        title=title.strip(),
        description=description,
        acceptance_criteria=list(acceptance_criteria or []),
        created_at=now,
        updated_at=now,
    )
    child.grandchild_tickets.append(grandchild)
    mutation.log(grandchild.id, "created", None, "pending")
    return grandchild


def _find_level(mutation: _Mutation, ticket_id: str, level: str) -> TicketNode:
    if ticket_level(ticket_id) != level:
        raise ValidationError(f"{ticket_id} is not a {level} ticket")
    return mutation.find(ticket_id)


def create_parent_ticket(
    db: sqlite3.Connection,
    project_id: str,
    instruction: str,
    priority: str = "medium",
    deadline: str | None = None,
    tags: list[str] | None = None,
) -> ParentTicket:
    """Create a new top-level ticket for an instruction."""
    if not project_id or not project_id.strip() or any(c.isspace() for c in project_id):
        raise ValidationError("Project id must be a non-empty string without whitespace")
    if not instruction or not instruction.strip():
        raise ValidationError("Instruction must not be empty")
    if priority not in PRIORITIES:
        raise ValidationError(f"Unknown priority: {priority}")
    if deadline:
        try:
            datetime.fromisoformat(deadline)
        except ValueError as e:
            raise ValidationError(f"Deadline is not an ISO date: {deadline}") from e
    metadata = TicketMetadata(priority=priority, deadline=deadline, tags=list(tags or []))
    return _mutate(db, project_id, lambda m: _new_parent(m, project_id, instruction, metadata))


def create_child_ticket(
    db: sqlite3.Connection,
    parent_id: str,
    title: str,
    description: str = "",
    worker_type: str | None = None,
) -> ChildTicket:
    """Add a child ticket under a parent. worker_type=None classifies it."""

    def apply(m: _Mutation) -> ChildTicket:
        parent = _find_level(m, parent_id, "parent")
        child = _new_child(m, parent, title, description, worker_type)
        _propagate(m, child.id)
        return child

    return _mutate(db, project_of(parent_id), apply)


def create_grandchild_ticket(
    db: sqlite3.Connection,
    child_id: str,
    title: str,
    description: str = "",
    acceptance_criteria: list[str] | None = None,
) -> GrandchildTicket:
    """Add an atomic work item under a child ticket."""

    def apply(m: _Mutation) -> GrandchildTicket:
        child = _find_level(m, child_id, "child")
        grandchild = _new_grandchild(m, child, title, description, acceptance_criteria)
        _propagate(m, grandchild.id)
        return grandchild

    return _mutate(db, project_of(child_id), apply)


def _start_decomposing(m: _Mutation, node: TicketNode):
    if node.status == "pending" and not node.children:
        _set_status(m, node, "decomposing")
    elif node.status not in ("pending", "decomposing"):
        raise InvalidStateError(f"Cannot decompose {node.id}: ticket is {node.status}")


def decompose_parent_ticket(
    db: sqlite3.Connection,
    parent_id: str,
    children: list[dict],
) -> list[ChildTicket]:
    """Split a parent ticket into child tickets in one write.

    Each dict needs 'title' and may carry 'description' and 'worker_type';
    a missing worker type is chosen by keyword matching.
    """
    if not children:
        raise ValidationError("Decomposition needs at least one child ticket")

    def apply(m: _Mutation) -> list[ChildTicket]:
        parent = _find_level(m, parent_id, "parent")
        _start_decomposing(m, parent)
        created = [
            _new_child(m, parent, c.get("title", ""), c.get("description", ""), c.get("worker_type"))
            for c in children
        ]
        _propagate(m, created[-1].id)
        return created

    return _mutate(db, project_of(parent_id), apply)


def decompose_child_ticket(
    db: sqlite3.Connection,
    child_id: str,
    grandchildren: list[dict],
) -> list[GrandchildTicket]:
    """Split a child ticket into grandchild tickets in one write."""
    if not grandchildren:
        raise ValidationError("Decomposition needs at least one grandchild ticket")

    def apply(m: _Mutation) -> list[GrandchildTicket]:
        child = _find_level(m, child_id, "child")
        _start_decomposing(m, child)
        created = [
            _new_grandchild(
                m, child, g.get("title", ""), g.get("description", ""), g.get("acceptance_criteria")
            )
            for g in grandchildren
        ]
        _propagate(m, created[-1].id)
        return created

    return _mutate(db, project_of(child_id), apply)


# ---------------------------------------------------------------------------
# Status mutation
# ---------------------------------------------------------------------------


def update_ticket_status(
    db: sqlite3.Connection,
    ticket_id: str,
    new_status: str,
    reason: str | None = None,
) -> TicketNode:
    """Move a ticket to new_status and propagate the change upward.

    Review states and grandchild completion are left to open_review_round
    and record_review_decision.
    """

    def apply(m: _Mutation) -> TicketNode:
        node = m.find(ticket_id)
        if new_status in REVIEW_STATUSES or (node.level == "grandchild" and new_status == "completed"):
            raise InvalidTransitionError(node.id, node.status, new_status, "set by the review workflow")
        _set_status(m, node, new_status, reason)
        return node

    return _mutate(db, project_of(ticket_id), apply)


def propagate_status_to_parent(db: sqlite3.Connection, ticket_id: str) -> bool:
    """Recompute derived statuses above ticket_id. Returns True if anything was written."""

    def apply(m: _Mutation) -> bool:
        m.find(ticket_id)
        _propagate(m, ticket_id)
        return bool(m.events)

    return _mutate(db, project_of(ticket_id), apply)


def mark_failed(db: sqlite3.Connection, ticket_id: str, reason: str) -> TicketNode:
    """Record a terminal failure on a ticket. An already failed ticket gets the new reason."""

    def apply(m: _Mutation) -> TicketNode:
        node = m.find(ticket_id)
        if node.status == "failed":
            if node.failure_reason != reason:
                m.log(node.id, "failure_reason", node.failure_reason, reason)
                node.failure_reason = reason
                _touch(node)
            return node
        _set_status(m, node, "failed", reason)
        return node

    return _mutate(db, project_of(ticket_id), apply)


def record_pull_request(db: sqlite3.Connection, parent_id: str, url: str, number: int) -> ParentTicket:
    """Store a confirmed pull request on a completed parent and move it to pr_created."""

    def apply(m: _Mutation) -> ParentTicket:
        parent = _find_level(m, parent_id, "parent")
        _set_status(m, parent, "pr_created")
        parent.metadata.pr_url = url
        parent.metadata.pr_number = number
        m.log(parent.id, "pull_request", None, url)
        return parent

    return _mutate(db, project_of(parent_id), apply)


# ---------------------------------------------------------------------------
# Grandchild work fields
# ---------------------------------------------------------------------------


def assign_ticket(db: sqlite3.Connection, grandchild_id: str, assignee: str) -> GrandchildTicket:
    if not assignee or not assignee.strip():
        raise ValidationError("Assignee must not be empty")

    def apply(m: _Mutation) -> GrandchildTicket:
        ticket = _find_level(m, grandchild_id, "grandchild")
        _require_open(ticket, "assign")
        if ticket.assignee != assignee:
            m.log(ticket.id, "assigned", ticket.assignee, assignee)
            ticket.assignee = assignee
            _touch(ticket)
        return ticket

    return _mutate(db, project_of(grandchild_id), apply)


def add_artifacts(db: sqlite3.Connection, grandchild_id: str, artifacts: list[str]) -> GrandchildTicket:
    """Attach deliverables (file paths or diff references). Duplicates are ignored."""

    def apply(m: _Mutation) -> GrandchildTicket:
        ticket = _find_level(m, grandchild_id, "grandchild")
        _require_open(ticket, "add artifacts to")
        new = [a for a in dict.fromkeys(artifacts) if a and a not in ticket.artifacts]
        if new:
            ticket.artifacts.extend(new)
            _touch(ticket)
            m.log(ticket.id, "artifacts_added", None, ", ".join(new))
        return ticket

    return _mutate(db, project_of(grandchild_id), apply)


def set_git_branch(db: sqlite3.Connection, grandchild_id: str, branch: str) -> GrandchildTicket:
    def apply(m: _Mutation) -> GrandchildTicket:
        ticket = _find_level(m, grandchild_id, "grandchild")
        if ticket.git_branch != branch:
            m.log(ticket.id, "git_branch", ticket.git_branch, branch)
            ticket.git_branch = branch
            _touch(ticket)
        return ticket

    return _mutate(db, project_of(grandchild_id), apply)


# ---------------------------------------------------------------------------
# Review rounds
# ---------------------------------------------------------------------------


def open_review_round(db: sqlite3.Connection, grandchild_id: str, reviewer_id: str) -> GrandchildTicket:
    """Open the next review round and move the ticket to review_requested.

    The ticket must be in_progress or revision_required and carry at least
    one artifact.
    """
    if not reviewer_id or not reviewer_id.strip():
        raise ValidationError("Reviewer id must not be empty")

    def apply(m: _Mutation) -> GrandchildTicket:
        ticket = _find_level(m, grandchild_id, "grandchild")
        if ticket.status not in ("in_progress", "revision_required"):
            raise InvalidStateError(
                f"{ticket.id} is {ticket.status}; review needs in_progress or revision_required"
            )
        if not ticket.artifacts:
            raise InvalidStateError(f"{ticket.id} has no artifacts to review")
        if ticket.status == "revision_required":
            _set_status(m, ticket, "in_progress")
        ticket.review_rounds += 1
        ticket.review_request = ReviewRequest(
            reviewer_id=reviewer_id,
            round=ticket.review_rounds,
            requested_at=datetime.now(timezone.utc),
        )
        _set_status(m, ticket, "review_requested")
        m.log(ticket.id, "review_requested", None, f"round {ticket.review_rounds} -> {reviewer_id}")
        return ticket

    return _mutate(db, project_of(grandchild_id), apply)


def _check_decision(ticket: GrandchildTicket, result: ReviewResult):
    request = ticket.review_request
    if request is None:
        raise InvalidStateError(f"{ticket.id} has no review request")
    if request.decided:
        raise DuplicateReviewError(
            f"Review round {request.round} of {ticket.id} already has a decision"
        )
    if ticket.status != "review_requested":
        raise InvalidStateError(f"{ticket.id} is {ticket.status}, not review_requested")
    if result.reviewer_id != request.reviewer_id:
        raise ValidationError(
            f"Round {request.round} of {ticket.id} was requested from {request.reviewer_id}, "
            f"not {result.reviewer_id}"
        )


def check_review_decision(db: sqlite3.Connection, grandchild_id: str, result: ReviewResult) -> GrandchildTicket:
    """Raise unless result may close grandchild_id's open review round. Writes nothing."""
    if ticket_level(grandchild_id) != "grandchild":
        raise ValidationError(f"{grandchild_id} is not a grandchild ticket")
    ticket = require_ticket(db, grandchild_id)
    _check_decision(ticket, result)
    return ticket


def record_review_decision(
    db: sqlite3.Connection,
    grandchild_id: str,
    result: ReviewResult,
    max_review_rounds: int = 0,
) -> tuple[GrandchildTicket, str]:
    """Close the open review round with result.

    Returns the ticket and the outcome: 'completed', 'revision_required', or
    'failed' when a rejection used up max_review_rounds (0 means unbounded).
    """

    def apply(m: _Mutation) -> tuple[GrandchildTicket, str]:
        ticket = _find_level(m, grandchild_id, "grandchild")
        _check_decision(ticket, result)
        request = ticket.review_request
        request.decided = True
        ticket.review_result = result
        verdict = "approved" if result.approved else "rejected"
        m.log(ticket.id, "review_submitted", None, f"round {request.round} {verdict} by {result.reviewer_id}")

        if result.approved:
            outcome = "completed"
            _set_status(m, ticket, "completed")
        elif max_review_rounds and ticket.review_rounds >= max_review_rounds:
            outcome = "failed"
            _set_status(
                m, ticket, "failed",
                f"rejected in {ticket.review_rounds} review rounds: {result.feedback or 'no feedback'}",
            )
        else:
            outcome = "revision_required"
            _set_status(m, ticket, "revision_required")
        return ticket, outcome

    return _mutate(db, project_of(grandchild_id), apply)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_ticket(db: sqlite3.Connection, ticket_id: str) -> TicketNode | None:
    """Look up any ticket by id."""
    return _find(load_document(db, project_of(ticket_id)), ticket_id)


def require_ticket(db: sqlite3.Connection, ticket_id: str) -> TicketNode:
    ticket = get_ticket(db, ticket_id)
    if ticket is None:
        raise NotFoundError(f"Ticket not found: {ticket_id}")
    return ticket


def get_parent_ticket(db: sqlite3.Connection, parent_id: str) -> ParentTicket | None:
    if ticket_level(parent_id) != "parent":
        raise ValidationError(f"{parent_id} is not a parent ticket")
    return get_ticket(db, parent_id)


def list_parent_tickets(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    include_archived: bool = False,
) -> list[ParentTicket]:
    tickets = load_tickets(db, project_id)
    if not include_archived:
        tickets = [t for t in tickets if not t.archived]
    if status:
        tickets = [t for t in tickets if t.status == status]
    return tickets


def iter_tickets(parent: ParentTicket):
    """Yield parent, children and grandchildren in document order."""
    yield parent
    for child in parent.child_tickets:
        yield child
        yield from child.grandchild_tickets


def list_project_ids(db: sqlite3.Connection) -> list[str]:
    rows = db.execute("SELECT project_id FROM ticket_documents ORDER BY project_id").fetchall()
    return [r["project_id"] for r in rows]


# ---------------------------------------------------------------------------
# Pause, resume and archival
# ---------------------------------------------------------------------------


def get_paused_run(db: sqlite3.Connection, ticket_id: str) -> PausedRun | None:
    row = db.execute("SELECT * FROM paused_runs WHERE ticket_id = ?", (ticket_id,)).fetchone()
    if not row:
        return None
    return PausedRun(
        ticket_id=row["ticket_id"],
        project_id=row["project_id"],
        run_id=row["run_id"],
        worker_states=json.loads(row["worker_states"]),
        paused_at=_parse_dt(row["paused_at"]),
    )


def is_paused(db: sqlite3.Connection, ticket_id: str) -> bool:
    return get_paused_run(db, ticket_id) is not None


def pause_ticket(
    db: sqlite3.Connection,
    ticket_id: str,
    run_id: str,
    worker_states: dict | None = None,
) -> PausedRun:
    """Persist a run's execution state so work on the ticket can resume later.

    The ticket's status is left unchanged.
    """
    ticket = require_ticket(db, ticket_id)
    if ticket.status in CLOSED_STATUSES or ticket.status == "failed":
        raise InvalidStateError(f"Cannot pause {ticket_id}: ticket is {ticket.status}")
    if is_paused(db, ticket_id):
        raise InvalidStateError(f"{ticket_id} is already paused")
    project_id = project_of(ticket_id)
    db.execute(
        "INSERT INTO paused_runs (ticket_id, project_id, run_id, worker_states) VALUES (?, ?, ?, ?)",
        (ticket_id, project_id, run_id, json.dumps(worker_states or {})),
    )
    _log_event(db, ticket_id, project_id, "paused", None, run_id)
    db.commit()
    logger.info("Paused %s (run %s)", ticket_id, run_id)
    return get_paused_run(db, ticket_id)


def resume_ticket(db: sqlite3.Connection, ticket_id: str) -> PausedRun:
    """Remove and return the paused run state of a ticket."""
    paused = get_paused_run(db, ticket_id)
    if paused is None:
        raise InvalidStateError(f"{ticket_id} is not paused")
    db.execute("DELETE FROM paused_runs WHERE ticket_id = ?", (ticket_id,))
    _log_event(db, ticket_id, paused.project_id, "resumed", paused.run_id, None)
    db.commit()
    logger.info("Resumed %s (run %s)", ticket_id, paused.run_id)
    return paused


def archive_parent_ticket(db: sqlite3.Connection, parent_id: str) -> ParentTicket:
    """Hide a parent ticket from listings. Tickets are never deleted."""

    def apply(m: _Mutation) -> ParentTicket:
        parent = _find_level(m, parent_id, "parent")
        if not parent.archived:
            parent.archived = True
            _touch(parent)
            m.log(parent.id, "archived", None, "true")
        return parent

    return _mutate(db, project_of(parent_id), apply)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def record_ticket_event(
    db: sqlite3.Connection,
    ticket_id: str,
    event_type: str,
    old_value: str | None = None,
    new_value: str | None = None,
):
    """Append an audit event that does not change the ticket document."""
    _log_event(db, ticket_id, project_of(ticket_id), event_type, old_value, new_value)
    db.commit()


def get_ticket_events(db: sqlite3.Connection, ticket_id: str) -> list[TicketEvent]:
    """Get the event history for a ticket."""
    rows = db.execute(
        "SELECT * FROM ticket_events WHERE ticket_id = ? ORDER BY id",
        (ticket_id,),
    ).fetchall()
    return [
        TicketEvent(
            id=r["id"],
            ticket_id=r["ticket_id"],
            project_id=r["project_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    ticket_id: str,
    project_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        """INSERT INTO ticket_events (ticket_id, project_id, event_type, old_value, new_value)
           VALUES (?, ?, ?, ?, ?)""",
        (ticket_id, project_id, event_type, old_value, new_value),
    )
