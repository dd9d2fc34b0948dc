"""Agent bus: durable message passing between ticket owners, reviewers and the orchestrator.

Messages are appended to the ``bus_messages`` table and never modified.
Each recipient tracks its own read offset; a message stays deliverable until
the recipient acknowledges it, so delivery is at-least-once and consumers
deduplicate on the message id.
"""

import json
import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from agent_company.core.errors import TransportError, ValidationError
from agent_company.core.retry import RetryPolicy, with_retry
from agent_company.core.tickets import root_ticket_id
from agent_company.db.engine import init_db
from agent_company.db.models import MESSAGE_TYPES, BusMessage, ReviewResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[BusMessage], None]

ORCHESTRATOR = "orchestrator"


# ---------------------------------------------------------------------------
# Message constructors
# ---------------------------------------------------------------------------


def create_message(
    type: str,
    sender: str,
    recipient: str,
    payload: dict | None = None,
    workflow_id: str | None = None,
    message_id: str | None = None,
) -> BusMessage:
    """Build a message envelope without sending it."""
    if type not in MESSAGE_TYPES:
        raise ValidationError(f"Unknown message type: {type}")
    if not sender or not recipient:
        raise ValidationError("Messages need a sender and a recipient")
    return BusMessage(
        id=message_id or f"msg-{uuid.uuid4().hex}",
        type=type,
        payload=dict(payload or {}),
        sender=sender,
        recipient=recipient,
        timestamp=datetime.now(timezone.utc),
        workflow_id=workflow_id,
    )


def create_review_request_message(
    grandchild_id: str,
    reviewer_id: str,
    sender: str = "worker",
    artifacts: list[str] | None = None,
    round: int | None = None,
    workflow_id: str | None = None,
) -> BusMessage:
    payload = {"ticketId": grandchild_id, "reviewerId": reviewer_id, "artifacts": list(artifacts or [])}
    if round is not None:
        payload["round"] = round
    return create_message(
        "review_request",
        sender=sender,
        recipient=reviewer_id,
        payload=payload,
        workflow_id=workflow_id or root_ticket_id(grandchild_id),
    )


def create_review_response_message(
    grandchild_id: str,
    result: ReviewResult,
    recipient: str,
    sender: str | None = None,
    workflow_id: str | None = None,
) -> BusMessage:
    payload = {"ticketId": grandchild_id, **result.to_dict()}
    return create_message(
        "review_response",
        sender=sender or result.reviewer_id,
        recipient=recipient,
        payload=payload,
        workflow_id=workflow_id or root_ticket_id(grandchild_id),
    )


def create_conflict_escalate_message(
    ticket_id: str,
    branch: str,
    conflict_files: list[str],
    agent_branch: str,
    sender: str = "git-manager",
    recipient: str = ORCHESTRATOR,
) -> BusMessage:
    return create_message(
        "conflict_escalate",
        sender=sender,
        recipient=recipient,
        payload={
            "ticketId": ticket_id,
            "branch": branch,
            "agentBranch": agent_branch,
            "conflictFiles": list(conflict_files),
        },
        workflow_id=root_ticket_id(ticket_id),
    )


def create_escalate_message(
    ticket_id: str,
    reason: str,
    sender: str,
    recipient: str = ORCHESTRATOR,
    details: dict | None = None,
) -> BusMessage:
    return create_message(
        "escalate",
        sender=sender,
        recipient=recipient,
        payload={"ticketId": ticket_id, "reason": reason, **(details or {})},
        workflow_id=root_ticket_id(ticket_id),
    )


def create_task_assign_message(
    ticket_id: str,
    assignee: str,
    sender: str = ORCHESTRATOR,
    branch: str | None = None,
    instructions: str | None = None,
) -> BusMessage:
    payload = {"ticketId": ticket_id}
    if branch:
        payload["branch"] = branch
    if instructions:
        payload["instructions"] = instructions
    return create_message(
        "task_assign", sender=sender, recipient=assignee, payload=payload,
        workflow_id=root_ticket_id(ticket_id),
    )


def create_task_complete_message(
    ticket_id: str,
    sender: str,
    recipient: str = ORCHESTRATOR,
    artifacts: list[str] | None = None,
) -> BusMessage:
    return create_message(
        "task_complete", sender=sender, recipient=recipient,
        payload={"ticketId": ticket_id, "artifacts": list(artifacts or [])},
        workflow_id=root_ticket_id(ticket_id),
    )


def create_task_failed_message(
    ticket_id: str,
    sender: str,
    error: str,
    recipient: str = ORCHESTRATOR,
) -> BusMessage:
    return create_message(
        "task_failed", sender=sender, recipient=recipient,
        payload={"ticketId": ticket_id, "error": error},
        workflow_id=root_ticket_id(ticket_id),
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


def _row_to_message(row: sqlite3.Row) -> BusMessage:
    return BusMessage.from_dict(json.loads(row["body"]), seq=row["seq"])


def _connect(db_path: Path) -> sqlite3.Connection:
    """Open the bus database. The schema is created once, by AgentBus.__init__."""
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


class AgentBus:
    """SQLite-backed append-only message log with per-recipient offsets."""

    def __init__(
        self,
        db_path: Path,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = Path(db_path)
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._subscribers: dict[str, list[Handler]] = {}
        self._subscribers_lock = threading.Lock()
        init_db(self.db_path).close()

    def _call(self, description: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run fn on a fresh connection, mapping storage failures to TransportError and retrying them."""

        def attempt() -> T:
            try:
                db = _connect(self.db_path)
            except (sqlite3.Error, OSError) as e:
                raise TransportError(f"Cannot open bus storage {self.db_path}: {e}") from e
            try:
                return fn(db)
            except sqlite3.OperationalError as e:
                raise TransportError(f"Bus storage error: {e}") from e
            finally:
                db.close()

        return with_retry(attempt, self.retry_policy, description, sleep=self._sleep)

    def send(self, message: BusMessage) -> BusMessage:
        """Append a message. Sending the same id twice stores it once.

        Returns the stored message with its sequence number, which confirms
        delivery to the log.
        """

        def op(db: sqlite3.Connection) -> BusMessage:
            db.execute(
                """INSERT OR IGNORE INTO bus_messages (id, type, sender, recipient, workflow_id, body)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    message.id,
                    message.type,
                    message.sender,
                    message.recipient,
                    message.workflow_id,
                    json.dumps(message.to_dict(), ensure_ascii=False),
                ),
            )
            db.commit()
            row = db.execute("SELECT * FROM bus_messages WHERE id = ?", (message.id,)).fetchone()
            return _row_to_message(row)

        stored = self._call(f"bus send {message.id}", op)
        logger.debug("Bus %s %s -> %s (%s)", stored.type, stored.sender, stored.recipient, stored.id)
        return stored

    def receive(
        self,
        recipient: str,
        workflow_id: str | None = None,
        limit: int = 100,
    ) -> list[BusMessage]:
        """Unacknowledged messages for recipient in send order."""

        def op(db: sqlite3.Connection) -> list[BusMessage]:
            query = """SELECT m.* FROM bus_messages m
                       WHERE m.recipient = ?
                         AND m.seq > COALESCE((SELECT last_seq FROM bus_offsets WHERE recipient = ?), 0)
                         AND NOT EXISTS (
                             SELECT 1 FROM bus_acks a WHERE a.recipient = m.recipient AND a.message_id = m.id
                         )"""
            params: list = [recipient, recipient]
            if workflow_id:
                query += " AND m.workflow_id = ?"
                params.append(workflow_id)
            query += " ORDER BY m.seq LIMIT ?"
            params.append(limit)
            return [_row_to_message(r) for r in db.execute(query, params).fetchall()]

        return self._call(f"bus receive {recipient}", op)

    def acknowledge(self, recipient: str, message: BusMessage | str):
        """Mark a message handled and advance the recipient's offset past acknowledged messages."""
        message_id = message if isinstance(message, str) else message.id

        def op(db: sqlite3.Connection):
            db.execute(
                "INSERT OR IGNORE INTO bus_acks (recipient, message_id) VALUES (?, ?)",
                (recipient, message_id),
            )
            row = db.execute("SELECT last_seq FROM bus_offsets WHERE recipient = ?", (recipient,)).fetchone()
            offset = row["last_seq"] if row else 0
            first_open = db.execute(
                """SELECT MIN(m.seq) AS seq FROM bus_messages m
                   WHERE m.recipient = ? AND m.seq > ?
                     AND NOT EXISTS (
                         SELECT 1 FROM bus_acks a WHERE a.recipient = m.recipient AND a.message_id = m.id
                     )""",
                (recipient, offset),
            ).fetchone()["seq"]
            if first_open is None:
                new_offset = db.execute(
                    "SELECT COALESCE(MAX(seq), 0) AS seq FROM bus_messages WHERE recipient = ?",
                    (recipient,),
                ).fetchone()["seq"]
            else:
                new_offset = first_open - 1
            if new_offset > offset:
                db.execute(
                    """INSERT INTO bus_offsets (recipient, last_seq) VALUES (?, ?)
                       ON CONFLICT(recipient) DO UPDATE
                       SET last_seq = excluded.last_seq, updated_at = datetime('now')""",
                    (recipient, new_offset),
                )
            db.commit()

        self._call(f"bus acknowledge {message_id}", op)

    def history(
        self,
        workflow_id: str | None = None,
        recipient: str | None = None,
        type: str | None = None,
        limit: int | None = None,
    ) -> list[BusMessage]:
        """All stored messages matching the filters, oldest first."""

        def op(db: sqlite3.Connection) -> list[BusMessage]:
            query = "SELECT * FROM bus_messages WHERE 1=1"
            params: list = []
            if workflow_id:
                query += " AND workflow_id = ?"
                params.append(workflow_id)
            if recipient:
                query += " AND recipient = ?"
                params.append(recipient)
            if type:
                query += " AND type = ?"
                params.append(type)
            query += " ORDER BY seq"
            if limit:
                query += " LIMIT ?"
                params.append(limit)
            return [_row_to_message(r) for r in db.execute(query, params).fetchall()]

        return self._call("bus history", op)

    def is_processed(self, consumer_id: str, message_id: str) -> bool:
        def op(db: sqlite3.Connection) -> bool:
            row = db.execute(
                "SELECT 1 FROM bus_processed WHERE consumer_id = ? AND message_id = ?",
                (consumer_id, message_id),
            ).fetchone()
            return row is not None

        return self._call("bus processed lookup", op)

    def mark_processed(self, consumer_id: str, message_id: str):
        def op(db: sqlite3.Connection):
            db.execute(
                "INSERT OR IGNORE INTO bus_processed (consumer_id, message_id) VALUES (?, ?)",
                (consumer_id, message_id),
            )
            db.commit()

        self._call("bus mark processed", op)

    # -- push delivery -----------------------------------------------------

    def subscribe(self, recipient: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for recipient's messages. Returns an unsubscribe callable.

        Handlers run from dispatch_pending(), which a BusMonitor calls on a
        background thread.
        """
        with self._subscribers_lock:
            self._subscribers.setdefault(recipient, []).append(handler)

        def unsubscribe():
            with self._subscribers_lock:
                handlers = self._subscribers.get(recipient, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._subscribers.pop(recipient, None)

        return unsubscribe

    def dispatch_pending(self) -> int:
        """Deliver unacknowledged messages to subscribers once. Returns how many were acknowledged.

        A message is acknowledged only after every handler returned; when a
        handler raises, delivery for that recipient stops and resumes with the
        same message on the next pass.
        """
        with self._subscribers_lock:
            subscribers = {r: list(h) for r, h in self._subscribers.items()}
        delivered = 0
        for recipient, handlers in subscribers.items():
            for message in self.receive(recipient):
                try:
                    for handler in handlers:
                        handler(message)
                except Exception:
                    logger.exception("Handler for %s failed on message %s", recipient, message.id)
                    break
                self.acknowledge(recipient, message)
                delivered += 1
        return delivered


class MessageConsumer:
    """Polls a recipient's messages and processes each message id at most once."""

    def __init__(self, bus: AgentBus, consumer_id: str):
        self.bus = bus
        self.consumer_id = consumer_id

    def process(self, message: BusMessage, handler: Handler) -> bool:
        """Run handler unless this consumer already processed message. Returns True if it ran."""
        if self.bus.is_processed(self.consumer_id, message.id):
            logger.debug("%s skipping duplicate message %s", self.consumer_id, message.id)
            return False
        handler(message)
        self.bus.mark_processed(self.consumer_id, message.id)
        return True

    def poll(self, recipient: str, handler: Handler, workflow_id: str | None = None) -> int:
        """Process and acknowledge pending messages. Returns the number handled."""
        handled = 0
        for message in self.bus.receive(recipient, workflow_id=workflow_id):
            if self.process(message, handler):
                handled += 1
            self.bus.acknowledge(recipient, message)
        return handled


class BusMonitor:
    """Background thread that pushes bus messages to subscribers."""

    def __init__(self, bus: AgentBus, poll_interval: float = 1.0):
        self.bus = bus
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="bus-monitor", daemon=True)
        self._thread.start()
        logger.info("Bus monitor started")

    def stop(self):
        """Signal the monitor thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Bus monitor stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.bus.dispatch_pending()
            except Exception:
                logger.exception("Error in bus monitor loop")
            self._stop_event.wait(self.poll_interval)
