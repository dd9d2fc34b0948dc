"""Error taxonomy for the orchestration core."""


class AgentCompanyError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(AgentCompanyError):
    """Raised when input is malformed. Never retried."""


class NotFoundError(AgentCompanyError):
    """Raised when a project, ticket or branch does not resolve."""


class InvalidTransitionError(AgentCompanyError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, ticket_id: str, old_status: str, new_status: str, reason: str = ""):
        self.ticket_id = ticket_id
        self.old_status = old_status
        self.new_status = new_status
        msg = f"Invalid transition for {ticket_id}: {old_status} -> {new_status}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class InvalidStateError(AgentCompanyError):
    """Raised when an operation is not allowed in the ticket's current state."""


class DuplicateReviewError(AgentCompanyError):
    """Raised when a review round already has a decision."""


class ConcurrentModificationError(AgentCompanyError):
    """Raised when a ticket document changed between load and save."""

    def __init__(self, project_id: str, expected_version: int):
        self.project_id = project_id
        self.expected_version = expected_version
        super().__init__(
            f"Ticket document for project '{project_id}' was modified concurrently "
            f"(expected version {expected_version})"
        )


class MergeConflictError(AgentCompanyError):
    """Raised when a merge is blocked by conflicts. Escalated, never retried."""

    def __init__(self, branch: str, conflict_files: list[str]):
        self.branch = branch
        self.conflict_files = list(conflict_files)
        super().__init__(
            f"Merge of {branch} blocked by conflicts in: {', '.join(conflict_files)}"
        )


class GitHostError(AgentCompanyError):
    """Raised when the git hosting provider rejects or fails a request."""


class TransportError(AgentCompanyError):
    """Raised when the agent bus storage cannot be reached."""
