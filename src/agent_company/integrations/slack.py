"""Slack Web API integration for escalations and ticket notifications."""

import logging
from dataclasses import dataclass

from agent_company.db.models import BusMessage

logger = logging.getLogger(__name__)

STATUS_EMOJI = {
    "pending": ":white_circle:",
    "decomposing": ":jigsaw:",
    "in_progress": ":large_blue_circle:",
    "review_requested": ":eyes:",
    "revision_required": ":warning:",
    "completed": ":white_check_mark:",
    "failed": ":red_circle:",
    "pr_created": ":rocket:",
}


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    client=None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_ticket_notification(ticket_id: str, title: str, status: str, project: str) -> list[dict]:
    """Format a ticket status change as Slack blocks."""
    emoji = STATUS_EMOJI.get(status, ":grey_question:")
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Ticket Update*\n*{title}* (`{ticket_id}`)\nStatus: *{status}* | Project: {project}",
            },
        }
    ]


def format_conflict_escalation(message: BusMessage) -> list[dict]:
    """Format a conflict_escalate bus message as Slack blocks."""
    payload = message.payload
    files = "\n".join(f"• `{f}`" for f in payload.get("conflictFiles", []))
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":rotating_light: *Merge conflict needs a human*\n"
                    f"Ticket `{payload.get('ticketId')}`: `{payload.get('branch')}` "
                    f"cannot merge into `{payload.get('agentBranch')}`.\n{files}"
                ),
            },
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": "Resolve the conflict, then move the ticket back to in_progress.",
                }
            ],
        },
    ]


def format_escalation(message: BusMessage) -> list[dict]:
    """Format an escalate bus message as Slack blocks."""
    payload = message.payload
    text = f":warning: *Escalation* from {message.sender}\nTicket `{payload.get('ticketId')}`: {payload.get('reason')}"
    if payload.get("feedback"):
        text += f"\n> {payload['feedback']}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackEscalationNotifier:
    """Bus handler that posts conflict and review escalations to a Slack channel."""

    def __init__(self, token: str | None, channel: str, client=None):
        self.channel = channel
        self.client = client or get_client(token)
        if not self.client:
            raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    def __call__(self, message: BusMessage):
        if message.type == "conflict_escalate":
            blocks = format_conflict_escalation(message)
            text = f"Merge conflict on {message.payload.get('branch')}"
        elif message.type == "escalate":
            blocks = format_escalation(message)
            text = f"Escalation for {message.payload.get('ticketId')}"
        else:
            return
        send_message(None, self.channel, text, blocks=blocks, client=self.client)
        logger.info("Posted %s for %s to %s", message.type, message.payload.get("ticketId"), self.channel)
