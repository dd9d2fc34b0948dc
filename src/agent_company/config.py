"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_company.core.retry import RetryPolicy


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_company" / "ac.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    base_branch: str = "main"
    agent_branch_template: str = "agent/{project_id}"
    worktree_dir: str = ".worktrees"
    snapshot_dir: Path | None = None
    git_timeout: float = 120.0
    pr_timeout: float = 60.0
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 4.0
    max_review_rounds: int = 3
    escalation_recipient: str = "orchestrator"
    git_author_name: str | None = None
    git_author_email: str | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AC_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("AC_REPO_PATH"):
            config.repo_path = Path(repo)

        if base := os.environ.get("AC_BASE_BRANCH"):
            config.base_branch = base

        if template := os.environ.get("AC_AGENT_BRANCH_TEMPLATE"):
            config.agent_branch_template = template

        if wt_dir := os.environ.get("AC_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if snap := os.environ.get("AC_SNAPSHOT_DIR"):
            config.snapshot_dir = Path(snap)

        if timeout := os.environ.get("AC_GIT_TIMEOUT"):
            config.git_timeout = float(timeout)

        if timeout := os.environ.get("AC_PR_TIMEOUT"):
            config.pr_timeout = float(timeout)

        if attempts := os.environ.get("AC_RETRY_MAX_ATTEMPTS"):
            config.retry_max_attempts = int(attempts)

        if delay := os.environ.get("AC_RETRY_INITIAL_DELAY"):
            config.retry_initial_delay = float(delay)

        if multiplier := os.environ.get("AC_RETRY_MULTIPLIER"):
            config.retry_multiplier = float(multiplier)

        if max_delay := os.environ.get("AC_RETRY_MAX_DELAY"):
            config.retry_max_delay = float(max_delay)

        if rounds := os.environ.get("AC_MAX_REVIEW_ROUNDS"):
            config.max_review_rounds = int(rounds)

        if recipient := os.environ.get("AC_ESCALATION_RECIPIENT"):
            config.escalation_recipient = recipient

        config.git_author_name = os.environ.get("AC_GIT_AUTHOR_NAME")
        config.git_author_email = os.environ.get("AC_GIT_AUTHOR_EMAIL")
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("AC_SLACK_CHANNEL")

        return config

    def agent_branch_for(self, project_id: str) -> str:
        return self.agent_branch_template.format(project_id=project_id)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            multiplier=self.retry_multiplier,
            max_delay=self.retry_max_delay,
        )


def get_config() -> Config:
    return Config.from_env()
