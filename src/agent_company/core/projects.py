"""Project registry: which repository and branches a project's tickets work against."""

import re
import sqlite3

from agent_company.config import Config
from agent_company.core.errors import ValidationError
from agent_company.db.models import Project, _parse_dt

# A trailing all-digit segment would be read back as a ticket sequence number.
_PROJECT_ID_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_.]*(-[A-Za-z0-9_.]*[A-Za-z_.][A-Za-z0-9_.]*)*$")


def validate_project_id(project_id: str):
    if not project_id or not _PROJECT_ID_RE.match(project_id):
        raise ValidationError(
            f"Invalid project id {project_id!r}: use letters, digits, '_', '.' and '-', "
            "starting with a letter, with no all-digit segment"
        )


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    base_branch: str = "main",
    agent_branch: str | None = None,
    slack_channel: str | None = None,
) -> Project:
    """Register a project. agent_branch may be left to the configured template."""
    validate_project_id(project_id)
    if get_project(db, project_id):
        raise ValidationError(f"Project already exists: {project_id}")
    db.execute(
        """INSERT INTO projects (id, name, repo_path, base_branch, agent_branch, slack_channel)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (project_id, name, repo_path, base_branch, agent_branch, slack_channel),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC, id").fetchall()
    return [_row_to_project(r) for r in rows]


def resolve_project(db: sqlite3.Connection, project_id: str, config: Config) -> Project:
    """The settings tickets of project_id run with.

    Registered values win; anything unregistered comes from config, so a
    project works without `init` as long as AC_REPO_PATH points at its repo.
    """
    project = get_project(db, project_id)
    if project is None:
        return Project(
            id=project_id,
            name=project_id,
            repo_path=str(config.repo_path),
            base_branch=config.base_branch,
            agent_branch=config.agent_branch_for(project_id),
            slack_channel=config.slack_channel,
        )
    if not project.agent_branch:
        project.agent_branch = config.agent_branch_for(project_id)
    if not project.slack_channel:
        project.slack_channel = config.slack_channel
    return project


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        base_branch=row["base_branch"],
        agent_branch=row["agent_branch"],
        slack_channel=row["slack_channel"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )
