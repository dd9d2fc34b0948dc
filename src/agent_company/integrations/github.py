"""GitHub pull request creation through the gh CLI."""

import logging
import re
import subprocess
from pathlib import Path

from agent_company.core.errors import GitHostError
from agent_company.db.models import PRResult

logger = logging.getLogger(__name__)

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


class GitHubCLIHost:
    """Opens pull requests with `gh pr create` in a repository checkout."""

    def __init__(self, repo_path: str | Path, timeout: float | None = 60.0, gh: str = "gh"):
        self.repo_path = Path(repo_path)
        self.timeout = timeout
        self.gh = gh

    def create_pull_request(self, title: str, body: str, base: str, head: str) -> PRResult:
        cmd = [
            self.gh, "pr", "create",
            "--base", base,
            "--head", head,
            "--title", title,
            "--body", body,
        ]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise GitHostError(f"{self.gh} is not installed") from e
        except subprocess.TimeoutExpired as e:
            raise GitHostError(f"gh pr create timed out after {self.timeout}s") from e
        except subprocess.CalledProcessError as e:
            raise GitHostError(f"gh pr create failed: {e.stderr.strip() or e.stdout.strip()}") from e

        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        match = _PR_NUMBER_RE.search(url)
        if not match:
            raise GitHostError(f"Could not parse pull request URL from gh output: {result.stdout!r}")
        logger.info("Opened pull request %s", url)
        return PRResult(url=url, number=int(match.group(1)))
