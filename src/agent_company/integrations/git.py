"""Git subprocess wrappers for branch, worktree, commit and merge operations."""

import subprocess
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 120.0


class GitError(Exception):
    """Raised when a git command fails."""


class GitTimeoutError(GitError):
    """Raised when a git command does not finish within its timeout."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    identity: tuple[str, str] | None = None,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure.

    identity, when given, is a (name, email) pair applied to this command only.
    """
    cmd = ["git"]
    if identity:
        cmd += ["-c", f"user.name={identity[0]}", "-c", f"user.email={identity[1]}"]
    cmd += args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.TimeoutExpired as e:
        raise GitTimeoutError(f"git {' '.join(args)} timed out after {timeout}s") from e
    except subprocess.CalledProcessError as e:
        detail = e.stderr.strip() or e.stdout.strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path, timeout=timeout)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n") + [""]:
        if not line:
            if current:
                worktrees.append(
                    WorktreeInfo(
                        path=current.get("worktree", ""),
                        branch=current.get("branch", "").replace("refs/heads/", ""),
                        head=current.get("HEAD", ""),
                        is_bare=current.get("bare", False),
                    )
                )
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    return worktrees


def find_worktree(repo_path: str | Path, branch: str) -> WorktreeInfo | None:
    """Return the worktree that has branch checked out, if any."""
    for wt in worktree_list(repo_path):
        if wt.branch == branch:
            return wt
    return None


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(
    repo_path: str | Path, branch: str, start_point: str, timeout: float | None = DEFAULT_TIMEOUT
) -> str:
    """Create a branch at start_point without checking it out."""
    return run_git(["branch", branch, start_point], cwd=repo_path, timeout=timeout)


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--short"], cwd=cwd)


def rev_parse(cwd: str | Path, ref: str = "HEAD") -> str:
    return run_git(["rev-parse", ref], cwd=cwd)


def commit_all(
    cwd: str | Path,
    message: str,
    identity: tuple[str, str] | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Stage every change in the working directory, commit, and return the hash."""
    run_git(["add", "-A"], cwd=cwd, timeout=timeout)
    run_git(["commit", "-m", message], cwd=cwd, timeout=timeout, identity=identity)
    return rev_parse(cwd)


def merge_no_ff(
    cwd: str | Path,
    branch: str,
    message: str,
    identity: tuple[str, str] | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Merge branch into the branch checked out at cwd, always creating a merge commit."""
    return run_git(
        ["merge", "--no-ff", "-m", message, branch],
        cwd=cwd,
        timeout=timeout,
        identity=identity,
    )


def conflicted_files(cwd: str | Path) -> list[str]:
    """Files left unmerged by an interrupted merge."""
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.split("\n") if line]


def merge_in_progress(cwd: str | Path) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", "MERGE_HEAD"], cwd=cwd)
        return True
    except GitError:
        return False


def merge_abort(cwd: str | Path) -> str:
    return run_git(["merge", "--abort"], cwd=cwd)


def log_grep(repo_path: str | Path, pattern: str) -> list[str]:
    """Hashes of commits on any branch whose message matches pattern."""
    output = run_git(
        ["log", "--all", "--fixed-strings", f"--grep={pattern}", "--format=%H"],
        cwd=repo_path,
    )
    return [line for line in output.split("\n") if line]


def commit_message(repo_path: str | Path, ref: str) -> str:
    return run_git(["show", "-s", "--format=%B", ref], cwd=repo_path)


def push(
    repo_path: str | Path,
    branch: str,
    remote: str = "origin",
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    return run_git(["push", "-u", remote, branch], cwd=repo_path, timeout=timeout)


def has_remote(repo_path: str | Path, remote: str = "origin") -> bool:
    remotes = run_git(["remote"], cwd=repo_path)
    return remote in remotes.split("\n")
