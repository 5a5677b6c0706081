"""
Read-only inspection of the project's git worktrees.

The inspector answers three questions about on-disk git state:
which worktrees exist, which branches are merged into the base branch,
and which commits a worktree's branch carries on top of the base branch.
It holds no state between calls and never modifies the repository.
"""

import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from streamdash.core.db.models import to_utc_iso

logger = logging.getLogger(__name__)

MAIN_WORKTREE_ID = "main"

# Branches never reported as merged work
PROTECTED_BRANCHES = frozenset({"main", "master"})

RECORD_SEP = "\x1e"
FIELD_SEP = "\x1f"
LOG_FORMAT = "%x1e%H%x1f%an%x1f%aI%x1f%s"

NUMSTAT_LINE = re.compile(r"^(\d+|-)\t(\d+|-)\t")


class InspectionError(Exception):
    """Raised when git state cannot be read for a repository or worktree."""

    def __init__(self, message: str, path: Path | str | None = None):
        super().__init__(message)
        self.path = str(path) if path is not None else None


@dataclass
class WorktreeRecord:
    """
    A git worktree as observed on disk.

    Attributes:
        id: Directory name of the worktree ("main" for the main worktree)
        path: Absolute, symlink-resolved path
        branch: Short branch name
        commit_hash: Commit checked out in the worktree
        is_main: Whether this is the repository's main worktree
    """

    id: str
    path: str
    branch: str
    commit_hash: str = ""
    is_main: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CommitRecord:
    """A commit read from a worktree's log."""

    commit_hash: str
    author: str
    timestamp: str
    message: str
    files_changed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_path(path: Path | str) -> str:
    """Absolute, symlink-resolved form of a path used for comparisons."""
    return os.path.realpath(os.path.expanduser(str(path)))


def short_branch(ref: str) -> str:
    """Strip the refs/heads/ prefix from a branch ref."""
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/") :]
    return ref


def parse_worktree_porcelain(output: str) -> list[dict[str, str | bool]]:
    """
    Parse `git worktree list --porcelain` output into raw entries.

    Each entry has "path" and, when present, "commit", "branch",
    "is_bare", "is_detached" and "is_locked".
    """
    entries: list[dict[str, str | bool]] = []
    current: dict[str, str | bool] = {}

    for line in output.splitlines():
        line = line.strip()
        if not line:
            # Empty line ends a worktree entry
            if current:
                entries.append(current)
                current = {}
            continue

        if line.startswith("worktree "):
            current["path"] = line[len("worktree ") :]
        elif line.startswith("HEAD "):
            current["commit"] = line[len("HEAD ") :]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch ") :]
        elif line == "bare":
            current["is_bare"] = True
        elif line == "detached":
            current["is_detached"] = True
        elif line.startswith("locked"):
            current["is_locked"] = True

    if current:
        entries.append(current)

    return entries


def parse_commit_log(output: str) -> list[CommitRecord]:
    """
    Parse `git log --pretty=format:LOG_FORMAT --numstat` output.

    Every numstat line (including binary files, reported as "-\\t-")
    counts as one changed file of the commit it follows.
    """
    commits: list[CommitRecord] = []

    for chunk in output.split(RECORD_SEP):
        if not chunk.strip():
            continue
        header, _, rest = chunk.partition("\n")
        fields = header.split(FIELD_SEP)
        if len(fields) < 4 or not fields[0].strip():
            logger.debug("Skipping malformed log record: %r", header)
            continue

        commit_hash, author, date, message = (field.strip() for field in fields[:4])
        try:
            timestamp = to_utc_iso(date)
        except ValueError:
            logger.debug("Unparseable commit date %r for %s", date, commit_hash)
            continue

        files_changed = sum(1 for line in rest.splitlines() if NUMSTAT_LINE.match(line))
        commits.append(
            CommitRecord(
                commit_hash=commit_hash,
                author=author,
                timestamp=timestamp,
                message=message,
                files_changed=files_changed,
            )
        )

    return commits


class WorktreeInspector:
    """
    Lists worktrees, merged branches and per-worktree commit logs.

    Every git invocation carries `kill_after_timeout`, so a hung git
    process for one worktree cannot stall a whole scan pass.

    Example:
        >>> inspector = WorktreeInspector(Path("/work/app"))
        >>> for worktree in inspector.list_worktrees().values():
        ...     print(worktree.id, worktree.branch)
        >>> inspector.merged_branches()
        {'feature/login'}
    """

    def __init__(
        self,
        project_root: Path,
        base_branch: str = "main",
        timeout: float = 10.0,
        max_commits: int = 50,
    ):
        self.project_root = Path(project_root)
        self.base_branch = base_branch
        self.timeout = timeout
        self.max_commits = max_commits

    def _open(self, path: Path | str) -> Repo:
        try:
            return Repo(str(path))
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise InspectionError(f"Not a git repository: {path}", path) from e

    def list_worktrees(self) -> dict[str, WorktreeRecord]:
        """
        List the repository's worktrees keyed by worktree id.

        The first porcelain entry is the main worktree and gets the id
        "main"; other worktrees are keyed by their directory name. Bare
        and detached-HEAD entries are skipped.

        Raises:
            InspectionError: If the worktree list cannot be read
        """
        repo = self._open(self.project_root)
        try:
            output = repo.git.worktree("list", "--porcelain", kill_after_timeout=self.timeout)
        except GitCommandError as e:
            raise InspectionError(
                f"Failed to list worktrees: {e.stderr or e}", self.project_root
            ) from e

        worktrees: dict[str, WorktreeRecord] = {}
        for index, entry in enumerate(parse_worktree_porcelain(output)):
            if entry.get("is_bare") or entry.get("is_detached") or "branch" not in entry:
                continue
            path = normalize_path(str(entry.get("path", "")))
            is_main = index == 0
            worktree_id = MAIN_WORKTREE_ID if is_main else os.path.basename(path)
            if worktree_id in worktrees:
                logger.warning(
                    "Worktree id %s is ambiguous; keeping %s, ignoring %s",
                    worktree_id,
                    worktrees[worktree_id].path,
                    path,
                )
                continue
            worktrees[worktree_id] = WorktreeRecord(
                id=worktree_id,
                path=path,
                branch=short_branch(str(entry["branch"])),
                commit_hash=str(entry.get("commit", "")),
                is_main=is_main,
            )

        return worktrees

    def merged_branches(self) -> set[str]:
        """
        Branches fully merged into the base branch.

        The base branch itself, main and master are never included.

        Raises:
            InspectionError: If the branch list cannot be read
        """
        repo = self._open(self.project_root)
        try:
            output = repo.git.branch("--merged", self.base_branch, kill_after_timeout=self.timeout)
        except GitCommandError as e:
            raise InspectionError(
                f"Failed to list merged branches: {e.stderr or e}", self.project_root
            ) from e

        merged: set[str] = set()
        for line in output.splitlines():
            # "* " marks the current branch, "+ " a branch checked out elsewhere
            name = line.strip().lstrip("*+ ").strip()
            if not name or name.startswith("("):
                continue
            merged.add(name)

        return merged - PROTECTED_BRANCHES - {self.base_branch}

    def commits_since(
        self, worktree_path: Path | str, since: str | None = None
    ) -> list[CommitRecord]:
        """
        Commits on the worktree's branch that are not on the base branch.

        Args:
            worktree_path: Worktree to read
            since: Only commits after this date (any format git accepts)

        Returns:
            Up to max_commits records, newest first

        Raises:
            InspectionError: If the worktree is missing or git fails
        """
        path = Path(worktree_path)
        if not path.is_dir():
            raise InspectionError(f"Worktree not found: {path}", path)

        repo = self._open(path)
        args = [
            f"{self.base_branch}..HEAD",
            f"--pretty=format:{LOG_FORMAT}",
            "--numstat",
            "-n",
            str(self.max_commits),
        ]
        if since:
            args.append(f"--since={since}")

        try:
            output = repo.git.log(*args, kill_after_timeout=self.timeout)
        except GitCommandError as e:
            raise InspectionError(f"Failed to read log of {path}: {e.stderr or e}", path) from e

        return parse_commit_log(output)
