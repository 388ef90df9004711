"""
VCS Collaborator Interfaces

The triage core never reads Git objects itself. It talks to two protocols:

- BlameProvider: which commit last touched a file and line at a revision
- CommitResolver: turn refs into full SHAs, look up commit dates, page history

LocalGitRepository implements both by shelling out to the git CLI against a
mirror clone per repository, kept under `settings.repositories_dir`.
"""

import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Protocol

from .exceptions import BlameUnavailableError, RepositoryError, UnknownRevisionError

if TYPE_CHECKING:
    from .models import Project

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Commit:
    """The parts of a commit fault localization needs"""

    sha: str
    committed_at: datetime


class BlameProvider(Protocol):
    """Protocol for line-history lookups."""

    def blame(self, project: "Project", revision: str, file: str, line: int) -> Optional[str]:
        """
        Find the commit that last modified a line.

        Args:
            project: Project whose repository is blamed
            revision: Full SHA the blame runs at
            file: Repository-relative path
            line: 1-based line number

        Returns:
            SHA of the blamed commit, or None when history has no answer

        Raises:
            BlameUnavailableError: VCS access failed
        """
        ...


class CommitResolver(Protocol):
    """Protocol for commit lookups."""

    def resolve(self, project: "Project", revision: str) -> str:
        """Resolve a ref-ish to a full SHA, fetching once on a miss.

        Raises:
            UnknownRevisionError: the ref is unknown even after fetching
        """
        ...

    def commit(self, project: "Project", sha: str) -> Optional[Commit]:
        """Return the commit for a full SHA, or None if the repository lacks it or cannot be read."""
        ...

    def history(self, project: "Project", revision: str, limit: int, offset: int = 0) -> List[str]:
        """Return SHAs reachable from `revision`, newest first, one page at a time."""
        ...


class LocalGitRepository:
    """
    Git CLI implementation of BlameProvider and CommitResolver.

    Each project's repository is mirrored into `<repositories_dir>/<repository_hash>`
    on first use and fetched again whenever a requested revision is missing.
    """

    def __init__(self, repositories_dir: str, timeout: float = 30.0):
        """
        Initialize repository access.

        Args:
            repositories_dir: Directory holding one mirror clone per repository
            timeout: Seconds before a git invocation is abandoned
        """
        self.repositories_dir = Path(repositories_dir)
        self.timeout = timeout

    def _run_git(self, args: List[str], cwd: Optional[Path] = None, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git"] + args
        return subprocess.run(
            cmd, cwd=cwd, check=check, capture_output=True, text=True, timeout=self.timeout
        )

    def repository_path(self, project: "Project") -> Path:
        """Return the mirror clone for a project, cloning it if needed."""
        path = self.repositories_dir / project.repository_hash
        if not path.exists():
            self.repositories_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"[Git] Cloning {project.repository_url} into {path}")
            try:
                self._run_git(["clone", "--mirror", project.repository_url, str(path)])
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                raise RepositoryError(f"git clone of {project.repository_url} failed: {e}") from e
        return path

    def fetch(self, project: "Project") -> None:
        try:
            self._run_git(["fetch", "--prune", "origin"], cwd=self.repository_path(project))
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise RepositoryError(f"git fetch for {project.name} failed: {e}") from e

    def blame(self, project: "Project", revision: str, file: str, line: int) -> Optional[str]:
        """Blame a single line, following moves within and across files."""
        args = ["blame", "--porcelain", "-M", "-C", "-L", f"{line},{line}", revision, "--", file]
        try:
            result = self._run_git(args, cwd=self.repository_path(project))
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, RepositoryError) as e:
            raise BlameUnavailableError(f"git blame {file}:{line} at {revision} failed: {e}") from e

        header = result.stdout.split("\n", 1)[0].split()
        if not header or len(header[0]) != 40:
            return None
        return header[0]

    def resolve(self, project: "Project", revision: str) -> str:
        path = self.repository_path(project)
        sha = self._rev_parse(path, revision)
        if sha is None:
            logger.info(f"[Git] Unknown revision {revision} for {project.name}; fetching")
            self.fetch(project)
            sha = self._rev_parse(path, revision)
        if sha is None:
            raise UnknownRevisionError(revision)
        return sha

    def commit(self, project: "Project", sha: str) -> Optional[Commit]:
        try:
            result = self._run_git(
                ["show", "-s", "--format=%H %ct", sha], cwd=self.repository_path(project), check=False
            )
        except (subprocess.TimeoutExpired, OSError, RepositoryError) as e:
            logger.warning(f"[Git] Couldn't read commit {sha} of {project.name}: {e}")
            return None
        if result.returncode != 0:
            return None
        full_sha, timestamp = result.stdout.split()
        return Commit(sha=full_sha, committed_at=datetime.fromtimestamp(int(timestamp), tz=timezone.utc))

    def history(self, project: "Project", revision: str, limit: int, offset: int = 0) -> List[str]:
        try:
            result = self._run_git(
                ["rev-list", f"--skip={offset}", f"--max-count={limit}", revision],
                cwd=self.repository_path(project),
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise RepositoryError(f"git rev-list {revision} failed: {e}") from e
        return result.stdout.split()

    def _rev_parse(self, path: Path, revision: str) -> Optional[str]:
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}"], cwd=path, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()
