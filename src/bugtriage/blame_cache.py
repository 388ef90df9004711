"""
Write-Through Blame Cache

Blames are expensive (a git subprocess per frame), so results are kept in the
`blames` table keyed by (repository hash, revision, file, line). The table is
bounded: once it holds `max_entries` rows, the least recently touched rows are
evicted before a new one goes in.

Negative results are never cached, so a frame that could not be blamed is
retried on the next occurrence (the repository may have been fetched since).

The cache keeps no state of its own besides its collaborators. Every read and
write goes through the caller's session; eviction and insert share one
SAVEPOINT so a concurrent writer observes either both or neither.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .database import insert_or_fetch
from .exceptions import BlameUnavailableError
from .models import Blame, Project, utcnow
from .vcs import BlameProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 500_000


class BlameCache:
    """Bounded LRU cache of blame results backed by persistent storage.

    Example:
        cache = BlameCache(LocalGitRepository(settings.repositories_dir))
        sha = cache.lookup(db, project, revision, "lib/foo.rb", 12)
    """

    def __init__(
        self,
        provider: BlameProvider,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the cache.

        Args:
            provider: Blame provider consulted on a miss
            max_entries: Capacity of the blames table
            clock: Source of last-touched timestamps
        """
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.provider = provider
        self.max_entries = max_entries
        self.clock = clock

    def lookup(self, db: Session, project: Project, revision: str, file: str, line: int) -> Optional[str]:
        """
        Return the blamed commit for a line, consulting the provider on a miss.

        Args:
            db: Session the lookup reads and writes through
            project: Project whose repository is blamed
            revision: Full SHA to blame at
            file: Repository-relative path
            line: 1-based line number

        Returns:
            SHA of the blamed commit, or None if blame could not be determined
        """
        cached = self._cached_blame(db, project, revision, file, line)
        if cached is not None:
            return cached

        blamed = self._provider_blame(project, revision, file, line)
        if blamed is None:
            return None

        self._write_blame(db, project, revision, file, line, blamed)
        return blamed

    def count(self, db: Session) -> int:
        return db.query(func.count(Blame.id)).scalar()

    def _find(self, db: Session, project: Project, revision: str, file: str, line: int) -> Optional[Blame]:
        return (
            db.query(Blame)
            .filter(
                Blame.repository_hash == project.repository_hash,
                Blame.revision == revision,
                Blame.file == file,
                Blame.line == line,
            )
            .first()
        )

    def _cached_blame(self, db: Session, project: Project, revision: str, file: str, line: int) -> Optional[str]:
        entry = self._find(db, project, revision, file, line)
        if entry is None:
            return None
        entry.updated_at = self.clock()
        # The touch must reach storage before any eviction in this transaction
        # orders rows by updated_at.
        db.flush()
        return entry.blamed_revision

    def _provider_blame(self, project: Project, revision: str, file: str, line: int) -> Optional[str]:
        try:
            return self.provider.blame(project, revision, file, line)
        except BlameUnavailableError as e:
            logger.error(f"[Blamer] Couldn't blame {project.name}:{revision} {file}:{line}: {e}")
            return None

    def _write_blame(self, db: Session, project: Project, revision: str, file: str, line: int, blamed: str) -> None:
        now = self.clock()
        with db.begin_nested():
            self._purge_if_necessary(db)
            entry, created = insert_or_fetch(
                db,
                lambda: self._find(db, project, revision, file, line),
                lambda: Blame(
                    repository_hash=project.repository_hash,
                    revision=revision,
                    file=file,
                    line=line,
                    blamed_revision=blamed,
                    created_at=now,
                    updated_at=now,
                ),
            )
            if not created:
                entry.blamed_revision = blamed
                entry.updated_at = now

    def _purge_if_necessary(self, db: Session) -> None:
        count = self.count(db)
        if count < self.max_entries:
            return

        excess = count + 1 - self.max_entries
        oldest = select(Blame.id).order_by(Blame.updated_at.asc(), Blame.id.asc()).limit(excess)
        deleted = (
            db.query(Blame)
            .filter(Blame.id.in_(oldest))
            .delete(synchronize_session="fetch")
        )
        logger.debug(f"[Blamer] Evicted {deleted} cached blame(s) at capacity {self.max_entries}")
