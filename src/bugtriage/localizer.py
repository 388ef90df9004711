"""
Fault Localization

Picks the relevant file and line of an occurrence: the backtrace frame most
likely to be at fault. This is done probabilistically by scoring every blamed
project frame and taking the highest score. The factors are

* the height of the frame in the backtrace (frames nearer the raise score
  higher), and
* the age of the commit that last modified the frame's line, relative to the
  other blamed commits (recent changes score higher).

Frames that cannot be tied to real source (native addresses, obfuscated or
minified code, unknown frame formats) still yield a location, flagged as
special, so that such occurrences group consistently.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from .blame_cache import BlameCache
from .models import Occurrence, Project
from .paths import PathClassifier, PathType
from .vcs import Commit, CommitResolver

logger = logging.getLogger(__name__)

UNKNOWN_FILE = "(unknown)"

# Weights of the squared height term and the recency term
HEIGHT_WEIGHT = 0.5
RECENCY_WEIGHT = 0.5

Frame = Dict[str, Any]


@dataclass(frozen=True)
class Localization:
    """Where an occurrence's fault most probably lies"""

    file: str
    line: int
    blamed_commit: Optional[str] = None
    special: bool = False


@dataclass(frozen=True)
class LocalizationError:
    """Why no location could be computed"""

    reason: str


LocalizationResult = Union[Localization, LocalizationError]


def frame_location(frame: Optional[Frame]) -> Tuple[str, int, bool]:
    """Return (file, line, special) for a backtrace frame of any format."""
    if not frame:
        return UNKNOWN_FILE, 1, True

    kind = frame.get("type")
    if kind is None:
        if not frame.get("file"):
            return UNKNOWN_FILE, 1, True
        return frame["file"], frame.get("line") or 1, False
    if kind == "obfuscated":
        # Line numbers of this format may be negative
        return frame["file"], abs(int(frame["line"])), True
    if kind == "minified":
        return frame["url"], frame.get("line") or 1, True
    if kind == "address":
        return "0x%08X" % int(frame["address"]), 1, True
    return UNKNOWN_FILE, 1, True


def score_frame(
    index: int, size: int, commit_date: datetime, latest_date: datetime, earliest_date: datetime
) -> float:
    """Score the frame at `index` of `size` blamed frames; higher is more likely at fault."""
    height = (size - index) / size
    span = (latest_date - earliest_date).total_seconds()
    if span == 0:
        recency = 0.0
    else:
        recency = 1 - (latest_date - commit_date).total_seconds() / span
    return HEIGHT_WEIGHT * height ** 2 + RECENCY_WEIGHT * recency


class FaultLocalizer:
    """Selects the culprit frame of an occurrence using cached blames."""

    def __init__(self, blame_cache: BlameCache, commit_resolver: CommitResolver):
        self.blame_cache = blame_cache
        self.commit_resolver = commit_resolver

    def localize(
        self,
        db: Session,
        project: Project,
        occurrence: Occurrence,
        reference_commit: Optional[Commit],
    ) -> LocalizationResult:
        """
        Localize the fault of an occurrence.

        Args:
            db: Session blame lookups go through
            project: Reporting project (repository and path filters)
            occurrence: Unsaved occurrence carrying the backtraces
            reference_commit: Commit the occurrence's code was running

        Returns:
            Localization, or LocalizationError when there is no commit to blame against
        """
        if reference_commit is None:
            return LocalizationError("Need a resolvable commit")

        backtrace = occurrence.faulted_backtrace
        classifier = PathClassifier.for_project(project)

        frames = [
            frame
            for frame in backtrace
            if frame.get("type") is None
            and frame.get("line") is not None
            and classifier.classify(frame.get("file")) == PathType.PROJECT
        ]

        if not frames:
            # No project files in the trace; use the top frame, whatever it is
            return self._fallback(backtrace[0] if backtrace else None)

        blamed = self._blame_frames(db, project, reference_commit, frames)
        if not blamed:
            # No frame has a blamed commit; use the top project frame
            return self._fallback(frames[0])

        frame, commit = self._select(blamed, reference_commit)
        file, line, special = frame_location(frame)
        return Localization(file=file, line=line, blamed_commit=commit.sha, special=special)

    def _fallback(self, frame: Optional[Frame]) -> Localization:
        file, line, special = frame_location(frame)
        return Localization(file=file, line=line, blamed_commit=None, special=special)

    def _blame_frames(
        self, db: Session, project: Project, reference_commit: Commit, frames: List[Frame]
    ) -> List[Tuple[Frame, Commit]]:
        blamed = []
        for frame in frames:
            sha = self.blame_cache.lookup(db, project, reference_commit.sha, frame["file"], frame["line"])
            if sha is None:
                continue
            commit = self.commit_resolver.commit(project, sha)
            if commit is None:
                logger.warning(f"[Localizer] Blamed commit {sha} missing from {project.name} repository")
                continue
            blamed.append((frame, commit))
        return blamed

    def _select(self, blamed: List[Tuple[Frame, Commit]], reference_commit: Commit) -> Tuple[Frame, Commit]:
        dates = [commit.committed_at for _, commit in blamed]
        earliest = min(dates)
        latest = max(max(dates), reference_commit.committed_at)

        best = None
        best_score = None
        for index, (frame, commit) in enumerate(blamed):
            score = score_frame(index, len(blamed), commit.committed_at, latest, earliest)
            # Strictly greater: the first maximal frame wins
            if best_score is None or score > best_score:
                best, best_score = (frame, commit), score
        return best
