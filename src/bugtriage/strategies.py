"""
Bug Matching Strategies

A project's `blamer_type` selects how its occurrences are turned into search
criteria:

* recency: fault localization with blame, matching on class, file, line and
  the blamed commit.
* simple: no VCS access; every distinct faulted backtrace is its own bug.
* message: fault localization without the blamed commit, plus the filtered
  message template. For projects whose errors share a location but differ by
  message (e.g. a generic error handler).
"""

import hashlib
import json
import logging
from typing import Dict, Optional, Union

from sqlalchemy.orm import Session

from .localizer import FaultLocalizer, Localization, LocalizationError
from .matcher import SearchCriteria
from .models import BlamerType, Occurrence, Project
from .vcs import Commit, CommitResolver

logger = logging.getLogger(__name__)

SIMPLE_FILE_PREFIX = "[S] "

CriteriaResult = Union[SearchCriteria, LocalizationError]


class MatchingStrategy:
    """Base class for strategies placing occurrences into bugs."""

    blamer_type: BlamerType

    def resolve_revision(self, project: Project, revision: str) -> str:
        """Return the revision occurrences are stored and localized under."""
        raise NotImplementedError

    def reference_commit(self, project: Project, sha: str) -> Optional[Commit]:
        """Return the commit localization runs against, None when the strategy needs none."""
        return None

    def compute_search_criteria(
        self,
        db: Session,
        project: Project,
        class_name: str,
        occurrence: Occurrence,
        reference_commit: Optional[Commit],
        message_template: str,
    ) -> CriteriaResult:
        raise NotImplementedError


class RecencyStrategy(MatchingStrategy):
    """Matches on the localized frame and the commit blamed for it."""

    blamer_type = BlamerType.RECENCY

    def __init__(self, localizer: FaultLocalizer, commit_resolver: CommitResolver):
        self.localizer = localizer
        self.commit_resolver = commit_resolver

    def resolve_revision(self, project: Project, revision: str) -> str:
        return self.commit_resolver.resolve(project, revision)

    def reference_commit(self, project: Project, sha: str) -> Optional[Commit]:
        commit = self.commit_resolver.commit(project, sha)
        if commit is None:
            logger.warning(f"[Strategy] Commit {sha} not found in {project.name} repository")
        return commit

    def compute_search_criteria(self, db, project, class_name, occurrence, reference_commit, message_template):
        result = self.localizer.localize(db, project, occurrence, reference_commit)
        if isinstance(result, LocalizationError):
            return result
        return self._criteria(class_name, result, message_template)

    def _criteria(self, class_name: str, location: Localization, message_template: str) -> SearchCriteria:
        return SearchCriteria(
            class_name=class_name,
            file=location.file,
            line=location.line,
            blamed_revision=location.blamed_commit,
            special=location.special,
        )


class MessageStrategy(RecencyStrategy):
    """Matches on the localized frame and the filtered message, ignoring blame."""

    blamer_type = BlamerType.MESSAGE

    def _criteria(self, class_name: str, location: Localization, message_template: str) -> SearchCriteria:
        return SearchCriteria(
            class_name=class_name,
            file=location.file,
            line=location.line,
            message_template=message_template,
            special=location.special,
        )


class SimpleStrategy(MatchingStrategy):
    """Matches on a digest of the whole faulted backtrace."""

    blamer_type = BlamerType.SIMPLE

    def resolve_revision(self, project: Project, revision: str) -> str:
        return revision

    def compute_search_criteria(self, db, project, class_name, occurrence, reference_commit, message_template):
        encoded = json.dumps(occurrence.faulted_backtrace, sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
        return SearchCriteria(class_name=class_name, file=SIMPLE_FILE_PREFIX + digest, line=1, special=True)


def build_strategies(localizer: FaultLocalizer, commit_resolver: CommitResolver) -> Dict[BlamerType, MatchingStrategy]:
    """Build one strategy instance per blamer type."""
    return {
        BlamerType.RECENCY: RecencyStrategy(localizer, commit_resolver),
        BlamerType.SIMPLE: SimpleStrategy(),
        BlamerType.MESSAGE: MessageStrategy(localizer, commit_resolver),
    }


def strategy_for(project: Project, strategies: Dict[BlamerType, MatchingStrategy]) -> MatchingStrategy:
    """Return the strategy a project is configured for, defaulting to recency."""
    try:
        blamer_type = BlamerType(project.blamer_type)
    except ValueError:
        logger.warning(f"[Strategy] Unknown blamer type {project.blamer_type!r} for {project.name}; using recency")
        blamer_type = BlamerType.RECENCY
    return strategies[blamer_type]
