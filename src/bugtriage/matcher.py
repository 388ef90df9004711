"""
Bug Matching

Files an occurrence's search criteria under a Bug, creating one when nothing
matches.

Hosted projects (one running version per environment) match any Bug in the
environment with the same criteria, fixed or not; the lifecycle decides later
whether a fixed one reopens.

Distributed projects (clients report a build, several builds run at once)
look for, in order:

* a Bug with the criteria under the occurrence's exact deploy,
* an open Bug with the criteria under any deploy, which moves to the
  occurrence's deploy,
* a new Bug under the occurrence's deploy.

A Bug fixed under another deploy is never reused.

Creation goes through `insert_or_fetch`, guarded by the one-open-bug-per-key
unique index, so concurrent reports of a new bug converge on one row.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .database import insert_or_fetch
from .exceptions import DuplicateChainError
from .models import Bug, Deploy, Environment, Event, EventKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchCriteria:
    """The normalized fault signature bugs are matched on"""

    class_name: str
    file: str
    line: int
    blamed_revision: Optional[str] = None
    # Only set by strategies that also match on the filtered message
    message_template: Optional[str] = None
    # Location does not point at real source; not part of the match
    special: bool = False

    @property
    def key(self) -> str:
        """Digest identifying the criteria; backs the open-bug uniqueness index."""
        parts = [self.class_name, self.file, str(self.line), self.blamed_revision or ""]
        if self.message_template is not None:
            parts.append(self.message_template)
        return hashlib.sha256("\0".join(parts).encode("utf-8")).hexdigest()

    def conditions(self) -> list:
        conditions = [
            Bug.class_name == self.class_name,
            Bug.file == self.file,
            Bug.line == self.line,
            Bug.criteria_key == self.key,
        ]
        if self.blamed_revision is None:
            conditions.append(Bug.blamed_revision.is_(None))
        else:
            conditions.append(Bug.blamed_revision == self.blamed_revision)
        if self.message_template is not None:
            conditions.append(Bug.message_template == self.message_template)
        return conditions


def resolve_duplicate(db: Session, bug: Bug) -> Bug:
    """Follow a bug's duplicate-of chain to its terminal bug.

    Raises:
        DuplicateChainError: the chain loops or points at a missing bug
    """
    visited = set()
    current = bug
    while current.duplicate_of_id is not None:
        visited.add(current.id)
        if current.duplicate_of_id in visited:
            logger.error(f"[Matcher] Duplicate chain of bug {bug.id} loops at bug {current.duplicate_of_id}")
            raise DuplicateChainError(f"Duplicate chain of bug {bug.id} loops at bug {current.duplicate_of_id}")
        target = db.get(Bug, current.duplicate_of_id)
        if target is None:
            logger.error(f"[Matcher] Bug {current.id} is a duplicate of missing bug {current.duplicate_of_id}")
            raise DuplicateChainError(f"Bug {current.id} is a duplicate of missing bug {current.duplicate_of_id}")
        current = target
    return current


class BugMatcher:
    """Finds or creates the Bug an occurrence belongs to."""

    def find_or_create_bug(
        self,
        db: Session,
        criteria: SearchCriteria,
        environment: Environment,
        deploy: Optional[Deploy] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Bug:
        """
        Match criteria to a Bug, creating one if nothing matches.

        Args:
            db: Session the lookup and insert run in
            criteria: Search criteria from the project's strategy
            environment: Environment the occurrence was reported from
            deploy: Deploy of a distributed project's occurrence, None for hosted
            attributes: Column values for a newly created Bug (message template,
                revision, client)

        Returns:
            The terminal (non-duplicate) Bug
        """
        attributes = attributes or {}
        if deploy is None:
            bug = self._find_or_create_hosted(db, criteria, environment, attributes)
        else:
            bug = self._find_or_create_distributed(db, criteria, environment, deploy, attributes)

        if bug.duplicate:
            bug = resolve_duplicate(db, bug)
        return bug

    def _find_or_create_hosted(
        self, db: Session, criteria: SearchCriteria, environment: Environment, attributes: Dict[str, Any]
    ) -> Bug:
        def fetch():
            return (
                db.query(Bug)
                .filter(Bug.environment_id == environment.id, *criteria.conditions())
                .order_by(Bug.fixed.asc(), Bug.id.desc())
                .first()
            )

        bug, created = insert_or_fetch(db, fetch, lambda: self._build(criteria, environment, None, attributes))
        if created:
            logger.info(f"[Matcher] Opened bug {bug.id}: {criteria.class_name} at {criteria.file}:{criteria.line}")
        return bug

    def _find_or_create_distributed(
        self,
        db: Session,
        criteria: SearchCriteria,
        environment: Environment,
        deploy: Deploy,
        attributes: Dict[str, Any],
    ) -> Bug:
        exact = (
            db.query(Bug)
            .filter(Bug.environment_id == environment.id, Bug.deploy_id == deploy.id, *criteria.conditions())
            .order_by(Bug.id.desc())
            .first()
        )
        if exact is not None:
            return exact

        def fetch_open():
            return (
                db.query(Bug)
                .filter(Bug.environment_id == environment.id, Bug.fixed.is_(False), *criteria.conditions())
                .first()
            )

        bug, created = insert_or_fetch(db, fetch_open, lambda: self._build(criteria, environment, deploy, attributes))
        if created:
            logger.info(
                f"[Matcher] Opened bug {bug.id} under deploy {deploy.id}: "
                f"{criteria.class_name} at {criteria.file}:{criteria.line}"
            )
        elif bug.deploy_id != deploy.id:
            logger.info(f"[Matcher] Moving open bug {bug.id} from deploy {bug.deploy_id} to {deploy.id}")
            bug.deploy_id = deploy.id
        return bug

    def _build(
        self, criteria: SearchCriteria, environment: Environment, deploy: Optional[Deploy], attributes: Dict[str, Any]
    ) -> Bug:
        values = dict(attributes)
        if criteria.message_template is not None:
            values["message_template"] = criteria.message_template
        bug = Bug(
            environment_id=environment.id,
            deploy_id=deploy.id if deploy is not None else None,
            class_name=criteria.class_name,
            file=criteria.file,
            line=criteria.line,
            blamed_revision=criteria.blamed_revision,
            criteria_key=criteria.key,
            fixed=False,
            fix_deployed=False,
            special_file=criteria.special,
            irrelevant=False,
            occurrences_count=0,
            **values,
        )
        bug.events.append(Event(kind=EventKind.OPEN.value, data={}))
        return bug
