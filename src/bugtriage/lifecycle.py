"""
Bug Lifecycle

    Open --fix--> Fixed --deploy--> FixDeployed
      ^             |                   |
      +---reopen----+-------------------+

A Bug reopens when it recurs after its fix shipped: either the fix was
marked deployed and the occurrence runs on the latest deploy (or on a
revision never deployed at all), or the fix was never marked deployed and is
older than the staleness window. Bugs of distributed projects are never
reopened; a recurrence there files under a new Bug for the new deploy.

Every transition leaves an Event row for notification observers.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .exceptions import DuplicateChainError, RepositoryError
from .models import Bug, Deploy, Event, EventKind, Occurrence, as_utc, utcnow
from .vcs import CommitResolver

logger = logging.getLogger(__name__)

DEFAULT_STALE_FIX_DAYS = 10
DEFAULT_COMMIT_PAGE_SIZE = 50


class BugLifecycle:
    """Applies lifecycle transitions to bugs."""

    def __init__(
        self,
        stale_after: timedelta = timedelta(days=DEFAULT_STALE_FIX_DAYS),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stale_after = stale_after
        self.clock = clock

    def reopen_if_necessary(
        self, db: Session, bug: Bug, occurrence: Occurrence, now: Optional[datetime] = None
    ) -> bool:
        """
        Reopen a bug if the new occurrence shows its fix did not hold.

        Call only after the bug and occurrence are persisted and linked, so the
        reopen event can reference the occurrence.

        Args:
            db: Session to read deploys and write the event in
            bug: Bug the occurrence was filed under
            occurrence: The triggering occurrence
            now: Reference time for the staleness check, defaults to the clock

        Returns:
            Whether the bug was reopened
        """
        if bug.deploy_id is not None:
            return False

        deploys = db.query(Deploy).filter(Deploy.environment_id == bug.environment_id)
        newest_first = (Deploy.deployed_at.desc(), Deploy.id.desc())
        occurrence_deploy = deploys.filter(Deploy.revision == occurrence.revision).order_by(*newest_first).first()
        latest_deploy = deploys.order_by(*newest_first).first()

        if bug.fix_deployed and (occurrence_deploy is None or occurrence_deploy.id == latest_deploy.id):
            # Fixed and deployed, yet seen on the latest deploy (or without any
            # deploy information)
            self.reopen(bug, occurrence)
            return True

        if bug.fixed and not bug.fix_deployed and bug.fixed_at is not None:
            now = as_utc(now) if now is not None else self.clock()
            if as_utc(bug.fixed_at) < now - self.stale_after:
                self.reopen(bug, occurrence)
                return True

        return False

    def reopen(self, bug: Bug, cause: Optional[Occurrence] = None) -> None:
        was_fixed = bug.fixed
        bug.fixed = False
        bug.fix_deployed = False

        if was_fixed and not bug.irrelevant:
            data = {"from": "fixed"}
            if cause is not None:
                data["occurrence_id"] = cause.id
            bug.events.append(Event(kind=EventKind.REOPEN.value, data=data))
            logger.info(f"[Lifecycle] Reopened bug {bug.id}" + (f" on occurrence {cause.id}" if cause else ""))

    def mark_fixed(
        self, bug: Bug, resolution_revision: Optional[str] = None, now: Optional[datetime] = None
    ) -> None:
        if not bug.fixed:
            bug.fixed = True
            bug.fixed_at = now or self.clock()
        if resolution_revision is not None:
            bug.resolution_revision = resolution_revision

    def mark_fix_deployed(
        self,
        db: Session,
        deploy: Deploy,
        commit_resolver: CommitResolver,
        page_size: int = DEFAULT_COMMIT_PAGE_SIZE,
    ) -> int:
        """
        Mark fixed bugs whose resolution commit shipped with a deploy.

        Walks the deploy revision's history a page at a time. Repository errors
        (typically a deploy revision lost to a force-push) abort the walk; bugs
        marked up to that point stay marked.

        Returns:
            Number of bugs marked fix-deployed
        """
        project = deploy.environment.project
        marked = 0
        offset = 0
        try:
            while True:
                shas = commit_resolver.history(project, deploy.revision, page_size, offset)
                if not shas:
                    break
                bugs = (
                    db.query(Bug)
                    .filter(
                        Bug.environment_id == deploy.environment_id,
                        Bug.resolution_revision.in_(shas),
                        Bug.fixed.is_(True),
                        Bug.fix_deployed.is_(False),
                    )
                    .all()
                )
                for bug in bugs:
                    bug.fix_deployed = True
                    bug.fixing_deploy_id = deploy.id
                    bug.events.append(
                        Event(kind=EventKind.DEPLOY.value, data={"deploy_id": deploy.id, "revision": deploy.revision})
                    )
                    marked += 1
                if len(shas) < page_size:
                    break
                offset += page_size
        except RepositoryError as e:
            logger.warning(f"[Lifecycle] Stopped marking fixes for deploy {deploy.id}: {e}")

        if marked:
            logger.info(f"[Lifecycle] Deploy {deploy.id} shipped fixes for {marked} bug(s)")
        return marked

    def mark_as_duplicate(self, db: Session, bug: Bug, target: Bug) -> int:
        """
        Mark `bug` as a duplicate of `target` and move its occurrences over.

        Raises:
            DuplicateChainError: the marking would create a chain or cross environments

        Returns:
            Number of occurrences moved
        """
        if bug.id == target.id:
            raise DuplicateChainError(f"Bug {bug.id} cannot be a duplicate of itself")
        if bug.duplicate:
            raise DuplicateChainError(f"Bug {bug.id} is already a duplicate of bug {bug.duplicate_of_id}")
        if target.duplicate:
            raise DuplicateChainError(f"Bug {target.id} is itself a duplicate")
        if target.environment_id != bug.environment_id:
            raise DuplicateChainError(f"Bug {target.id} belongs to another environment")
        if db.query(Bug.id).filter(Bug.duplicate_of_id == bug.id).first() is not None:
            raise DuplicateChainError(f"Bug {bug.id} has duplicates of its own")

        bug.duplicate_of_id = target.id
        moved = (
            db.query(Occurrence)
            .filter(Occurrence.bug_id == bug.id)
            .update({Occurrence.bug_id: target.id, Occurrence.redirect_target_id: target.id}, synchronize_session="fetch")
        )
        target.occurrences_count = (target.occurrences_count or 0) + moved
        bug.occurrences_count = 0
        bug.events.append(Event(kind=EventKind.DUPE.value, data={"original_id": target.id}))
        logger.info(f"[Lifecycle] Bug {bug.id} marked duplicate of {target.id}; moved {moved} occurrence(s)")
        return moved
