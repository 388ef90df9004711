"""
Occurrence Ingestion Pipeline

Turns a raw error report into a persisted Occurrence filed under a Bug:

1. validate the report,
2. resolve the project (by API key) and find or create the environment,
3. establish the commit context (revision and, for distributed projects, the
   deploy of the reported build),
4. compute search criteria with the project's matching strategy,
5. find or create the Bug,
6. redact PII from the occurrence,
7. persist the occurrence with the bug's counters,
8. reopen the bug if its fix did not hold.

Each attempt runs in a fresh session and a single transaction. Serialization
failures roll back and retry the whole attempt, up to `max_attempts`.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from prometheus_client import Counter
from sqlalchemy.orm import Session

from .blame_cache import BlameCache
from .database import insert_or_fetch, is_serialization_failure
from .exceptions import (
    InvalidAttributesError,
    RetriesExhaustedError,
    UnknownAPIKeyError,
    UnknownBuildError,
    UnresolvableCommitError,
)
from .lifecycle import DEFAULT_COMMIT_PAGE_SIZE, BugLifecycle
from .localizer import FaultLocalizer, LocalizationError
from .logging_config import correlation_id_var
from .matcher import BugMatcher
from .messages import MessageTemplateMatcher, filter_message, redact_occurrence, truncate
from .models import Deploy, Environment, Occurrence, Project, as_utc, utcnow
from .strategies import MatchingStrategy, build_strategies, strategy_for
from .vcs import CommitResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUIRED_KEYS = ("api_key", "environment", "client", "backtraces", "class_name", "message", "occurred_at")

# Report fields with a column of their own; everything else lands in Occurrence.extra
REPORT_KEYS = frozenset(REQUIRED_KEYS) | {"revision", "build", "parent_exceptions"}

# Widths of the columns these fields are stored in
REPORT_FIELD_LENGTHS = {"environment": 100, "build": 40, "class_name": 128, "client": 32}
DEPLOY_FIELD_LENGTHS = {"environment.name": 100, "deploy.build": 40, "deploy.version": 126, "deploy.hostname": 126}

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_MESSAGE_MAX_LENGTH = 1000

INGESTED_TOTAL = Counter(
    "bugtriage_occurrences_ingested_total",
    "Occurrences persisted by the ingestion pipeline",
    ["outcome"],
)
CONFLICT_RETRIES_TOTAL = Counter(
    "bugtriage_conflict_retries_total",
    "Transactions retried after a serialization failure",
    ["operation"],
)


def run_with_retries(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retry_backoff: float = 0.0,
    operation: str = "ingest",
) -> T:
    """
    Run `work` in a fresh session per attempt, committing on success.

    Serialization failures roll back and retry; any other error rolls back and
    propagates.

    Raises:
        RetriesExhaustedError: every attempt hit a serialization failure
    """
    last_error = None
    for attempt in range(1, max_attempts + 1):
        db = session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except Exception as exc:
            db.rollback()
            if not is_serialization_failure(exc):
                raise
            last_error = exc
            CONFLICT_RETRIES_TOTAL.labels(operation=operation).inc()
            logger.warning(f"[OccurrencesWorker] {operation} attempt {attempt}/{max_attempts} hit a write conflict: {exc}")
            if retry_backoff and attempt < max_attempts:
                time.sleep(retry_backoff * attempt)
        finally:
            db.close()

    raise RetriesExhaustedError(
        f"{operation} gave up after {max_attempts} attempts: {last_error}", attempts=max_attempts
    ) from last_error


def parse_timestamp(value: Any, field: str = "occurred_at") -> datetime:
    """Parse an ISO 8601 string, epoch seconds or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
    raise InvalidAttributesError(f"Invalid {field}: {value!r}")


def validate_report(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Check a raw report for required fields and normalize its timestamps.

    Raises:
        InvalidAttributesError: listing every missing or blank field
    """
    if not isinstance(raw, dict):
        raise InvalidAttributesError("Report must be a JSON object")

    def blank(value):
        return value is None or (isinstance(value, str) and not value.strip())

    missing = [key for key in REQUIRED_KEYS if blank(raw.get(key))]
    if blank(raw.get("revision")) and blank(raw.get("build")):
        missing.append("revision or build")
    if missing:
        raise InvalidAttributesError(f"Missing required fields: {', '.join(missing)}")

    if not isinstance(raw["backtraces"], list):
        raise InvalidAttributesError("backtraces must be a list")
    check_lengths({key: raw.get(key) for key in REPORT_FIELD_LENGTHS}, REPORT_FIELD_LENGTHS)

    report = dict(raw)
    report["occurred_at"] = parse_timestamp(raw["occurred_at"])
    return report


def check_lengths(values: Dict[str, Any], limits: Dict[str, int]) -> None:
    """Reject string fields longer than their column.

    Raises:
        InvalidAttributesError: naming every field that is too long
    """
    too_long = [
        f"{field} (max {limits[field]})"
        for field, value in values.items()
        if isinstance(value, str) and len(value) > limits[field]
    ]
    if too_long:
        raise InvalidAttributesError(f"Fields too long: {', '.join(too_long)}")


@dataclass
class CommitContext:
    revision: str
    deploy: Optional[Deploy] = None


class OccurrenceIngestor:
    """Files raw reports under bugs.

    Example:
        repository = LocalGitRepository(settings.repositories_dir)
        ingestor = OccurrenceIngestor(SessionLocal, repository, BlameCache(repository))
        occurrence = ingestor.ingest(report)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        commit_resolver: CommitResolver,
        blame_cache: BlameCache,
        lifecycle: Optional[BugLifecycle] = None,
        message_matcher: Optional[MessageTemplateMatcher] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        message_max_length: int = DEFAULT_MESSAGE_MAX_LENGTH,
        retry_backoff: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the ingestor.

        Args:
            session_factory: Creates one session per attempt
            commit_resolver: Resolves revisions and looks up commit dates
            blame_cache: Blame cache the fault localizer reads through
            lifecycle: Lifecycle rules (defaults to a 10 day stale-fix window)
            message_matcher: Message templates (defaults to the bundled YAML file)
            max_attempts: Attempts per report under serialization conflicts
            message_max_length: Length occurrence messages and templates are truncated to
            retry_backoff: Seconds slept per attempt number between retries
            clock: Source of deploy timestamps
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.session_factory = session_factory
        self.commit_resolver = commit_resolver
        self.localizer = FaultLocalizer(blame_cache, commit_resolver)
        self.strategies = build_strategies(self.localizer, commit_resolver)
        self.matcher = BugMatcher()
        self.lifecycle = lifecycle or BugLifecycle(clock=clock)
        self.message_matcher = message_matcher or MessageTemplateMatcher.from_yaml()
        self.max_attempts = max_attempts
        self.message_max_length = message_max_length
        self.retry_backoff = retry_backoff
        self.clock = clock

    def ingest(self, raw: Dict[str, Any]) -> Occurrence:
        """
        Ingest one report.

        Returns:
            The persisted occurrence, detached from its session

        Raises:
            InvalidAttributesError: missing or invalid fields (incl. unknown build or revision)
            UnknownAPIKeyError: no project has the report's API key
            UnresolvableCommitError: no commit to localize the fault against
            RetriesExhaustedError: serialization conflicts outlasted the retry budget
        """
        report = validate_report(raw)
        token = correlation_id_var.set(f"occ-{uuid.uuid4().hex[:12]}")
        try:

            def work(db: Session) -> Occurrence:
                occurrence = self._ingest_once(db, report)
                db.flush()
                return occurrence

            occurrence = run_with_retries(
                self._committing_session_factory, work, self.max_attempts, self.retry_backoff, "ingest"
            )
            INGESTED_TOTAL.labels(outcome="stored").inc()
            return occurrence
        finally:
            correlation_id_var.reset(token)

    def _committing_session_factory(self) -> Session:
        # Occurrences are handed back detached; keep their loaded state after commit
        db = self.session_factory()
        db.expire_on_commit = False
        return db

    def _ingest_once(self, db: Session, report: Dict[str, Any]) -> Occurrence:
        project = db.query(Project).filter(Project.api_key == report["api_key"]).first()
        if project is None:
            raise UnknownAPIKeyError("Unknown API key")

        strategy = strategy_for(project, self.strategies)
        environment = self._find_or_create_environment(db, project, report["environment"])
        context = self._commit_context(db, project, environment, strategy, report)

        class_name = report["class_name"]
        occurrence = Occurrence(
            revision=context.revision,
            build=report.get("build"),
            client=report["client"],
            occurred_at=report["occurred_at"],
            message=report["message"],
            backtraces=report["backtraces"],
            parent_exceptions=report.get("parent_exceptions"),
            extra={key: value for key, value in report.items() if key not in REPORT_KEYS},
        )

        message_template = truncate(
            filter_message(self.message_matcher, class_name, report["message"]), self.message_max_length
        )
        reference_commit = strategy.reference_commit(project, context.revision)
        criteria = strategy.compute_search_criteria(
            db, project, class_name, occurrence, reference_commit, message_template
        )
        if isinstance(criteria, LocalizationError):
            raise UnresolvableCommitError(criteria.reason)

        bug = self.matcher.find_or_create_bug(
            db,
            criteria,
            environment,
            context.deploy,
            attributes={
                "message_template": self._bug_message_template(project, report["message"], message_template),
                "revision": context.revision,
                "client": report["client"],
            },
        )

        if not project.disable_message_filtering:
            redact_occurrence(occurrence, class_name, self.message_matcher)
        occurrence.message = truncate(occurrence.message or class_name, self.message_max_length)

        self._count_occurrence(bug, occurrence)
        occurrence.bug_id = bug.id
        db.add(occurrence)
        db.flush()

        if self.lifecycle.reopen_if_necessary(db, bug, occurrence):
            logger.info(f"[OccurrencesWorker] Occurrence {occurrence.id} reopened bug {bug.id}")
        logger.info(f"[OccurrencesWorker] Stored occurrence {occurrence.id} under bug {bug.id}")
        return occurrence

    def _find_or_create_environment(self, db: Session, project: Project, name: str) -> Environment:
        environment, created = insert_or_fetch(
            db,
            lambda: db.query(Environment).filter_by(project_id=project.id, name=name).first(),
            lambda: Environment(project_id=project.id, name=name),
        )
        if created:
            logger.info(f"[OccurrencesWorker] Created environment {name!r} for {project.name}")
        return environment

    def _commit_context(
        self,
        db: Session,
        project: Project,
        environment: Environment,
        strategy: MatchingStrategy,
        report: Dict[str, Any],
    ) -> CommitContext:
        revision = report.get("revision")
        build = report.get("build")

        if revision and build:
            sha = strategy.resolve_revision(project, revision)
            deploy, created = insert_or_fetch(
                db,
                lambda: db.query(Deploy).filter_by(environment_id=environment.id, build=build).first(),
                lambda: Deploy(environment_id=environment.id, revision=sha, build=build, deployed_at=self.clock()),
            )
            if created:
                logger.info(f"[OccurrencesWorker] Registered build {build} of {project.name} at {sha}")
            return CommitContext(revision=sha, deploy=deploy)

        if revision:
            return CommitContext(revision=strategy.resolve_revision(project, revision))

        deploy = db.query(Deploy).filter_by(environment_id=environment.id, build=build).first()
        if deploy is None:
            raise UnknownBuildError(f"Unknown build {build!r}")
        return CommitContext(revision=deploy.revision, deploy=deploy)

    def _bug_message_template(self, project: Project, message: str, filtered: str) -> str:
        # Search criteria still use the filtered template; only the stored text differs
        if project.disable_message_filtering:
            return truncate(message, self.message_max_length)
        return filtered

    def _count_occurrence(self, bug, occurrence: Occurrence) -> None:
        occurred_at = as_utc(occurrence.occurred_at)
        bug.occurrences_count = (bug.occurrences_count or 0) + 1
        if bug.first_occurrence is None or occurred_at < as_utc(bug.first_occurrence):
            bug.first_occurrence = occurred_at
        if bug.latest_occurrence is None or occurred_at > as_utc(bug.latest_occurrence):
            bug.latest_occurrence = occurred_at


class DeployRecorder:
    """Records deploys and marks the fixes they ship."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        commit_resolver: CommitResolver,
        lifecycle: Optional[BugLifecycle] = None,
        page_size: int = DEFAULT_COMMIT_PAGE_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.commit_resolver = commit_resolver
        self.lifecycle = lifecycle or BugLifecycle(clock=clock)
        self.page_size = page_size
        self.max_attempts = max_attempts
        self.clock = clock

    def record(self, raw: Dict[str, Any]) -> Tuple[int, int]:
        """
        Record a deploy from `{project: {api_key}, environment: {name}, deploy: {...}}`.

        Returns:
            (deploy id, number of bugs marked fix-deployed)
        """
        api_key, environment_name, attributes = self._validate(raw)

        def work(db: Session) -> Tuple[int, int]:
            project = db.query(Project).filter(Project.api_key == api_key).first()
            if project is None:
                raise UnknownAPIKeyError("Unknown API key")

            environment, _ = insert_or_fetch(
                db,
                lambda: db.query(Environment).filter_by(project_id=project.id, name=environment_name).first(),
                lambda: Environment(project_id=project.id, name=environment_name),
            )
            sha = self.commit_resolver.resolve(project, attributes["revision"])
            deploy = self._find_or_create_deploy(db, environment, sha, attributes)
            marked = self.lifecycle.mark_fix_deployed(db, deploy, self.commit_resolver, self.page_size)
            logger.info(f"[Deploys] Recorded deploy {deploy.id} of {project.name} to {environment_name} at {sha}")
            return deploy.id, marked

        return run_with_retries(self.session_factory, work, self.max_attempts, operation="deploy")

    def _validate(self, raw: Dict[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
        missing: List[str] = []
        api_key = (raw.get("project") or {}).get("api_key")
        environment_name = (raw.get("environment") or {}).get("name")
        attributes = dict(raw.get("deploy") or {})
        if not api_key:
            missing.append("project.api_key")
        if not environment_name:
            missing.append("environment.name")
        if not attributes.get("revision"):
            missing.append("deploy.revision")
        if missing:
            raise InvalidAttributesError(f"Missing required fields: {', '.join(missing)}")
        check_lengths(
            {
                "environment.name": environment_name,
                "deploy.build": attributes.get("build"),
                "deploy.version": attributes.get("version"),
                "deploy.hostname": attributes.get("hostname"),
            },
            DEPLOY_FIELD_LENGTHS,
        )

        if attributes.get("deployed_at") is not None:
            attributes["deployed_at"] = parse_timestamp(attributes["deployed_at"], "deployed_at")
        return api_key, environment_name, attributes

    def _find_or_create_deploy(
        self, db: Session, environment: Environment, sha: str, attributes: Dict[str, Any]
    ) -> Deploy:
        def build() -> Deploy:
            return Deploy(
                environment_id=environment.id,
                revision=sha,
                build=attributes.get("build"),
                version=attributes.get("version"),
                hostname=attributes.get("hostname"),
                deployed_at=attributes.get("deployed_at") or self.clock(),
            )

        if not attributes.get("build"):
            deploy = build()
            db.add(deploy)
            db.flush()
            return deploy

        deploy, _ = insert_or_fetch(
            db,
            lambda: db.query(Deploy).filter_by(environment_id=environment.id, build=attributes["build"]).first(),
            build,
        )
        return deploy
