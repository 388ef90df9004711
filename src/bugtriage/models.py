"""Database models for projects, deploys, bugs, occurrences and cached blames"""

import hashlib
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on the way back; treat naive timestamps as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BlamerType(str, Enum):
    """Strategies a project can use to place occurrences into bugs"""

    RECENCY = "recency"
    SIMPLE = "simple"
    MESSAGE = "message"


class BugStatus(str, Enum):
    """Lifecycle states of a bug"""

    OPEN = "open"
    FIXED = "fixed"
    FIX_DEPLOYED = "fix_deployed"


class EventKind(str, Enum):
    """Kinds of bug events left for notification observers"""

    OPEN = "open"
    REOPEN = "reopen"
    DEPLOY = "deploy"
    DUPE = "dupe"


class Project(Base):
    """A codebase reporting exceptions"""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(126), nullable=False, unique=True)
    api_key = Column(String(36), nullable=False, unique=True, index=True)
    repository_url = Column(String(255), nullable=False)
    blamer_type = Column(String(32), nullable=False, default=BlamerType.RECENCY.value)

    # Path prefixes ignored when picking the relevant frame, unless also whitelisted
    filter_paths = Column(JSON, nullable=False, default=list)
    whitelist_paths = Column(JSON, nullable=False, default=list)
    disable_message_filtering = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    environments = relationship("Environment", back_populates="project", cascade="all, delete-orphan")

    @property
    def repository_hash(self) -> str:
        """SHA1 of the repository URL; keys cached blames and local working copies."""
        return hashlib.sha1(self.repository_url.encode("utf-8")).hexdigest()


class Environment(Base):
    """A deployment target of a project (production, staging, ...)"""

    __tablename__ = "environments"
    __table_args__ = (UniqueConstraint("project_id", "name", name="uq_environments_project_id_name"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    name = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    project = relationship("Project", back_populates="environments")
    deploys = relationship("Deploy", back_populates="environment", cascade="all, delete-orphan")
    bugs = relationship("Bug", back_populates="environment", cascade="all, delete-orphan")


class Deploy(Base):
    """A release of a revision (and, for distributed projects, a build) to an environment"""

    __tablename__ = "deploys"
    __table_args__ = (
        UniqueConstraint("environment_id", "build", name="uq_deploys_environment_id_build"),
        Index("ix_deploys_environment_deployed_at", "environment_id", "deployed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    environment_id = Column(Integer, ForeignKey("environments.id"), nullable=False)
    revision = Column(String(40), nullable=False, index=True)
    build = Column(String(40), nullable=True)
    version = Column(String(126), nullable=True)
    hostname = Column(String(126), nullable=True)
    deployed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    environment = relationship("Environment", back_populates="deploys")


class Bug(Base):
    """A deduplicated defect grouping many occurrences"""

    __tablename__ = "bugs"
    __table_args__ = (
        # At most one open bug per matching key within an environment; this is
        # the constraint the matcher's insert-or-fetch relies on.
        Index(
            "uq_bugs_open_criteria",
            "environment_id",
            "criteria_key",
            unique=True,
            sqlite_where=text("fixed = 0"),
            postgresql_where=text("NOT fixed"),
        ),
        Index("ix_bugs_environment_criteria", "environment_id", "class_name", "file", "line"),
    )

    id = Column(Integer, primary_key=True, index=True)
    environment_id = Column(Integer, ForeignKey("environments.id"), nullable=False)
    deploy_id = Column(Integer, ForeignKey("deploys.id"), nullable=True)

    # Matching criteria
    class_name = Column(String(128), nullable=False)
    file = Column(String(255), nullable=False)
    line = Column(Integer, nullable=False)
    blamed_revision = Column(String(40), nullable=True)
    criteria_key = Column(String(64), nullable=False)

    message_template = Column(Text, nullable=False)
    revision = Column(String(40), nullable=False)
    client = Column(String(32), nullable=False)
    special_file = Column(Boolean, nullable=False, default=False)

    # Lifecycle
    fixed = Column(Boolean, nullable=False, default=False)
    fix_deployed = Column(Boolean, nullable=False, default=False)
    irrelevant = Column(Boolean, nullable=False, default=False)
    fixed_at = Column(DateTime(timezone=True), nullable=True)
    resolution_revision = Column(String(40), nullable=True)
    fixing_deploy_id = Column(Integer, ForeignKey("deploys.id"), nullable=True)
    duplicate_of_id = Column(Integer, ForeignKey("bugs.id"), nullable=True)

    # Counters maintained by ingestion
    occurrences_count = Column(Integer, nullable=False, default=0)
    first_occurrence = Column(DateTime(timezone=True), nullable=True)
    latest_occurrence = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    environment = relationship("Environment", back_populates="bugs")
    deploy = relationship("Deploy", foreign_keys=[deploy_id])
    fixing_deploy = relationship("Deploy", foreign_keys=[fixing_deploy_id])
    duplicate_of = relationship("Bug", remote_side=[id], foreign_keys=[duplicate_of_id])
    occurrences = relationship("Occurrence", back_populates="bug", foreign_keys="Occurrence.bug_id")
    events = relationship("Event", back_populates="bug", cascade="all, delete-orphan", order_by="Event.id")

    @property
    def status(self) -> BugStatus:
        if self.fix_deployed:
            return BugStatus.FIX_DEPLOYED
        if self.fixed:
            return BugStatus.FIXED
        return BugStatus.OPEN

    @property
    def duplicate(self) -> bool:
        return self.duplicate_of_id is not None

    def __repr__(self):
        return f"<Bug {self.id} {self.class_name} {self.file}:{self.line} {self.status.value}>"


class Occurrence(Base):
    """One reported instance of an exception"""

    __tablename__ = "occurrences"

    id = Column(Integer, primary_key=True, index=True)
    bug_id = Column(Integer, ForeignKey("bugs.id"), nullable=False, index=True)
    redirect_target_id = Column(Integer, ForeignKey("bugs.id"), nullable=True)

    revision = Column(String(40), nullable=False)
    build = Column(String(40), nullable=True)
    client = Column(String(32), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    message = Column(Text, nullable=False)

    # [{"name": ..., "faulted": bool, "backtrace": [frame, ...]}, ...]
    backtraces = Column(JSON, nullable=False, default=list)
    parent_exceptions = Column(JSON, nullable=True)
    # Remaining report fields (request data, user data, device metadata, ...)
    extra = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    bug = relationship("Bug", back_populates="occurrences", foreign_keys=[bug_id])

    @property
    def faulted_backtrace(self) -> list:
        """Frames of the thread that raised, innermost first."""
        for element in self.backtraces or []:
            if element.get("faulted"):
                return element.get("backtrace") or []
        return []


class Blame(Base):
    """Cached result of a blame: the commit that last touched a file and line at a revision.

    `updated_at` doubles as the LRU key; the blame cache refreshes it on every hit.
    """

    __tablename__ = "blames"
    __table_args__ = (
        UniqueConstraint("repository_hash", "revision", "file", "line", name="uq_blames_key"),
        Index("ix_blames_lru", "updated_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    repository_hash = Column(String(40), nullable=False)
    revision = Column(String(40), nullable=False)
    file = Column(String(255), nullable=False)
    line = Column(Integer, nullable=False)
    blamed_revision = Column(String(40), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Event(Base):
    """Something that happened to a bug; consumed by notification observers"""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    bug_id = Column(Integer, ForeignKey("bugs.id"), nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    bug = relationship("Bug", back_populates="events")
