"""Pytest configuration and fixtures for bugtriage tests"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure src directory is in Python path before any imports
project_root = Path(__file__).resolve().parent.parent
src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bugtriage.database import Base, create_db_engine
from bugtriage.exceptions import BlameUnavailableError, RepositoryError, UnknownRevisionError
from bugtriage.matcher import SearchCriteria
from bugtriage import models  # noqa: F401 - ensure models registered
from bugtriage.models import Bug, Deploy, Environment, Project
from bugtriage.vcs import Commit

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def sha(n: int) -> str:
    """A deterministic 40-hex commit id."""
    return f"{n:040x}"


class FakeRepository:
    """In-memory stand-in for LocalGitRepository.

    Implements both BlameProvider and CommitResolver.
    """

    def __init__(self):
        self.commits = {}
        self.refs = {}
        self.blames = {}
        self.histories = {}
        self.blame_calls = []
        self.fail_blame = False
        self.fail_history = False

    def add_commit(self, sha_: str, committed_at: datetime, history=None) -> Commit:
        commit = Commit(sha=sha_, committed_at=committed_at)
        self.commits[sha_] = commit
        self.histories[sha_] = list(history) if history is not None else [sha_]
        return commit

    def add_blame(self, revision: str, file: str, line: int, blamed: str) -> None:
        self.blames[(revision, file, line)] = blamed

    def blame(self, project, revision, file, line):
        self.blame_calls.append((revision, file, line))
        if self.fail_blame:
            raise BlameUnavailableError("git blame exited 128")
        return self.blames.get((revision, file, line))

    def resolve(self, project, revision):
        if revision in self.commits:
            return revision
        if revision in self.refs:
            return self.refs[revision]
        raise UnknownRevisionError(revision)

    def commit(self, project, sha_):
        return self.commits.get(sha_)

    def history(self, project, revision, limit, offset=0):
        if self.fail_history:
            raise RepositoryError(f"git rev-list {revision} failed")
        return self.histories.get(revision, [])[offset : offset + limit]


class FakeClock:
    """Monotonic clock advancing one second per call unless set explicitly."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh database engine for each test"""
    # StaticPool: every connection shares the same in-memory database
    engine = create_db_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a database session for each test"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_project():
    counter = {"n": 0}

    def _make(db, **overrides) -> Project:
        counter["n"] += 1
        values = {
            "name": f"project-{counter['n']}",
            "api_key": f"key-{counter['n']}",
            "repository_url": f"git@example.com:acme/project-{counter['n']}.git",
            "blamer_type": "recency",
            "filter_paths": ["vendor/"],
            "whitelist_paths": [],
        }
        values.update(overrides)
        project = Project(**values)
        db.add(project)
        db.flush()
        return project

    return _make


@pytest.fixture
def make_environment():
    def _make(db, project: Project, name: str = "production") -> Environment:
        environment = Environment(project_id=project.id, name=name)
        db.add(environment)
        db.flush()
        return environment

    return _make


@pytest.fixture
def make_deploy():
    def _make(db, environment: Environment, revision: str, deployed_at: datetime = EPOCH, build=None) -> Deploy:
        deploy = Deploy(environment_id=environment.id, revision=revision, build=build, deployed_at=deployed_at)
        db.add(deploy)
        db.flush()
        return deploy

    return _make


@pytest.fixture
def make_bug():
    def _make(db, environment: Environment, **overrides) -> Bug:
        values = {
            "environment_id": environment.id,
            "class_name": "RuntimeError",
            "file": "app/models/user.rb",
            "line": 10,
            "blamed_revision": None,
            "message_template": "boom",
            "revision": sha(1),
            "client": "test",
        }
        values.update(overrides)
        if "criteria_key" not in values:
            values["criteria_key"] = SearchCriteria(
                values["class_name"], values["file"], values["line"], values["blamed_revision"]
            ).key
        bug = Bug(**values)
        db.add(bug)
        db.flush()
        return bug

    return _make
