"""Tests for bug matching."""

import threading

import pytest
from sqlalchemy.orm import sessionmaker

from bugtriage.database import Base, create_db_engine
from bugtriage.exceptions import DuplicateChainError
from bugtriage.matcher import BugMatcher, SearchCriteria, resolve_duplicate
from bugtriage.models import Bug, Environment, EventKind
from bugtriage.pipeline import run_with_retries

from tests.conftest import sha

ATTRIBUTES = {"message_template": "boom", "revision": sha(1), "client": "test"}


@pytest.fixture
def environment(db_session, make_project, make_environment):
    return make_environment(db_session, make_project(db_session))


@pytest.fixture
def criteria():
    return SearchCriteria(class_name="RuntimeError", file="app/models/user.rb", line=10)


class TestSearchCriteria:
    """Tests for criteria keys."""

    def test_key_is_stable(self):
        first = SearchCriteria("E", "a.rb", 1, sha(1))
        second = SearchCriteria("E", "a.rb", 1, sha(1))
        assert first.key == second.key
        assert len(first.key) == 64

    def test_key_distinguishes_blamed_revision(self):
        assert SearchCriteria("E", "a.rb", 1, sha(1)).key != SearchCriteria("E", "a.rb", 1, None).key

    def test_special_flag_is_not_part_of_key(self):
        assert SearchCriteria("E", "a.rb", 1, special=True).key == SearchCriteria("E", "a.rb", 1).key


class TestHostedMatching:
    """Tests for projects without deploys in the occurrence."""

    def test_creates_bug_with_open_event(self, db_session, environment, criteria):
        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)

        assert bug.id is not None
        assert (bug.class_name, bug.file, bug.line) == ("RuntimeError", "app/models/user.rb", 10)
        assert bug.deploy_id is None
        assert bug.fixed is False
        assert bug.criteria_key == criteria.key
        assert [event.kind for event in bug.events] == [EventKind.OPEN.value]

    def test_reuses_matching_bug(self, db_session, environment, criteria):
        matcher = BugMatcher()
        first = matcher.find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)
        second = matcher.find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)

        assert first.id == second.id
        assert db_session.query(Bug).count() == 1

    def test_null_blamed_revision_only_matches_null(self, db_session, environment, make_bug):
        existing = make_bug(db_session, environment, blamed_revision=sha(5))
        criteria = SearchCriteria(existing.class_name, existing.file, existing.line, None)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)

        assert bug.id != existing.id
        assert bug.blamed_revision is None

    def test_prefers_open_bug(self, db_session, environment, make_bug, criteria):
        make_bug(db_session, environment, fixed=True)
        open_bug = make_bug(db_session, environment)
        make_bug(db_session, environment, fixed=True)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)
        assert bug.id == open_bug.id

    def test_returns_newest_fixed_bug_when_none_open(self, db_session, environment, make_bug, criteria):
        make_bug(db_session, environment, fixed=True)
        newest = make_bug(db_session, environment, fixed=True)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)

        assert bug.id == newest.id
        assert db_session.query(Bug).count() == 2

    def test_other_environment_is_not_matched(self, db_session, environment, make_environment, make_bug, criteria):
        staging = make_environment(db_session, environment.project, name="staging")
        other = make_bug(db_session, staging)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)
        assert bug.id != other.id

    def test_message_criteria(self, db_session, environment):
        matcher = BugMatcher()
        first = SearchCriteria("E", "a.rb", 1, message_template="one")
        second = SearchCriteria("E", "a.rb", 1, message_template="two")

        bug_one = matcher.find_or_create_bug(db_session, first, environment, attributes=ATTRIBUTES)
        bug_two = matcher.find_or_create_bug(db_session, second, environment, attributes=ATTRIBUTES)

        assert bug_one.id != bug_two.id
        assert (bug_one.message_template, bug_two.message_template) == ("one", "two")


class TestDistributedMatching:
    """Tests for occurrences carrying a deploy."""

    def test_exact_deploy_match(self, db_session, environment, make_deploy, make_bug, criteria):
        deploy = make_deploy(db_session, environment, sha(1), build="100")
        existing = make_bug(db_session, environment, deploy_id=deploy.id, fixed=True)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, deploy, ATTRIBUTES)
        assert bug.id == existing.id

    def test_open_bug_moves_to_new_deploy(self, db_session, environment, make_deploy, make_bug, criteria):
        old = make_deploy(db_session, environment, sha(1), build="100")
        new = make_deploy(db_session, environment, sha(2), build="101")
        existing = make_bug(db_session, environment, deploy_id=old.id)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, new, ATTRIBUTES)

        assert bug.id == existing.id
        assert bug.deploy_id == new.id

    def test_bug_fixed_under_other_deploy_is_not_reused(
        self, db_session, environment, make_deploy, make_bug, criteria
    ):
        old = make_deploy(db_session, environment, sha(1), build="100")
        new = make_deploy(db_session, environment, sha(2), build="101")
        fixed = make_bug(db_session, environment, deploy_id=old.id, fixed=True)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, new, ATTRIBUTES)

        assert bug.id != fixed.id
        assert bug.deploy_id == new.id
        assert fixed.deploy_id == old.id


class TestDuplicates:
    """Tests for duplicate chain resolution."""

    def test_resolves_to_terminal_bug(self, db_session, environment, make_bug, criteria):
        target = make_bug(db_session, environment, file="app/other.rb")
        middle = make_bug(db_session, environment, file="app/middle.rb", duplicate_of_id=target.id)
        make_bug(db_session, environment, duplicate_of_id=middle.id)

        bug = BugMatcher().find_or_create_bug(db_session, criteria, environment, attributes=ATTRIBUTES)
        assert bug.id == target.id

    def test_cycle_is_an_error(self, db_session, environment, make_bug):
        first = make_bug(db_session, environment, file="a.rb")
        second = make_bug(db_session, environment, file="b.rb", duplicate_of_id=first.id)
        first.duplicate_of_id = second.id
        db_session.flush()

        with pytest.raises(DuplicateChainError):
            resolve_duplicate(db_session, first)

    def test_dangling_target_is_an_error(self, db_session, environment, make_bug):
        bug = make_bug(db_session, environment, duplicate_of_id=99999)

        with pytest.raises(DuplicateChainError):
            resolve_duplicate(db_session, bug)

    def test_non_duplicate_resolves_to_itself(self, db_session, environment, make_bug):
        bug = make_bug(db_session, environment)
        assert resolve_duplicate(db_session, bug) is bug


class TestConcurrentCreation:
    """Tests for racing creators on a file-backed database."""

    def test_racing_creators_converge_on_one_bug(self, tmp_path, make_project, make_environment):
        engine = create_db_engine(
            f"sqlite:///{tmp_path / 'race.db'}", connect_args={"timeout": 30, "check_same_thread": False}
        )
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        with Session() as db:
            environment_id = make_environment(db, make_project(db)).id
            db.commit()

        criteria = SearchCriteria("RuntimeError", "app/race.rb", 1, sha(9))
        barrier = threading.Barrier(8)
        bug_ids = []
        errors = []

        def create():
            def work(db):
                environment = db.get(Environment, environment_id)
                return BugMatcher().find_or_create_bug(db, criteria, environment, attributes=ATTRIBUTES).id

            barrier.wait()
            try:
                bug_ids.append(run_with_retries(Session, work, max_attempts=5, retry_backoff=0.01))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=create) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(set(bug_ids)) == 1
        with Session() as db:
            assert db.query(Bug).count() == 1
        engine.dispose()
