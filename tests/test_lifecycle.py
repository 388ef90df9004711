"""Tests for the bug lifecycle state machine."""

from datetime import timedelta

import pytest

from bugtriage.exceptions import DuplicateChainError
from bugtriage.lifecycle import BugLifecycle
from bugtriage.models import BugStatus, Event, EventKind, Occurrence

from tests.conftest import EPOCH, sha

NOW = EPOCH + timedelta(days=60)


@pytest.fixture
def lifecycle():
    return BugLifecycle(stale_after=timedelta(days=10), clock=lambda: NOW)


@pytest.fixture
def environment(db_session, make_project, make_environment):
    return make_environment(db_session, make_project(db_session))


@pytest.fixture
def deploys(db_session, environment, make_deploy):
    """An older and a latest deploy."""
    older = make_deploy(db_session, environment, sha(1), deployed_at=EPOCH)
    latest = make_deploy(db_session, environment, sha(2), deployed_at=EPOCH + timedelta(days=1))
    return older, latest


def make_occurrence(db, bug, revision):
    occurrence = Occurrence(
        bug_id=bug.id,
        revision=revision,
        client="test",
        occurred_at=NOW,
        message="boom",
        backtraces=[],
        extra={},
    )
    db.add(occurrence)
    db.flush()
    return occurrence


def event_kinds(db, bug):
    return [event.kind for event in db.query(Event).filter(Event.bug_id == bug.id).order_by(Event.id)]


class TestReopenIfNecessary:
    """Tests for reopen rules."""

    def test_open_bug_stays_open(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment)
        occurrence = make_occurrence(db_session, bug, sha(1))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is False
        assert bug.status == BugStatus.OPEN

    def test_distributed_bug_is_never_reopened(self, db_session, lifecycle, environment, deploys, make_bug):
        _, latest = deploys
        bug = make_bug(db_session, environment, deploy_id=latest.id, fixed=True, fix_deployed=True)
        occurrence = make_occurrence(db_session, bug, sha(2))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is False
        assert bug.fixed is True

    def test_fix_deployed_bug_on_latest_deploy_reopens(self, db_session, lifecycle, environment, deploys, make_bug):
        bug = make_bug(db_session, environment, fixed=True, fix_deployed=True, fixed_at=EPOCH)
        occurrence = make_occurrence(db_session, bug, sha(2))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is True
        db_session.flush()

        assert bug.fixed is False
        assert bug.fix_deployed is False
        reopen = db_session.query(Event).filter_by(bug_id=bug.id, kind=EventKind.REOPEN.value).one()
        assert reopen.data == {"occurrence_id": occurrence.id, "from": "fixed"}

    def test_fix_deployed_bug_on_older_deploy_stays_fixed(
        self, db_session, lifecycle, environment, deploys, make_bug
    ):
        bug = make_bug(db_session, environment, fixed=True, fix_deployed=True, fixed_at=EPOCH)
        occurrence = make_occurrence(db_session, bug, sha(1))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is False
        assert bug.status == BugStatus.FIX_DEPLOYED

    def test_fix_deployed_bug_on_undeployed_revision_reopens(
        self, db_session, lifecycle, environment, deploys, make_bug
    ):
        bug = make_bug(db_session, environment, fixed=True, fix_deployed=True, fixed_at=EPOCH)
        occurrence = make_occurrence(db_session, bug, sha(3))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is True

    def test_stale_undeployed_fix_reopens(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment, fixed=True, fixed_at=NOW - timedelta(days=11))
        occurrence = make_occurrence(db_session, bug, sha(1))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is True
        db_session.flush()
        assert event_kinds(db_session, bug) == [EventKind.REOPEN.value]

    def test_recent_undeployed_fix_stays_fixed(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment, fixed=True, fixed_at=NOW - timedelta(days=9))
        occurrence = make_occurrence(db_session, bug, sha(1))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is False
        assert bug.fixed is True

    def test_explicit_now_overrides_clock(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment, fixed=True, fixed_at=NOW - timedelta(days=9))
        occurrence = make_occurrence(db_session, bug, sha(1))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence, now=NOW + timedelta(days=2)) is True

    def test_fixed_bug_without_fixed_at_stays_fixed(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment, fixed=True, fixed_at=None)
        occurrence = make_occurrence(db_session, bug, sha(1))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is False

    def test_irrelevant_bug_reopens_silently(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment, fixed=True, irrelevant=True, fixed_at=NOW - timedelta(days=30))
        occurrence = make_occurrence(db_session, bug, sha(1))

        assert lifecycle.reopen_if_necessary(db_session, bug, occurrence) is True
        db_session.flush()
        assert bug.fixed is False
        assert event_kinds(db_session, bug) == []


class TestMarkFixed:
    """Tests for resolving bugs."""

    def test_stamps_fixed_at(self, lifecycle, db_session, environment, make_bug):
        bug = make_bug(db_session, environment)
        lifecycle.mark_fixed(bug, resolution_revision=sha(7))

        assert bug.fixed is True
        assert bug.fixed_at == NOW
        assert bug.resolution_revision == sha(7)

    def test_keeps_original_fixed_at(self, lifecycle, db_session, environment, make_bug):
        bug = make_bug(db_session, environment, fixed=True, fixed_at=EPOCH)
        lifecycle.mark_fixed(bug, now=NOW)
        assert bug.fixed_at == EPOCH


class TestMarkFixDeployed:
    """Tests for marking the fixes a deploy ships."""

    @pytest.fixture
    def deploy(self, db_session, environment, make_deploy, repository):
        history = [sha(n) for n in range(10, 0, -1)]
        repository.add_commit(sha(10), EPOCH, history=history)
        return make_deploy(db_session, environment, sha(10), deployed_at=NOW)

    def test_marks_fixed_bugs_whose_resolution_shipped(
        self, db_session, lifecycle, environment, deploy, repository, make_bug
    ):
        shipped = make_bug(db_session, environment, file="a.rb", fixed=True, resolution_revision=sha(2))
        unshipped = make_bug(db_session, environment, file="b.rb", fixed=True, resolution_revision=sha(50))
        still_open = make_bug(db_session, environment, file="c.rb", resolution_revision=sha(3))

        marked = lifecycle.mark_fix_deployed(db_session, deploy, repository, page_size=3)
        db_session.flush()

        assert marked == 1
        assert shipped.fix_deployed is True
        assert shipped.fixing_deploy_id == deploy.id
        assert event_kinds(db_session, shipped) == [EventKind.DEPLOY.value]
        assert unshipped.fix_deployed is False
        assert still_open.fix_deployed is False

    def test_already_deployed_fix_is_left_alone(
        self, db_session, lifecycle, environment, deploy, make_deploy, repository, make_bug
    ):
        earlier = make_deploy(db_session, environment, sha(5), deployed_at=EPOCH)
        bug = make_bug(
            db_session, environment, fixed=True, fix_deployed=True, fixing_deploy_id=earlier.id,
            resolution_revision=sha(4),
        )

        assert lifecycle.mark_fix_deployed(db_session, deploy, repository) == 0
        assert bug.fixing_deploy_id == earlier.id

    def test_repository_failure_is_quiet(self, db_session, lifecycle, environment, deploy, repository, make_bug):
        bug = make_bug(db_session, environment, fixed=True, resolution_revision=sha(2))
        repository.fail_history = True

        assert lifecycle.mark_fix_deployed(db_session, deploy, repository) == 0
        assert bug.fix_deployed is False


class TestMarkAsDuplicate:
    """Tests for duplicate marking."""

    def test_moves_occurrences_to_target(self, db_session, lifecycle, environment, make_bug):
        target = make_bug(db_session, environment, file="target.rb", occurrences_count=1)
        bug = make_bug(db_session, environment, file="dupe.rb", occurrences_count=2)
        make_occurrence(db_session, target, sha(1))
        moved = [make_occurrence(db_session, bug, sha(1)) for _ in range(2)]

        assert lifecycle.mark_as_duplicate(db_session, bug, target) == 2
        db_session.flush()

        assert bug.duplicate_of_id == target.id
        assert (target.occurrences_count, bug.occurrences_count) == (3, 0)
        for occurrence in moved:
            db_session.refresh(occurrence)
            assert occurrence.bug_id == target.id
            assert occurrence.redirect_target_id == target.id
        dupe = db_session.query(Event).filter_by(bug_id=bug.id, kind=EventKind.DUPE.value).one()
        assert dupe.data == {"original_id": target.id}

    def test_rejects_self_reference(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment)
        with pytest.raises(DuplicateChainError):
            lifecycle.mark_as_duplicate(db_session, bug, bug)

    def test_rejects_duplicate_target(self, db_session, lifecycle, environment, make_bug):
        original = make_bug(db_session, environment, file="a.rb")
        target = make_bug(db_session, environment, file="b.rb", duplicate_of_id=original.id)
        bug = make_bug(db_session, environment, file="c.rb")

        with pytest.raises(DuplicateChainError):
            lifecycle.mark_as_duplicate(db_session, bug, target)

    def test_rejects_bug_with_duplicates(self, db_session, lifecycle, environment, make_bug):
        bug = make_bug(db_session, environment, file="a.rb")
        make_bug(db_session, environment, file="b.rb", duplicate_of_id=bug.id)
        target = make_bug(db_session, environment, file="c.rb")

        with pytest.raises(DuplicateChainError):
            lifecycle.mark_as_duplicate(db_session, bug, target)

    def test_rejects_already_marked_bug(self, db_session, lifecycle, environment, make_bug):
        first = make_bug(db_session, environment, file="a.rb")
        bug = make_bug(db_session, environment, file="b.rb", duplicate_of_id=first.id)
        target = make_bug(db_session, environment, file="c.rb")

        with pytest.raises(DuplicateChainError):
            lifecycle.mark_as_duplicate(db_session, bug, target)

    def test_rejects_target_in_other_environment(
        self, db_session, lifecycle, environment, make_environment, make_bug
    ):
        staging = make_environment(db_session, environment.project, name="staging")
        bug = make_bug(db_session, environment)
        target = make_bug(db_session, staging)

        with pytest.raises(DuplicateChainError):
            lifecycle.mark_as_duplicate(db_session, bug, target)
