"""Tests for issue_pipeline/engine/lifecycle.py - the transition table."""

import pytest

from issue_pipeline.engine import lifecycle
from issue_pipeline.enums import IssueType, LifecycleState, Trigger
from issue_pipeline.exceptions import PreconditionFailed
from issue_pipeline.models.domain import IssueRecord

S = LifecycleState


def record_in(state: LifecycleState, **fields) -> IssueRecord:
    return IssueRecord(number=42, state=state, **fields)


# =============================================================================
# Transition table
# =============================================================================


class TestTransitions:
    @pytest.mark.parametrize(
        "trigger,source,target",
        [
            (Trigger.ASSIGN, S.CREATED, S.ASSIGNED),
            (Trigger.REQUEST_REVIEW, S.ASSIGNED, S.IN_REVIEW),
            (Trigger.REQUEST_REVIEW, S.CHANGES_REQUESTED, S.IN_REVIEW),
            (Trigger.REQUEST_REVIEW, S.IN_REVIEW, S.IN_REVIEW),
            (Trigger.APPROVE, S.IN_REVIEW, S.APPROVED),
            (Trigger.COMPLETE_MERGE, S.APPROVED, S.MERGED),
            (Trigger.REJECT, S.IN_REVIEW, S.CHANGES_REQUESTED),
            (Trigger.CLOSE, S.CREATED, S.CLOSED),
            (Trigger.CLOSE, S.APPROVED, S.CLOSED),
        ],
    )
    def test_allowed(self, trigger, source, target):
        """Should accept each documented transition."""
        transition = lifecycle.check(trigger, record_in(source))
        assert transition.target is target

    @pytest.mark.parametrize(
        "trigger,source",
        [
            (Trigger.ASSIGN, S.ASSIGNED),
            (Trigger.REQUEST_REVIEW, S.CREATED),
            (Trigger.APPROVE, S.ASSIGNED),
            (Trigger.APPROVE, S.CHANGES_REQUESTED),
            (Trigger.COMPLETE_MERGE, S.IN_REVIEW),
            (Trigger.REJECT, S.APPROVED),
        ],
    )
    def test_rejected(self, trigger, source):
        """Should raise PreconditionFailed naming the expected and actual state."""
        with pytest.raises(PreconditionFailed) as exc_info:
            lifecycle.check(trigger, record_in(source))

        assert exc_info.value.actual == source.value
        assert exc_info.value.trigger == trigger.value
        assert exc_info.value.exit_code == 4

    @pytest.mark.parametrize("state", [S.MERGED, S.CLOSED])
    def test_terminal_states_accept_nothing(self, state):
        """Should allow no trigger at all from a terminal state."""
        assert lifecycle.allowed_triggers(state) == []
        for trigger in lifecycle.TRANSITIONS:
            with pytest.raises(PreconditionFailed):
                lifecycle.check(trigger, record_in(state))

    def test_allowed_triggers_from_in_review(self):
        """Should list every trigger accepted while in review."""
        assert set(lifecycle.allowed_triggers(S.IN_REVIEW)) == {
            Trigger.REQUEST_REVIEW,
            Trigger.APPROVE,
            Trigger.REJECT,
            Trigger.CLOSE,
        }


# =============================================================================
# Guards
# =============================================================================


class TestGuards:
    def test_guard_rechecks_current_record(self):
        """Should reject when the stored record moved on since validation."""
        guard = lifecycle.guard(Trigger.APPROVE, 42)
        guard(record_in(S.IN_REVIEW))
        with pytest.raises(PreconditionFailed):
            guard(record_in(S.APPROVED))

    def test_guard_missing_record(self):
        """Should report a vanished record as missing."""
        with pytest.raises(PreconditionFailed) as exc_info:
            lifecycle.guard(Trigger.ASSIGN, 42)(None)
        assert exc_info.value.actual == "missing"

    def test_creation_guard(self):
        """Should refuse to create a record twice."""
        guard = lifecycle.creation_guard(42)
        guard(None)
        with pytest.raises(PreconditionFailed):
            guard(record_in(S.CREATED))


# =============================================================================
# Field updates
# =============================================================================


class TestFields:
    def test_creation_fields(self):
        """Should fix branch and auto-merge at creation."""
        fields = lifecycle.creation_fields(
            42,
            title="Login fails",
            url="https://github.com/acme/webapp/issues/42",
            issue_type=IssueType.BUG,
            auto_merge=False,
            project="acme",
            now="2026-01-01T00:00:00+00:00",
        )
        assert fields["state"] is S.CREATED
        assert fields["branch"] == "issue-42"
        assert fields["auto_merge"] is False
        assert fields["created"] == "2026-01-01T00:00:00+00:00"

    def test_write_once_timestamp(self):
        """Should not overwrite a timestamp that is already set."""
        record = record_in(S.CREATED, assigned="earlier")
        updates = lifecycle.transition_fields(Trigger.ASSIGN, record, "later")
        assert "assigned" not in updates
        assert updates["state"] is S.ASSIGNED

    def test_recurring_timestamp(self):
        """Should restamp review_requested on every review round."""
        record = record_in(S.CHANGES_REQUESTED, review_requested="earlier")
        updates = lifecycle.transition_fields(Trigger.REQUEST_REVIEW, record, "later", pr=8)
        assert updates["review_requested"] == "later"
        assert updates["pr"] == 8

    def test_timestamps_consistent(self):
        """Should flag merged/closed timestamps that disagree with the state."""
        assert lifecycle.timestamps_consistent(record_in(S.MERGED, merged="t"))
        assert lifecycle.timestamps_consistent(record_in(S.CREATED, created="t"))
        assert not lifecycle.timestamps_consistent(record_in(S.MERGED))
        assert not lifecycle.timestamps_consistent(record_in(S.CLOSED, closed="t", merged="t"))
