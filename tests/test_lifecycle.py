"""
tests/test_lifecycle.py
───────────────────────
Test suite for consolidator/control_plane/lifecycle.py

Test groups
────────────
Group 1: legal transitions    — each arrow of the state table
Group 2: approval checks      — token, expiry, single use
Group 3: illegal transitions  — terminal states, wrong source state
Group 4: expiry sweep
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from consolidator.control_plane import lifecycle
from consolidator.control_plane.lifecycle import (
    ApprovalExpiredError,
    ApprovalTokenError,
    InvalidTransitionError,
)
from consolidator.control_plane.migration import MigrationOrchestrator
from consolidator.shared.models import (
    MigrationRecommendation,
    MigrationStep,
    PendingApproval,
    RecommendationStatus,
    SafeWindow,
)

NOW = datetime(2024, 1, 3, 10, 0)
TOKEN = "token-123"


def _make_recommendation() -> MigrationRecommendation:
    step = MigrationStep(
        workload_id="w-1",
        workload_name="frontend",
        source_node="node-a",
        target_node="node-b",
        reason="Consolidation for cost savings",
    )
    return MigrationOrchestrator().create_recommendation(step, NOW)


def _pending(expires_in: timedelta = timedelta(hours=1)) -> MigrationRecommendation:
    return lifecycle.submit_for_approval(_make_recommendation(), TOKEN, NOW + expires_in)


def _window() -> SafeWindow:
    return SafeWindow(
        is_now=False,
        start=datetime(2024, 1, 4, 2, 0),
        end=datetime(2024, 1, 4, 5, 0),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: legal transitions
# ─────────────────────────────────────────────────────────────────────────────

class TestLegalTransitions:

    def test_new_recommendation_is_recommended(self) -> None:
        assert _make_recommendation().status == RecommendationStatus.RECOMMENDED

    def test_submit_for_approval(self) -> None:
        rec = _make_recommendation()
        pending = lifecycle.submit_for_approval(rec, TOKEN, NOW + timedelta(hours=1), reason="why")

        assert pending.status == RecommendationStatus.PENDING_APPROVAL
        assert pending.state.approval_token == TOKEN
        assert pending.state.reason == "why"
        assert pending.state.approve_command == f"kubectl optimize approve {rec.id}"
        assert pending.state.reject_command == f"kubectl optimize reject {rec.id}"
        assert rec.status == RecommendationStatus.RECOMMENDED, "argument must not change"

    def test_schedule_then_execute(self) -> None:
        scheduled = lifecycle.schedule(_make_recommendation(), _window())
        assert scheduled.state.scheduled_for == datetime(2024, 1, 4, 2, 0)
        assert scheduled.state.window_end == datetime(2024, 1, 4, 5, 0)
        assert scheduled.state.reason == "Waiting for low-traffic window"

        executed = lifecycle.execute(scheduled, datetime(2024, 1, 4, 2, 0), trigger="safe-window")
        assert executed.status == RecommendationStatus.EXECUTED
        assert executed.state.trigger == "safe-window"

    def test_execute_directly(self) -> None:
        executed = lifecycle.execute(_make_recommendation(), NOW, trigger="pre-approval")
        assert executed.state.executed_at == NOW

    def test_reject_pending_and_scheduled(self) -> None:
        rejected = lifecycle.reject(_pending(), NOW)
        assert rejected.status == RecommendationStatus.REJECTED
        assert rejected.state.reason == "Rejected by operator"

        cancelled = lifecycle.reject(lifecycle.schedule(_make_recommendation(), _window()), NOW, "window cancelled")
        assert cancelled.state.reason == "window cancelled"

    def test_state_survives_serialization(self) -> None:
        restored = MigrationRecommendation.model_validate(_pending().model_dump())
        assert isinstance(restored.state, PendingApproval)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: approval checks
# ─────────────────────────────────────────────────────────────────────────────

class TestApprove:

    def test_matching_token_executes(self) -> None:
        approved = lifecycle.approve(_pending(), TOKEN, NOW + timedelta(minutes=5))
        assert approved.status == RecommendationStatus.EXECUTED
        assert approved.state.trigger == "approval"

    def test_wrong_token_is_refused(self) -> None:
        pending = _pending()
        with pytest.raises(ApprovalTokenError):
            lifecycle.approve(pending, "not-the-token", NOW)
        assert pending.status == RecommendationStatus.PENDING_APPROVAL

    def test_expired_entry_is_refused(self) -> None:
        pending = _pending()
        with pytest.raises(ApprovalExpiredError) as exc_info:
            lifecycle.approve(pending, TOKEN, NOW + timedelta(hours=1))
        assert exc_info.value.expires_at == NOW + timedelta(hours=1)

    def test_expiry_check_can_be_disabled(self) -> None:
        approved = lifecycle.approve(_pending(), TOKEN, NOW + timedelta(days=2), enforce_expiry=False)
        assert approved.status == RecommendationStatus.EXECUTED

    def test_token_is_single_use(self) -> None:
        approved = lifecycle.approve(_pending(), TOKEN, NOW)
        with pytest.raises(InvalidTransitionError):
            lifecycle.approve(approved, TOKEN, NOW)


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: illegal transitions
# ─────────────────────────────────────────────────────────────────────────────

class TestIllegalTransitions:

    def test_error_names_both_states(self) -> None:
        executed = lifecycle.execute(_make_recommendation(), NOW, trigger="pre-approval")
        with pytest.raises(InvalidTransitionError) as exc_info:
            lifecycle.reject(executed, NOW)

        assert exc_info.value.current == "executed"
        assert exc_info.value.requested == "rejected"
        assert exc_info.value.recommendation_id == executed.id

    def test_rejected_is_terminal(self) -> None:
        rejected = lifecycle.reject(_pending(), NOW)
        with pytest.raises(InvalidTransitionError):
            lifecycle.execute(rejected, NOW, trigger="safe-window")
        with pytest.raises(InvalidTransitionError):
            lifecycle.submit_for_approval(rejected, TOKEN, NOW)

    def test_recommended_cannot_be_approved_or_rejected(self) -> None:
        rec = _make_recommendation()
        with pytest.raises(InvalidTransitionError):
            lifecycle.approve(rec, TOKEN, NOW)
        with pytest.raises(InvalidTransitionError):
            lifecycle.reject(rec, NOW)

    def test_pending_cannot_be_scheduled_or_executed(self) -> None:
        pending = _pending()
        with pytest.raises(InvalidTransitionError):
            lifecycle.schedule(pending, _window())
        with pytest.raises(InvalidTransitionError):
            lifecycle.execute(pending, NOW, trigger="safe-window")


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: expiry sweep
# ─────────────────────────────────────────────────────────────────────────────

class TestExpire:

    def test_expired_pending_becomes_rejected(self) -> None:
        expired = lifecycle.expire(_pending(), NOW + timedelta(hours=2))
        assert expired.status == RecommendationStatus.REJECTED
        assert expired.state.reason == "Approval expired"

    def test_live_pending_is_returned_unchanged(self) -> None:
        pending = _pending()
        assert lifecycle.expire(pending, NOW) is pending

    def test_other_states_are_ignored(self) -> None:
        rec = _make_recommendation()
        assert lifecycle.expire(rec, NOW + timedelta(days=30)) is rec
