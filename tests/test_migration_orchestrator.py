"""
tests/test_migration_orchestrator.py
────────────────────────────────────
Test suite for consolidator/control_plane/migration.py

Test groups
────────────
Group 1: recommendation building — ids, risk, guidance
Group 2: observe mode
Group 3: manual mode             — pre-approval, tokens, expiry
Group 4: semi-auto mode          — safety threshold and safe window
Group 5: full-auto mode          — confirmation gate
Group 6: run summary
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import List

import pytest

from consolidator.control_plane.migration import (
    APPROVAL_TTL,
    FULL_AUTO_WARNING,
    OBSERVE_NEXT_STEPS,
    ConfigurationError,
    FullAutoNotConfirmedError,
    MigrationOrchestrator,
)
from consolidator.shared.config import MigrationOptions
from consolidator.shared.models import (
    MigrationMode,
    MigrationStep,
    RecommendationStatus,
    RiskLevel,
    SafetyThreshold,
)

IN_WINDOW = datetime(2024, 1, 3, 3, 0)       # Wednesday, inside 02:00-05:00
OUT_OF_WINDOW = datetime(2024, 1, 3, 10, 0)  # Wednesday, after the window


def _make_step(name: str, **kwargs) -> MigrationStep:
    return MigrationStep(
        workload_id=f"{name}-id",
        workload_name=name,
        source_node="node-a",
        target_node="node-b",
        reason="Consolidation for cost savings",
        **kwargs,
    )


@pytest.fixture
def steps() -> List[MigrationStep]:
    """One step per risk level: low, medium, high."""
    return [
        _make_step("frontend", replicas=3),
        _make_step("orders-api", replicas=2),
        _make_step("payments-database", replicas=1),
    ]


def _orchestrator(now: datetime = OUT_OF_WINDOW) -> MigrationOrchestrator:
    return MigrationOrchestrator(clock=lambda: now)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: recommendation building
# ─────────────────────────────────────────────────────────────────────────────

class TestCreateRecommendation:

    def test_id_format(self) -> None:
        rec_id = MigrationOrchestrator.generate_id(OUT_OF_WINDOW)
        assert re.match(r"^mig-\d+-[0-9a-f]{9}$", rec_id), rec_id

    def test_ids_and_tokens_are_unique(self) -> None:
        ids = {MigrationOrchestrator.generate_id(OUT_OF_WINDOW) for _ in range(50)}
        tokens = {MigrationOrchestrator.generate_approval_token() for _ in range(50)}
        assert len(ids) == 50
        assert len(tokens) == 50

    def test_recommendation_carries_grading_and_guidance(self, steps) -> None:
        rec = _orchestrator().create_recommendation(steps[2], OUT_OF_WINDOW)

        assert rec.workload == "payments-database"
        assert rec.workload_id == "payments-database-id"
        assert rec.created_at == OUT_OF_WINDOW
        assert rec.risk.level == RiskLevel.HIGH
        assert rec.impact.data_loss == "Medium"
        assert rec.downtime.estimated_ms == 10000
        assert rec.commands.cordon == "kubectl cordon node-a"
        assert rec.rollback.automated == f"kubectl optimize rollback {rec.id}"
        assert rec.status == RecommendationStatus.RECOMMENDED


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: observe mode
# ─────────────────────────────────────────────────────────────────────────────

class TestObserve:

    def test_everything_is_only_recommended(self, steps) -> None:
        result = _orchestrator().execute_plan(steps)

        assert result.mode == MigrationMode.OBSERVE
        assert len(result.recommendations) == 3
        assert all(r.status == RecommendationStatus.RECOMMENDED for r in result.recommendations)
        assert result.executed == result.scheduled == result.pending_approvals == []
        assert result.next_steps == OBSERVE_NEXT_STEPS
        assert not result.interactive_prompt

    def test_empty_plan(self) -> None:
        result = _orchestrator().execute_plan([])
        assert result.recommendations == []
        assert result.summary.total == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: manual mode
# ─────────────────────────────────────────────────────────────────────────────

class TestManual:

    def test_pre_approved_names_execute(self, steps) -> None:
        options = MigrationOptions(mode="manual", auto_approve=["frontend"])
        result = _orchestrator().execute_plan(steps, options)

        assert [r.workload for r in result.executed] == ["frontend"]
        assert result.executed[0].state.trigger == "pre-approval"
        assert [r.workload for r in result.pending_approvals] == ["orders-api", "payments-database"]

    def test_pending_entries_carry_tokens_and_expiry(self, steps) -> None:
        result = _orchestrator().execute_plan(steps, MigrationOptions(mode="manual"))
        states = [r.state for r in result.pending_approvals]

        assert len(states) == 3
        assert len({s.approval_token for s in states}) == 3
        assert all(s.expires_at == OUT_OF_WINDOW + APPROVAL_TTL for s in states)
        assert APPROVAL_TTL == timedelta(hours=1)

    def test_prompt_and_message(self, steps) -> None:
        result = _orchestrator().execute_plan(steps, MigrationOptions(mode="manual"))
        assert result.interactive_prompt
        assert result.message == "3 migrations pending approval. Review and approve/reject each one."

    def test_no_prompt_when_everything_pre_approved(self, steps) -> None:
        options = MigrationOptions(
            mode="manual", auto_approve=["frontend", "orders-api", "payments-database"]
        )
        result = _orchestrator().execute_plan(steps, options)

        assert len(result.executed) == 3
        assert not result.interactive_prompt
        assert result.message is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: semi-auto mode
# ─────────────────────────────────────────────────────────────────────────────

class TestSemiAuto:

    def test_inside_window_medium_threshold(self, steps) -> None:
        options = MigrationOptions(mode="semi-auto", safety_threshold="medium")
        result = _orchestrator(IN_WINDOW).execute_plan(steps, options)

        assert [r.workload for r in result.executed] == ["frontend", "orders-api"]
        assert all(r.state.trigger == "safe-window" for r in result.executed)
        assert [r.workload for r in result.pending_approvals] == ["payments-database"]
        assert result.pending_approvals[0].state.reason == "High risk: Critical service with high impact"
        assert result.interactive_prompt

    def test_outside_window_schedules_eligible_steps(self, steps) -> None:
        options = MigrationOptions(mode="semi-auto", safety_threshold="medium")
        result = _orchestrator(OUT_OF_WINDOW).execute_plan(steps, options)

        assert result.executed == []
        assert [r.workload for r in result.scheduled] == ["frontend", "orders-api"]
        assert result.scheduled[0].state.scheduled_for == datetime(2024, 1, 4, 2, 0)
        assert result.scheduled[0].state.window_end == datetime(2024, 1, 4, 5, 0)

    def test_conservative_threshold_only_runs_low_risk(self, steps) -> None:
        options = MigrationOptions(mode="semi-auto", safety_threshold="conservative")
        result = _orchestrator(IN_WINDOW).execute_plan(steps, options)

        assert [r.workload for r in result.executed] == ["frontend"]
        assert len(result.pending_approvals) == 2

    def test_aggressive_threshold_runs_everything(self, steps) -> None:
        options = MigrationOptions(mode="semi-auto", safety_threshold="aggressive")
        result = _orchestrator(IN_WINDOW).execute_plan(steps, options)

        assert len(result.executed) == 3
        assert result.pending_approvals == []
        assert not result.interactive_prompt

    def test_unknown_threshold_falls_back_to_conservative(self) -> None:
        options = MigrationOptions(mode="semi-auto", safety_threshold="yolo")
        assert options.safety_threshold == SafetyThreshold.CONSERVATIVE

    def test_unknown_mode_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            MigrationOptions(mode="autopilot")


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: full-auto mode
# ─────────────────────────────────────────────────────────────────────────────

class TestFullAuto:

    def test_requires_confirmation(self, steps) -> None:
        with pytest.raises(FullAutoNotConfirmedError) as exc_info:
            _orchestrator().execute_plan(steps, MigrationOptions(mode="full-auto"))
        assert isinstance(exc_info.value, ConfigurationError)
        assert "--confirm-full-auto" in str(exc_info.value)

    def test_confirmed_inside_window_executes_everything(self, steps) -> None:
        options = MigrationOptions(mode="full-auto", confirm_full_auto=True)
        result = _orchestrator(IN_WINDOW).execute_plan(steps, options)

        assert result.warning == FULL_AUTO_WARNING
        assert len(result.executed) == 3
        assert result.pending_approvals == []

    def test_confirmed_outside_window_schedules_everything(self, steps) -> None:
        options = MigrationOptions(mode="full-auto", confirm_full_auto=True)
        result = _orchestrator(OUT_OF_WINDOW).execute_plan(steps, options)

        assert len(result.scheduled) == 3
        assert result.executed == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: run summary
# ─────────────────────────────────────────────────────────────────────────────

class TestSummary:

    @pytest.mark.parametrize("mode", ["observe", "manual", "semi-auto"])
    def test_summary_in_every_mode(self, steps, mode) -> None:
        result = _orchestrator().execute_plan(steps, MigrationOptions(mode=mode))
        summary = result.summary

        assert summary.total == 3
        assert summary.risk_breakdown == {"low": 1, "medium": 1, "high": 1}
        assert summary.estimated_monthly_savings_usd == pytest.approx(450.0)
        assert summary.estimated_savings == "$450.00/month"
        assert summary.estimated_total_downtime_s == 30

    def test_downtime_includes_volumes(self) -> None:
        result = _orchestrator().execute_plan([_make_step("db-backup", has_volumes=True)])
        assert result.summary.estimated_total_downtime_s == 25
