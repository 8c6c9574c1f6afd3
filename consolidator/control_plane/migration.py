"""
consolidator/control_plane/migration.py
───────────────────────────────────────
MigrationOrchestrator: turns a list of MigrationSteps into graded,
partially automated recommendations.

What this is
─────────────
Placement and consolidation only say *where* workloads should run. This
module decides what may happen about it without a human, and produces the
operator-facing material (risk, impact, downtime, kubectl commands,
rollback plan) for everything else. It never evicts or moves anything;
"executed" means "cleared to run now" and is reported back to the caller.

The four modes
───────────────
  observe    Every step becomes a Recommended entry. Summary + next steps.
             No state transitions.

  manual     Workloads named in options.auto_approve are executed now
             (trigger "pre-approval"). Everything else goes to
             PendingApproval with a single-use token and a one-hour expiry.

  semi-auto  risk level within the safety threshold tier:
               inside a safe window  → Executed (trigger "safe-window")
               outside               → Scheduled for the next window
             otherwise → PendingApproval, reason "High risk: <reason>".

             threshold      executes risk levels
             ─────────      ────────────────────
             conservative   low
             medium         low, medium
             aggressive     low, medium, high

  full-auto  Refused with FullAutoNotConfirmedError unless
             options.confirm_full_auto is set; the check happens before any
             recommendation is built. When confirmed, every step is Executed
             or Scheduled. Nothing is ever routed to approval.

Clock
──────
The orchestrator reads the time once per execute_plan() call from an
injectable clock (default datetime.now), so a run is internally consistent
and tests can pin the safe-window decision.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from consolidator.control_plane import lifecycle
from consolidator.control_plane.safe_window import find_safe_window
from consolidator.shared.config import MigrationOptions
from consolidator.shared.models import (
    MigrationMode,
    MigrationRecommendation,
    MigrationRunResult,
    MigrationStep,
    RiskLevel,
    RunSummary,
)
from consolidator.shared.risk import RiskAssessor

logger = logging.getLogger(__name__)

# ── Orchestrator constants ────────────────────────────────────────────────────

APPROVAL_TTL: timedelta = timedelta(hours=1)
"""How long a pending approval stays valid."""

SAVINGS_PER_MIGRATION_USD: float = 150.0
"""Flat monthly savings credited per recommended migration in the run summary."""

FULL_AUTO_WARNING: str = "FULL AUTO MODE - All migrations will be executed automatically!"

OBSERVE_NEXT_STEPS: List[str] = [
    "Review recommendations",
    "Run with --mode=manual to apply selected migrations",
    "Or apply individual migrations using provided commands",
]


class ConfigurationError(Exception):
    """Raised when migration options are inconsistent with the requested mode."""


class FullAutoNotConfirmedError(ConfigurationError):
    """
    Raised when full-auto mode is requested without explicit confirmation.

    Nothing has been built or decided when this is raised.
    """

    def __init__(self) -> None:
        super().__init__(
            "Full auto mode requires explicit confirmation with --confirm-full-auto flag"
        )


class MigrationOrchestrator:
    """
    Drives one of the four automation modes over a list of MigrationSteps.

    Usage:
        orchestrator = MigrationOrchestrator()
        result = orchestrator.execute_plan(
            plan.migration_steps,
            MigrationOptions(mode="semi-auto", safety_threshold="conservative"),
        )
        for rec in result.pending_approvals:
            print(rec.state.approve_command)
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        risk_assessor: Optional[RiskAssessor] = None,
        approval_ttl: timedelta = APPROVAL_TTL,
    ) -> None:
        self._clock = clock or datetime.now
        self._risk = risk_assessor or RiskAssessor()
        self._approval_ttl = approval_ttl

    # ── Recommendation building ───────────────────────────────────────────────

    @staticmethod
    def generate_id(now: datetime) -> str:
        return f"mig-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"

    @staticmethod
    def generate_approval_token() -> str:
        return uuid.uuid4().hex

    def create_recommendation(
        self,
        step: MigrationStep,
        now: datetime,
    ) -> MigrationRecommendation:
        rec_id = self.generate_id(now)
        return MigrationRecommendation(
            id=rec_id,
            created_at=now,
            workload_id=step.workload_id,
            workload=step.workload_name,
            namespace=step.namespace,
            source_node=step.source_node,
            target_node=step.target_node,
            reason=step.reason,
            risk=self._risk.assess_risk(step),
            impact=self._risk.assess_impact(step),
            downtime=self._risk.estimate_downtime(step),
            commands=self._risk.generate_commands(step),
            rollback=self._risk.generate_rollback_plan(step, rec_id),
        )

    def _pending(
        self,
        rec: MigrationRecommendation,
        now: datetime,
        reason: Optional[str] = None,
    ) -> MigrationRecommendation:
        return lifecycle.submit_for_approval(
            rec,
            token=self.generate_approval_token(),
            expires_at=now + self._approval_ttl,
            reason=reason,
        )

    # ── Entry point ───────────────────────────────────────────────────────────

    def execute_plan(
        self,
        steps: Sequence[MigrationStep],
        options: Optional[MigrationOptions] = None,
    ) -> MigrationRunResult:
        options = options or MigrationOptions()
        mode = options.mode

        if mode == MigrationMode.FULL_AUTO and not options.confirm_full_auto:
            logger.warning("Refusing full-auto migration run without confirmation")
            raise FullAutoNotConfirmedError()

        now = self._clock()
        result = MigrationRunResult(mode=mode)
        created = [self.create_recommendation(step, now) for step in steps]

        if mode == MigrationMode.OBSERVE:
            self._observe(created, result)
        elif mode == MigrationMode.MANUAL:
            self._manual(created, result, options, now)
        elif mode == MigrationMode.SEMI_AUTO:
            self._semi_auto(created, result, options, now)
        else:
            self._full_auto(created, result, now)

        result.summary = self.summarize(created)
        logger.info(
            "Migration run (%s): %d step(s) → %d executed, %d scheduled, "
            "%d pending approval, %d recommended",
            mode.value,
            len(created),
            len(result.executed),
            len(result.scheduled),
            len(result.pending_approvals),
            len(result.recommendations),
        )
        return result

    # ── Modes ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _observe(created: List[MigrationRecommendation], result: MigrationRunResult) -> None:
        result.recommendations.extend(created)
        result.next_steps = list(OBSERVE_NEXT_STEPS)

    def _manual(
        self,
        created: List[MigrationRecommendation],
        result: MigrationRunResult,
        options: MigrationOptions,
        now: datetime,
    ) -> None:
        pre_approved = set(options.auto_approve)
        for rec in created:
            if rec.workload in pre_approved:
                result.executed.append(lifecycle.execute(rec, now, trigger="pre-approval"))
            else:
                result.pending_approvals.append(self._pending(rec, now))

        if result.pending_approvals:
            result.interactive_prompt = True
            result.message = (
                f"{len(result.pending_approvals)} migrations pending approval. "
                "Review and approve/reject each one."
            )

    def _semi_auto(
        self,
        created: List[MigrationRecommendation],
        result: MigrationRunResult,
        options: MigrationOptions,
        now: datetime,
    ) -> None:
        window = find_safe_window(now)
        for rec in created:
            if not self._risk.is_safe_for_auto_execution(rec.risk, options.safety_threshold):
                result.pending_approvals.append(
                    self._pending(rec, now, reason=f"High risk: {rec.risk.reason}")
                )
            elif window.is_now:
                result.executed.append(lifecycle.execute(rec, now, trigger="safe-window"))
            else:
                result.scheduled.append(lifecycle.schedule(rec, window))

        if result.pending_approvals:
            result.interactive_prompt = True
            result.message = (
                f"{len(result.pending_approvals)} migrations exceed the "
                f"{options.safety_threshold.value} safety threshold and need approval."
            )

    def _full_auto(
        self,
        created: List[MigrationRecommendation],
        result: MigrationRunResult,
        now: datetime,
    ) -> None:
        result.warning = FULL_AUTO_WARNING
        window = find_safe_window(now)
        for rec in created:
            if window.is_now:
                result.executed.append(lifecycle.execute(rec, now, trigger="safe-window"))
            else:
                result.scheduled.append(lifecycle.schedule(rec, window))

    # ── Summary ───────────────────────────────────────────────────────────────

    @staticmethod
    def summarize(recommendations: Sequence[MigrationRecommendation]) -> RunSummary:
        breakdown: Dict[str, int] = {level.value: 0 for level in RiskLevel}
        for rec in recommendations:
            breakdown[rec.risk.level.value] += 1
        total_ms = sum(rec.downtime.estimated_ms for rec in recommendations)
        return RunSummary(
            total=len(recommendations),
            risk_breakdown=breakdown,
            estimated_monthly_savings_usd=len(recommendations) * SAVINGS_PER_MIGRATION_USD,
            estimated_total_downtime_s=math.ceil(total_ms / 1000),
        )
