"""
consolidator/shared/risk.py
───────────────────────────
RiskAssessor: grades how disruptive a single MigrationStep would be.

What this is
─────────────
Every migration the orchestrator touches is passed through the same
stateless grading function. The grade decides which automation tier may
act on it (see SafetyThreshold), and the rest of the output (downtime,
impact, commands, rollback) is operator guidance printed alongside it.

Risk score
───────────
Additive, one term per matched factor. Substring matches on the workload
name are case-sensitive.

  database / postgres / mysql   +50   stateful workload
  cache / redis                 +30   potential data loss
  api / gateway                 +40   user-facing
  cpu > 4 cores or mem > 8 GiB  +20   high resource footprint
  replicas == 1                 +30   no redundancy during migration

  score ≥ 70 → high,  score ≥ 40 → medium,  else low.

Example: "payments-database-primary" with one replica and 6 cores of usage
scores 50 + 20 + 30 = 100 → high.

Downtime estimate
──────────────────
  5 s pod restart  (+15 s volume attach)  (+10 s init containers)  + 5 s health checks

``can_be_zero`` is only True when more than one replica keeps serving.

Standalone use:
    from consolidator.shared.risk import RiskAssessor
    risk = RiskAssessor().assess_risk(step)
"""

from __future__ import annotations

from typing import Dict, List, Sequence

from consolidator.shared.models import (
    DowntimeEstimate,
    ImpactAssessment,
    MigrationCommands,
    MigrationStep,
    RiskAssessment,
    RiskLevel,
    RollbackPlan,
    SafetyThreshold,
)

# ── Risk weights ──────────────────────────────────────────────────────────────

DATABASE_TERMS: Sequence[str] = ("database", "postgres", "mysql")
CACHE_TERMS: Sequence[str] = ("cache", "redis")
API_TERMS: Sequence[str] = ("api", "gateway")

DATABASE_RISK: int = 50
CACHE_RISK: int = 30
API_RISK: int = 40
HIGH_RESOURCE_RISK: int = 20
SINGLE_REPLICA_RISK: int = 30

HIGH_CPU_CORES: float = 4.0
"""Usage above this many cores counts as a high resource footprint."""

HIGH_MEMORY_MIB: float = 8192.0
"""Usage above this many MiB counts as a high resource footprint."""

HIGH_RISK_SCORE: int = 70
MEDIUM_RISK_SCORE: int = 40

# ── Downtime model (milliseconds) ─────────────────────────────────────────────

BASE_RESTART_MS: int = 5000
VOLUME_ATTACH_MS: int = 15000
INIT_CONTAINER_MS: int = 10000
HEALTH_CHECK_MS: int = 5000

PERFORMANCE_IMPACT: str = "Temporary 10-20ms latency increase during migration"

ALLOWED_RISK_LEVELS: Dict[SafetyThreshold, List[RiskLevel]] = {
    SafetyThreshold.CONSERVATIVE: [RiskLevel.LOW],
    SafetyThreshold.MEDIUM: [RiskLevel.LOW, RiskLevel.MEDIUM],
    SafetyThreshold.AGGRESSIVE: [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH],
}
"""Risk tiers each safety threshold may execute without a human."""


def _name_contains(name: str, terms: Sequence[str]) -> bool:
    return any(term in name for term in terms)


class RiskAssessor:
    """
    Stateless grader. One instance can be shared by every orchestrator.
    """

    def assess_risk(self, step: MigrationStep) -> RiskAssessment:
        name = step.workload_name
        score = 0
        factors: List[str] = []

        if _name_contains(name, DATABASE_TERMS):
            score += DATABASE_RISK
            factors.append("Stateful workload (database)")

        if _name_contains(name, CACHE_TERMS):
            score += CACHE_RISK
            factors.append("Cache service - potential data loss")

        if _name_contains(name, API_TERMS):
            score += API_RISK
            factors.append("API gateway - user-facing service")

        if step.cpu_usage > HIGH_CPU_CORES or step.memory_usage > HIGH_MEMORY_MIB:
            score += HIGH_RESOURCE_RISK
            factors.append("High resource consumption")

        if step.replicas == 1:
            score += SINGLE_REPLICA_RISK
            factors.append("Single replica - no redundancy during migration")

        if score >= HIGH_RISK_SCORE:
            level, reason = RiskLevel.HIGH, "Critical service with high impact"
        elif score >= MEDIUM_RISK_SCORE:
            level, reason = RiskLevel.MEDIUM, "Important service requiring careful migration"
        else:
            level, reason = RiskLevel.LOW, "Stateless service with low impact"

        return RiskAssessment(level=level, score=score, factors=factors, reason=reason)

    def estimate_downtime(self, step: MigrationStep) -> DowntimeEstimate:
        downtime_ms = BASE_RESTART_MS
        if step.has_volumes:
            downtime_ms += VOLUME_ATTACH_MS
        if step.has_init_containers:
            downtime_ms += INIT_CONTAINER_MS
        downtime_ms += HEALTH_CHECK_MS

        return DowntimeEstimate(
            estimated_ms=downtime_ms,
            can_be_zero=step.replicas is not None and step.replicas > 1,
        )

    def assess_impact(self, step: MigrationStep) -> ImpactAssessment:
        name = step.workload_name
        if _name_contains(name, DATABASE_TERMS):
            data_loss = "Medium"
        elif _name_contains(name, CACHE_TERMS):
            data_loss = "Low"
        else:
            data_loss = "None"

        return ImpactAssessment(
            users="High" if _name_contains(name, API_TERMS) else "Low",
            services=list(step.dependents),
            data_loss=data_loss,
            performance=PERFORMANCE_IMPACT,
        )

    @staticmethod
    def is_safe_for_auto_execution(
        risk: RiskAssessment,
        threshold: SafetyThreshold,
    ) -> bool:
        allowed = ALLOWED_RISK_LEVELS.get(
            threshold, ALLOWED_RISK_LEVELS[SafetyThreshold.CONSERVATIVE]
        )
        return risk.level in allowed

    @staticmethod
    def generate_commands(step: MigrationStep) -> MigrationCommands:
        source = step.source_node or "<unassigned>"
        return MigrationCommands(
            drain=f"kubectl drain {source} --ignore-daemonsets --delete-emptydir-data",
            evict=(
                f"kubectl delete pod {step.workload_name} "
                f"-n {step.namespace} --grace-period=30"
            ),
            cordon=f"kubectl cordon {source}",
            uncordon=f"kubectl uncordon {source}",
            verify=f"kubectl get pod -o wide | grep {step.workload_name}",
        )

    @staticmethod
    def generate_rollback_plan(step: MigrationStep, recommendation_id: str) -> RollbackPlan:
        source = step.source_node or "<unassigned>"
        return RollbackPlan(
            steps=[
                f"1. Cordon target node: kubectl cordon {step.target_node}",
                (
                    "2. Delete pod to force reschedule: "
                    f"kubectl delete pod {step.workload_name} -n {step.namespace}"
                ),
                f"3. Uncordon original node: kubectl uncordon {source}",
                "4. Verify pod is running on original node",
            ],
            automated=f"kubectl optimize rollback {recommendation_id}",
        )
