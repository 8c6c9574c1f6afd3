"""
consolidator/control_plane/limit_analyzer.py
────────────────────────────────────────────
LimitAnalyzer: declared limits versus observed usage, per workload.

Where ClusterModel.identify_overprovisioned_workloads() answers "which
workloads could shrink?", this module grades every workload and prices the
result, so the service report can say how much money right-sizing saves.

Status bands (usage as % of limit)
───────────────────────────────────
            SEVERELY UNDER   UNDER    OPTIMAL   HIGH    CRITICAL
  CPU       < 10             < 30     < 70      < 90    ≥ 90
  Memory    < 20             < 40     < 75      < 90    ≥ 90

Classification (mean of the CPU and memory ratios)
───────────────────────────────────────────────────
  < 30  → HIGHLY OVER-PROVISIONED, suggested limit ceil(usage × 2)
  > 80  → UNDER-PROVISIONED,       suggested limit ceil(limit × 1.5)
  else  → OPTIMIZED

Pricing: 30 USD per core-month and 4 USD per GiB-month.
"""

from __future__ import annotations

import logging
import math
from typing import List, Sequence, Tuple

from consolidator.shared.models import (
    DimensionLimitStatus,
    LimitReport,
    ResourceClaim,
    RightSizingAction,
    RightSizingPlan,
    TypedRecommendation,
    Workload,
    WorkloadLimitAnalysis,
    ratio,
)

logger = logging.getLogger(__name__)

CPU_BANDS: Sequence[Tuple[float, str]] = (
    (10.0, "SEVERELY UNDERUTILIZED"),
    (30.0, "UNDERUTILIZED"),
    (70.0, "OPTIMAL"),
    (90.0, "HIGH"),
)
MEMORY_BANDS: Sequence[Tuple[float, str]] = (
    (20.0, "SEVERELY UNDERUTILIZED"),
    (40.0, "UNDERUTILIZED"),
    (75.0, "OPTIMAL"),
    (90.0, "HIGH"),
)

OVER_PROVISIONED_PCT: float = 30.0
UNDER_PROVISIONED_PCT: float = 80.0
REDUCE_FACTOR: float = 2.0
INCREASE_FACTOR: float = 1.5

CPU_COST_PER_CORE_MONTH: float = 30.0
MEMORY_COST_PER_GIB_MONTH: float = 4.0

OPTIMIZATION_SCORE_TARGET: float = 50.0
"""Below this share of optimized workloads the report flags a real opportunity."""


def _band(value: float, bands: Sequence[Tuple[float, str]]) -> str:
    for upper, label in bands:
        if value < upper:
            return label
    return "CRITICAL"


def cpu_status(usage_ratio: float) -> str:
    return _band(usage_ratio, CPU_BANDS)


def memory_status(usage_ratio: float) -> str:
    return _band(usage_ratio, MEMORY_BANDS)


def _status(claim: ResourceClaim, status: str) -> DimensionLimitStatus:
    return DimensionLimitStatus(
        limit=claim.limit,
        request=claim.request,
        usage=claim.usage,
        usage_ratio=claim.usage_ratio,
        status=status,
    )


class LimitAnalyzer:
    """Grades the workloads of one ClusterModel (or any workload list)."""

    def __init__(self, workloads: Sequence[Workload]) -> None:
        self._workloads = list(workloads)

    def analyze_limits_vs_usage(self) -> LimitReport:
        report = LimitReport()

        for workload in self._workloads:
            cpu_ratio = workload.cpu.usage_ratio
            mem_ratio = workload.memory.usage_ratio
            mean_ratio = (cpu_ratio + mem_ratio) / 2.0

            fields = dict(
                id=workload.id,
                name=workload.name,
                node_id=workload.node_id,
                cpu=_status(workload.cpu, cpu_status(cpu_ratio)),
                memory=_status(workload.memory, memory_status(mem_ratio)),
            )

            if mean_ratio < OVER_PROVISIONED_PCT:
                suggested_cpu = float(math.ceil(workload.cpu.usage * REDUCE_FACTOR))
                suggested_mem = float(math.ceil(workload.memory.usage * REDUCE_FACTOR))
                # Rounding up can overshoot a tiny limit; that is no saving.
                cpu_savings = max(0.0, workload.cpu.limit - suggested_cpu)
                mem_savings = max(0.0, workload.memory.limit - suggested_mem)
                analysis = report.over_provisioned
                entry = dict(
                    recommendation="HIGHLY OVER-PROVISIONED",
                    suggested_cpu_limit=suggested_cpu,
                    suggested_memory_limit=suggested_mem,
                    cpu_savings=cpu_savings,
                    memory_savings=mem_savings,
                )
                report.potential_cpu_savings += cpu_savings
                report.potential_memory_savings += mem_savings
            elif mean_ratio > UNDER_PROVISIONED_PCT:
                analysis = report.under_provisioned
                entry = dict(
                    recommendation="UNDER-PROVISIONED",
                    suggested_cpu_limit=float(math.ceil(workload.cpu.limit * INCREASE_FACTOR)),
                    suggested_memory_limit=float(
                        math.ceil(workload.memory.limit * INCREASE_FACTOR)
                    ),
                )
            else:
                analysis = report.optimized
                entry = dict(recommendation="OPTIMIZED")

            analysis.append(WorkloadLimitAnalysis(**fields, **entry))

        report.recommendations = self._recommendations(report)
        return report

    def _recommendations(self, report: LimitReport) -> List[TypedRecommendation]:
        recommendations: List[TypedRecommendation] = []

        if report.over_provisioned:
            mean_usage = sum(
                (w.cpu.usage_ratio + w.memory.usage_ratio) / 2.0
                for w in report.over_provisioned
            ) / len(report.over_provisioned)
            recommendations.append(
                TypedRecommendation(
                    type="COST_OPTIMIZATION",
                    priority="HIGH",
                    message=(
                        f"{len(report.over_provisioned)} workloads are over-provisioned "
                        f"(avg {mean_usage:.2f}% utilization)"
                    ),
                    action="Reduce limits to save resources",
                    potential_savings=(
                        f"CPU: {report.potential_cpu_savings:.2f} cores, "
                        f"Memory: {report.potential_memory_savings / 1024:.2f} GB"
                    ),
                )
            )

        if report.under_provisioned:
            recommendations.append(
                TypedRecommendation(
                    type="PERFORMANCE",
                    priority="CRITICAL",
                    message=(
                        f"{len(report.under_provisioned)} workloads are under-provisioned "
                        "and may face performance issues"
                    ),
                    action="Increase limits to prevent throttling and OOM kills",
                )
            )

        score = ratio(len(report.optimized), len(self._workloads)) * 100.0
        recommendations.append(
            TypedRecommendation(
                type="OVERALL",
                priority="INFO",
                message=f"Resource optimization score: {score:.2f}%",
                action=(
                    "Significant optimization opportunity exists"
                    if score < OPTIMIZATION_SCORE_TARGET
                    else "Resource allocation is reasonably optimized"
                ),
            )
        )
        return recommendations

    def generate_right_sizing_report(self) -> RightSizingPlan:
        analysis = self.analyze_limits_vs_usage()
        actions: List[RightSizingAction] = []

        for workload in analysis.over_provisioned:
            actions.append(
                RightSizingAction(
                    workload_name=workload.name,
                    action="REDUCE",
                    current_cpu=workload.cpu.limit,
                    current_memory=workload.memory.limit,
                    recommended_cpu=workload.suggested_cpu_limit or 0.0,
                    recommended_memory=workload.suggested_memory_limit or 0.0,
                    cpu_savings=workload.cpu_savings,
                    memory_savings=workload.memory_savings,
                    risk="LOW",
                )
            )

        for workload in analysis.under_provisioned:
            actions.append(
                RightSizingAction(
                    workload_name=workload.name,
                    action="INCREASE",
                    current_cpu=workload.cpu.limit,
                    current_memory=workload.memory.limit,
                    recommended_cpu=workload.suggested_cpu_limit or 0.0,
                    recommended_memory=workload.suggested_memory_limit or 0.0,
                    risk="HIGH - Current performance may be impacted",
                )
            )

        monthly = (
            analysis.potential_cpu_savings * CPU_COST_PER_CORE_MONTH
            + analysis.potential_memory_savings / 1024.0 * MEMORY_COST_PER_GIB_MONTH
        )
        logger.info(
            "Right-sizing: %d of %d workload(s) need changes, est. $%.2f/month",
            len(actions), len(self._workloads), monthly,
        )
        return RightSizingPlan(
            total_workloads=len(self._workloads),
            needs_right_sizing=len(actions),
            already_optimized=len(analysis.optimized),
            actions=actions,
            estimated_monthly_savings_usd=monthly,
        )
