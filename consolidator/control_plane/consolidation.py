"""
consolidator/control_plane/consolidation.py
───────────────────────────────────────────
ConsolidationPredictor: can this fleet run on fewer nodes, and how?

How feasibility is decided
───────────────────────────
  required_cpu    = Σ workload cpu.usage    × (1 + SAFETY_MARGIN)
  required_memory = Σ workload memory.usage × (1 + SAFETY_MARGIN)

Nodes are taken largest first (cpu.total + memory.total, stable on ties)
until both requirements are covered. The number taken is required_nodes,
and the plan is feasible iff required_nodes < current node count.

Each taken node becomes a target with
  allocated = min(total requirement with margin, node total)
per dimension. That is the budget generate_migration_plan() fills.

Migration plan
───────────────
Workloads are grouped by their current node, groups visited in sorted
node-id order (workloads without a node last), workloads within a group in
registration order. Each workload goes to the current target if it fits
the remaining budget; otherwise the cursor advances to the next target.
There is no backtracking. When targets run out, the workload and every
workload after it is listed in ConsolidationPlan.unmigrated and a warning
is added, so nothing is silently dropped. Workloads that already run on a
kept target node are left where they are instead.

A step is emitted only when the source node differs from the target.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from consolidator.control_plane.cluster_model import ClusterModel
from consolidator.shared.models import (
    ConsolidationPlan,
    ConsolidationSavings,
    MigrationStep,
    Node,
    TargetNodeAllocation,
    UtilizationReport,
    Workload,
    ratio,
)
from consolidator.shared.risk import RiskAssessor

logger = logging.getLogger(__name__)

# ── Consolidation constants ───────────────────────────────────────────────────

SAFETY_MARGIN: float = 0.15
"""Proportional buffer added to the summed usage before sizing the target set."""

OVER_ALLOCATION_PCT: float = 100.0
"""A node whose limits exceed its capacity by any amount is flagged."""

HIGH_WORKLOAD_USAGE_PCT: float = 80.0
"""Workloads above 80% of their own limit have little room to absorb a move."""

CONSOLIDATION_REASON = "Consolidation for cost savings"


class ConsolidationPredictor:
    """
    Turns a ClusterModel into a minimum-node ConsolidationPlan.

    Read-only with respect to the model: it only calls analysis methods
    and reads records.

    Usage:
        predictor = ConsolidationPredictor(model)
        plan = predictor.generate_migration_plan()
        if plan.feasible:
            orchestrator.execute_plan(plan.migration_steps, options)
    """

    def __init__(
        self,
        model: ClusterModel,
        safety_margin: float = SAFETY_MARGIN,
        risk_assessor: Optional[RiskAssessor] = None,
    ) -> None:
        self._model = model
        self._safety_margin = safety_margin
        self._risk = risk_assessor or RiskAssessor()

    # ── Feasibility ───────────────────────────────────────────────────────────

    def _sorted_nodes(self) -> List[Node]:
        return sorted(
            self._model.nodes,
            key=lambda n: n.cpu.total + n.memory.total,
            reverse=True,
        )

    def can_consolidate(self) -> ConsolidationPlan:
        nodes = self._model.nodes
        workloads = self._model.workloads
        utilization = self._model.analyze_utilization()

        required_cpu = sum(w.cpu.usage for w in workloads)
        required_memory = sum(w.memory.usage for w in workloads)
        cpu_with_margin = required_cpu * (1.0 + self._safety_margin)
        memory_with_margin = required_memory * (1.0 + self._safety_margin)

        plan = ConsolidationPlan(current_nodes=len(nodes))
        sorted_nodes = self._sorted_nodes()

        remaining_cpu = cpu_with_margin
        remaining_memory = memory_with_margin
        for node in sorted_nodes:
            if remaining_cpu <= 0 and remaining_memory <= 0 and plan.target_nodes:
                break
            remaining_cpu -= node.cpu.total
            remaining_memory -= node.memory.total
            plan.target_nodes.append(
                TargetNodeAllocation(
                    node_id=node.id,
                    node_name=node.name,
                    allocated_cpu=min(cpu_with_margin, node.cpu.total),
                    allocated_memory=min(memory_with_margin, node.memory.total),
                )
            )

        plan.required_nodes = len(plan.target_nodes)
        plan.feasible = plan.required_nodes < plan.current_nodes

        if remaining_cpu > 0 or remaining_memory > 0:
            plan.warnings.append(
                f"Cluster capacity is insufficient for current usage plus "
                f"{self._safety_margin * 100:.0f}% safety margin "
                f"(short by {max(remaining_cpu, 0.0):.2f} cores, "
                f"{max(remaining_memory, 0.0):.2f} MiB)"
            )

        if plan.feasible:
            unused = sorted_nodes[plan.required_nodes:]
            saved = plan.current_nodes - plan.required_nodes
            plan.savings = ConsolidationSavings(
                node_reduction=saved,
                percent_reduction=ratio(saved, plan.current_nodes) * 100.0,
                cpu_saved=sum(n.cpu.total for n in unused),
                memory_saved=sum(n.memory.total for n in unused),
            )
            projected_cpu = ratio(
                required_cpu, plan.required_nodes * sorted_nodes[0].cpu.total
            ) * 100.0
            plan.recommendations.extend([
                f"Can consolidate from {plan.current_nodes} nodes to {plan.required_nodes} nodes",
                f"This would save {plan.savings.percent_reduction:.2f}% of infrastructure",
                (
                    f"CPU utilization would increase from "
                    f"{utilization.overall.cpu_utilization:.2f}% to {projected_cpu:.2f}%"
                ),
            ])

        self.check_for_risks(plan, utilization)
        logger.info(
            "Consolidation: %d → %d node(s), feasible=%s, %d warning(s)",
            plan.current_nodes, plan.required_nodes, plan.feasible, len(plan.warnings),
        )
        return plan

    def check_for_risks(self, plan: ConsolidationPlan, utilization: UtilizationReport) -> None:
        for node in utilization.nodes:
            if node.cpu.allocation_ratio > OVER_ALLOCATION_PCT:
                plan.warnings.append(
                    f"Node {node.name} has CPU over-allocation ({node.cpu.allocation_ratio:.2f}%)"
                )
            if node.memory.allocation_ratio > OVER_ALLOCATION_PCT:
                plan.warnings.append(
                    f"Node {node.name} has Memory over-allocation "
                    f"({node.memory.allocation_ratio:.2f}%)"
                )

        if plan.required_nodes == 1:
            plan.warnings.append("Single node consolidation creates a single point of failure")

        hot = [
            w for w in self._model.workloads
            if w.cpu.usage_ratio > HIGH_WORKLOAD_USAGE_PCT
            or w.memory.usage_ratio > HIGH_WORKLOAD_USAGE_PCT
        ]
        if hot:
            plan.warnings.append(
                f"{len(hot)} workloads are running at high utilization (>80%)"
            )

    # ── Migration plan ────────────────────────────────────────────────────────

    def _group_by_source(self) -> Dict[Optional[str], List[Workload]]:
        grouped: Dict[Optional[str], List[Workload]] = {}
        for workload in self._model.workloads:
            grouped.setdefault(workload.node_id, []).append(workload)
        ordered = sorted(grouped, key=lambda nid: (nid is None, nid or ""))
        return {nid: grouped[nid] for nid in ordered}

    @staticmethod
    def _leave_unmigrated(
        plan: ConsolidationPlan,
        workload: Workload,
        target_ids: Set[str],
    ) -> None:
        if workload.node_id in target_ids:
            logger.debug("Workload %s stays on kept node %s", workload.id, workload.node_id)
            return
        plan.unmigrated.append(workload.id)

    def generate_migration_plan(self) -> ConsolidationPlan:
        """
        can_consolidate() plus the migration steps that realise it.

        An infeasible plan is returned unchanged, with no steps.
        """
        plan = self.can_consolidate()
        if not plan.feasible or not plan.target_nodes:
            return plan

        targets = plan.target_nodes
        target_ids = {t.node_id for t in targets}
        cursor = 0
        budget_cpu = targets[0].allocated_cpu
        budget_memory = targets[0].allocated_memory
        exhausted = False

        for source, workloads in self._group_by_source().items():
            for workload in workloads:
                if exhausted:
                    self._leave_unmigrated(plan, workload, target_ids)
                    continue

                while workload.cpu.usage > budget_cpu or workload.memory.usage > budget_memory:
                    cursor += 1
                    if cursor >= len(targets):
                        exhausted = True
                        break
                    budget_cpu = targets[cursor].allocated_cpu
                    budget_memory = targets[cursor].allocated_memory

                if exhausted:
                    self._leave_unmigrated(plan, workload, target_ids)
                    continue

                target = targets[cursor]
                if source != target.node_id:
                    step = MigrationStep.for_workload(
                        workload,
                        target_node=target.node_id,
                        reason=CONSOLIDATION_REASON,
                        target_node_name=target.node_name,
                    )
                    step.risk_level = self._risk.assess_risk(step).level
                    plan.migration_steps.append(step)

                budget_cpu -= workload.cpu.usage
                budget_memory -= workload.memory.usage

        if plan.unmigrated:
            plan.warnings.append(
                f"{len(plan.unmigrated)} workloads did not fit any target node "
                "and need manual placement"
            )
            logger.warning(
                "Consolidation left %d workload(s) unmigrated: %s",
                len(plan.unmigrated), ", ".join(plan.unmigrated),
            )

        logger.info("Consolidation plan: %d migration step(s)", plan.total_migrations)
        return plan
