"""
consolidator/control_plane/cluster_model.py
───────────────────────────────────────────
ClusterModel: the in-memory resource model of one analysis cycle.

What this is
─────────────
Every optimizer reads the cluster through this model. It owns private
copies of the Node and Workload records handed to it, keeps the node-side
counters (`used`, `allocated`, workload list) consistent with the
workloads registered on each node, and produces the utilization report
the rest of the pipeline starts from.

Ownership
──────────
  add_node() / add_workload() store deep copies. The caller's records are
  never mutated.
  snapshot_nodes() hands out fresh deep copies, so an optimizer that
  simulates placements on them cannot leak changes back into the model.

Input inconsistencies
──────────────────────
A workload whose node_id is unknown is still recorded as a workload, but
no node counter is updated. The model logs a warning and keeps a
diagnostic string; it does not raise.

Utilization figures (per dimension, percentages, exact):
  utilization      = used / total × 100
  allocation_ratio = allocated / total × 100
  wasted_ratio     = (allocated − used) / total × 100
  node efficiency  = mean over dimensions of used / allocated × 100
                     (0 for a dimension with nothing allocated)

Every division goes through models.ratio(), so a zero-capacity node or an
empty cluster reports 0% instead of NaN.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from consolidator.shared.models import (
    DimensionUtilization,
    LimitRecommendation,
    Node,
    NodeUtilization,
    OverprovisionedWorkload,
    ResourceCapacity,
    ResourceClaim,
    UtilizationReport,
    Workload,
    ratio,
)

logger = logging.getLogger(__name__)

# ── Model constants ───────────────────────────────────────────────────────────

DEFAULT_REQUEST_FRACTION: float = 0.5
"""A workload without a declared request is assumed to request half its limit."""

OVERPROVISIONED_USAGE_PCT: float = 30.0
"""A dimension using less than 30% of its limit marks the workload over-provisioned."""

RECOMMENDED_LIMIT_FACTOR: float = 1.5
"""Recommended limit = usage × 1.5, never below the floors below."""

MIN_CPU_LIMIT: float = 0.1
"""Floor for a recommended CPU limit (cores)."""

MIN_MEMORY_LIMIT: float = 128.0
"""Floor for a recommended memory limit (MiB)."""


def _dimension(capacity: ResourceCapacity) -> DimensionUtilization:
    return DimensionUtilization(
        total=capacity.total,
        used=capacity.used,
        allocated=capacity.allocated,
        utilization=ratio(capacity.used, capacity.total) * 100.0,
        allocation_ratio=ratio(capacity.allocated, capacity.total) * 100.0,
        wasted_ratio=ratio(capacity.allocated - capacity.used, capacity.total) * 100.0,
    )


def _with_default_request(claim: ResourceClaim) -> ResourceClaim:
    if claim.request is not None:
        return claim.model_copy()
    return claim.model_copy(update={"request": claim.limit * DEFAULT_REQUEST_FRACTION})


class ClusterModel:
    """
    Nodes and workloads of one cluster snapshot.

    Usage:
        model = ClusterModel()
        for node in nodes:
            model.add_node(node)
        for workload in workloads:
            model.add_workload(workload)
        report = model.analyze_utilization()
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}
        self._workloads: Dict[str, Workload] = {}
        self.diagnostics: List[str] = []

    @classmethod
    def from_records(
        cls,
        nodes: Iterable[Node],
        workloads: Iterable[Workload],
    ) -> "ClusterModel":
        model = cls()
        for node in nodes:
            model.add_node(node)
        for workload in workloads:
            model.add_workload(workload)
        return model

    # ── Registration ──────────────────────────────────────────────────────────

    def add_node(self, node: Node) -> Node:
        if node.id in self._nodes:
            logger.warning("Node %s registered twice, replacing the earlier record", node.id)
        stored = node.model_copy(deep=True)
        self._nodes[stored.id] = stored
        return stored

    def add_workload(self, workload: Workload) -> Workload:
        """
        Register a workload and fold its usage and limit into its node.

        The node's `used` grows by the workload's usage and `allocated` by
        its limit. Registering a workload on an unknown node records the
        workload only. Registering a known id again replaces the earlier
        record and releases its counters from its old node first.
        """
        previous = self._workloads.get(workload.id)
        if previous is not None:
            logger.warning(
                "Workload %s registered twice, replacing the earlier record", workload.id
            )
            self._release(previous)

        stored = workload.model_copy(
            update={
                "cpu": _with_default_request(workload.cpu),
                "memory": _with_default_request(workload.memory),
            },
            deep=True,
        )
        self._workloads[stored.id] = stored

        if stored.node_id is None:
            logger.debug("Workload %s is not placed on any node", stored.id)
            return stored

        node = self._nodes.get(stored.node_id)
        if node is None:
            message = f"Workload {stored.id} references unknown node {stored.node_id!r}"
            logger.warning("%s", message)
            self.diagnostics.append(message)
            return stored

        node.cpu.used += stored.cpu.usage
        node.cpu.allocated += stored.cpu.limit
        node.memory.used += stored.memory.usage
        node.memory.allocated += stored.memory.limit
        if stored.id not in node.workloads:
            node.workloads.append(stored.id)
        return stored

    def _release(self, workload: Workload) -> None:
        node = self._nodes.get(workload.node_id) if workload.node_id else None
        if node is None:
            return
        node.cpu.used = max(0.0, node.cpu.used - workload.cpu.usage)
        node.cpu.allocated = max(0.0, node.cpu.allocated - workload.cpu.limit)
        node.memory.used = max(0.0, node.memory.used - workload.memory.usage)
        node.memory.allocated = max(0.0, node.memory.allocated - workload.memory.limit)
        if workload.id in node.workloads:
            node.workloads.remove(workload.id)

    # ── Read access ───────────────────────────────────────────────────────────

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    @property
    def workloads(self) -> List[Workload]:
        return list(self._workloads.values())

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def get_workload(self, workload_id: str) -> Optional[Workload]:
        return self._workloads.get(workload_id)

    def snapshot_nodes(self) -> List[Node]:
        """Deep copies of every node, safe to mutate in a simulation."""
        return [node.model_copy(deep=True) for node in self._nodes.values()]

    def snapshot_workloads(self) -> List[Workload]:
        return [w.model_copy(deep=True) for w in self._workloads.values()]

    # ── Analysis ──────────────────────────────────────────────────────────────

    @staticmethod
    def node_efficiency(node: Node) -> float:
        cpu_eff = ratio(node.cpu.used, node.cpu.allocated) * 100.0
        mem_eff = ratio(node.memory.used, node.memory.allocated) * 100.0
        return (cpu_eff + mem_eff) / 2.0

    def analyze_utilization(self) -> UtilizationReport:
        report = UtilizationReport()
        overall = report.overall

        for node in self._nodes.values():
            try:
                node_report = NodeUtilization(
                    id=node.id,
                    name=node.name,
                    cpu=_dimension(node.cpu),
                    memory=_dimension(node.memory),
                    workload_count=len(node.workloads),
                    efficiency=self.node_efficiency(node),
                )
            except (ArithmeticError, ValueError) as exc:
                message = f"Skipped node {node.id} in utilization analysis: {exc}"
                logger.warning("%s", message)
                report.diagnostics.append(message)
                continue

            report.nodes.append(node_report)
            overall.total_cpu += node.cpu.total
            overall.used_cpu += node.cpu.used
            overall.allocated_cpu += node.cpu.allocated
            overall.total_memory += node.memory.total
            overall.used_memory += node.memory.used
            overall.allocated_memory += node.memory.allocated

        overall.cpu_utilization = ratio(overall.used_cpu, overall.total_cpu) * 100.0
        overall.memory_utilization = ratio(overall.used_memory, overall.total_memory) * 100.0
        overall.cpu_allocation_ratio = ratio(overall.allocated_cpu, overall.total_cpu) * 100.0
        overall.memory_allocation_ratio = (
            ratio(overall.allocated_memory, overall.total_memory) * 100.0
        )
        report.diagnostics = list(self.diagnostics) + report.diagnostics
        return report

    def identify_overprovisioned_workloads(self) -> List[OverprovisionedWorkload]:
        """
        Workloads using less than 30% of their CPU or memory limit.

        A dimension without a limit (limit 0) is never the reason a workload
        is flagged; there is nothing to shrink.
        """
        flagged: List[OverprovisionedWorkload] = []
        for workload in self._workloads.values():
            try:
                cpu_ratio = workload.cpu.usage_ratio
                mem_ratio = workload.memory.usage_ratio
                cpu_low = workload.cpu.limit > 0 and cpu_ratio < OVERPROVISIONED_USAGE_PCT
                mem_low = workload.memory.limit > 0 and mem_ratio < OVERPROVISIONED_USAGE_PCT
                if not (cpu_low or mem_low):
                    continue

                flagged.append(
                    OverprovisionedWorkload(
                        id=workload.id,
                        name=workload.name,
                        node_id=workload.node_id,
                        cpu=LimitRecommendation(
                            limit=workload.cpu.limit,
                            usage=workload.cpu.usage,
                            usage_ratio=cpu_ratio,
                            recommended_limit=max(
                                workload.cpu.usage * RECOMMENDED_LIMIT_FACTOR, MIN_CPU_LIMIT
                            ),
                        ),
                        memory=LimitRecommendation(
                            limit=workload.memory.limit,
                            usage=workload.memory.usage,
                            usage_ratio=mem_ratio,
                            recommended_limit=max(
                                workload.memory.usage * RECOMMENDED_LIMIT_FACTOR,
                                MIN_MEMORY_LIMIT,
                            ),
                        ),
                    )
                )
            except (ArithmeticError, ValueError) as exc:
                message = f"Skipped workload {workload.id} in over-provisioning scan: {exc}"
                logger.warning("%s", message)
                self.diagnostics.append(message)
        return flagged
