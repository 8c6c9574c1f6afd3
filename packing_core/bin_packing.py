"""
packing_core/bin_packing.py
───────────────────────────
PlacementOptimizer: multi-strategy bin packing of workloads onto nodes.

What this is
─────────────
Given a set of workloads and a set of nodes, decide which node each workload
should run on so that as few nodes as possible carry the load, without
packing any node past a 10% headroom rule. The result is a Placement plus
the list of MigrationSteps needed to get from today's placement to it.

All strategies are greedy, single pass, polynomial time. None of them
guarantee an optimal packing.

The five strategies
────────────────────
  Strategy   Sort order                                  Node choice
  ────────   ──────────                                  ───────────
  ffd        size_score descending                       first eligible node
  bfd        size_score descending                       smallest fit score
  wfd        size_score descending                       largest fit score
  network    network_intensity descending                10·peers + 5·fit
  affinity   by affinity group (first seen), then size   10·label matches + 5·group peers

  size_score = cpu.usage + memory.usage / 1024
  fit score  = mean over CPU and memory of (total − used − usage) / total
               i.e. the normalized headroom left after a hypothetical placement.

Sorts are stable and every score comparison is strict, so ties keep the
first candidate encountered.

Eligibility
────────────
A node is eligible for a workload only if:
  1. node selector labels match           (PlacementConstraints.enforce_node_selector)
  2. every taint is tolerated             (PlacementConstraints.enforce_taints)
  3. the zone matches, if one is pinned   (PlacementConstraints.enforce_zones)
  4. available ≥ usage × HEADROOM_FACTOR on both CPU and memory

Simulation discipline
──────────────────────
optimize() never touches the caller's nodes. It deep-copies them, releases
the workloads being placed from their current node copy (so their usage is
not counted twice), then commits placements on the copies. Two strategies
evaluated back to back therefore never see each other's partial state.

Migration ordering
───────────────────
Steps are sorted ascending by a disruption priority (database +100,
api +75, cache +50, summed on multiple matches), so stateless workloads
move first and databases move last.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from consolidator.shared.config import PlacementConstraints
from consolidator.shared.models import (
    MigrationStep,
    Node,
    PackingStrategy,
    Placement,
    Workload,
    ratio,
)
from consolidator.shared.risk import RiskAssessor

logger = logging.getLogger(__name__)

# ── Packing constants ─────────────────────────────────────────────────────────

HEADROOM_FACTOR: float = 1.1
"""A node must have at least usage × 1.1 available on both dimensions.

After a committed placement the node keeps at least 10% of the workload's
usage free, so `available` never goes negative through placement alone.
"""

PEER_WEIGHT: float = 10.0
"""Score per communication peer (network) or preferred-label match (affinity)."""

FIT_WEIGHT: float = 5.0
"""Score per unit of fit (network) or per affinity-group peer (affinity)."""

NETWORK_REASON_THRESHOLD: float = 0.5
"""network_intensity above which a move is explained as a locality improvement."""

MIGRATION_PRIORITY_TERMS: Sequence[Tuple[str, int]] = (
    ("database", 100),
    ("api", 75),
    ("cache", 50),
)
"""Case-sensitive name substrings and their disruption priority."""

REASON_AFFINITY = "Affinity optimization"
REASON_NETWORK = "Network locality improvement"
REASON_CONSOLIDATION = "Consolidation for cost savings"


def migration_priority(step: MigrationStep) -> int:
    return sum(
        weight for term, weight in MIGRATION_PRIORITY_TERMS
        if term in step.workload_name
    )


def order_migrations(steps: Iterable[MigrationStep]) -> List[MigrationStep]:
    """Least disruptive first. Stable for equal priorities."""
    return sorted(steps, key=migration_priority)


class PlacementOptimizer:
    """
    Assigns workloads to nodes with one of the PackingStrategy heuristics.

    Stateless apart from the shared RiskAssessor. One instance can serve
    any number of optimize() calls.

    Usage:
        optimizer = PlacementOptimizer()
        placement = optimizer.optimize(workloads, nodes, PackingStrategy.BEST_FIT_DECREASING)
        for step in placement.migrations:
            ...
    """

    def __init__(self, risk_assessor: Optional[RiskAssessor] = None) -> None:
        self._risk = risk_assessor or RiskAssessor()

    # ── Public API ────────────────────────────────────────────────────────────

    def optimize(
        self,
        workloads: Sequence[Workload],
        nodes: Sequence[Node],
        strategy: PackingStrategy = PackingStrategy.FIRST_FIT_DECREASING,
        constraints: Optional[PlacementConstraints] = None,
    ) -> Placement:
        placement, _ = self.simulate(workloads, nodes, strategy, constraints)
        return placement

    def simulate(
        self,
        workloads: Sequence[Workload],
        nodes: Sequence[Node],
        strategy: PackingStrategy = PackingStrategy.FIRST_FIT_DECREASING,
        constraints: Optional[PlacementConstraints] = None,
    ) -> Tuple[Placement, List[Node]]:
        """
        Run one strategy and return the Placement plus the simulated node copies.

        The returned nodes show the post-placement `used`/`allocated`
        counters; the caller's nodes are left exactly as they were.
        """
        strategy = PackingStrategy(strategy)
        constraints = constraints or PlacementConstraints()

        sim_nodes = [node.model_copy(deep=True) for node in nodes]
        self._release(workloads, sim_nodes)

        groups = {w.id: w.affinity_group for w in workloads if w.affinity_group}
        placement = Placement(strategy=strategy)

        for workload in self.sort_workloads(workloads, strategy):
            target = self.find_best_node(workload, sim_nodes, strategy, constraints, groups)
            if target is None:
                logger.debug("No eligible node for workload %s", workload.id)
                placement.unplaceable.append(workload.id)
                continue
            self._commit(workload, target)
            placement.assignments[workload.id] = target.id

        placement.efficiency = self.calculate_efficiency(sim_nodes)
        placement.migrations = self.derive_migrations(
            workloads, placement.assignments, sim_nodes
        )

        logger.info(
            "Placement %s: %d placed on %d node(s), %d unplaceable, %d migration(s), "
            "efficiency %.2f%%",
            strategy.value,
            len(placement.assignments),
            placement.active_nodes,
            len(placement.unplaceable),
            len(placement.migrations),
            placement.efficiency,
        )
        return placement, sim_nodes

    def evaluate_strategies(
        self,
        workloads: Sequence[Workload],
        nodes: Sequence[Node],
        strategies: Optional[Sequence[PackingStrategy]] = None,
        constraints: Optional[PlacementConstraints] = None,
    ) -> Dict[PackingStrategy, Placement]:
        """Run several strategies, each on its own copy of the node set."""
        strategies = list(strategies) if strategies else list(PackingStrategy)
        return {
            PackingStrategy(s): self.optimize(workloads, nodes, s, constraints)
            for s in strategies
        }

    def best_placement(
        self,
        workloads: Sequence[Workload],
        nodes: Sequence[Node],
        strategies: Optional[Sequence[PackingStrategy]] = None,
        constraints: Optional[PlacementConstraints] = None,
    ) -> Placement:
        """
        Highest efficiency wins, then fewest unplaceable, then fewest migrations.
        On a full tie the earlier strategy wins.
        """
        results = list(
            self.evaluate_strategies(workloads, nodes, strategies, constraints).values()
        )
        best = results[0]
        for placement in results[1:]:
            if self._rank(placement) > self._rank(best):
                best = placement
        return best

    # ── Sorting ───────────────────────────────────────────────────────────────

    @staticmethod
    def sort_workloads(
        workloads: Sequence[Workload],
        strategy: PackingStrategy,
    ) -> List[Workload]:
        if strategy == PackingStrategy.NETWORK_AWARE:
            return sorted(workloads, key=lambda w: w.network_intensity, reverse=True)

        if strategy == PackingStrategy.AFFINITY_BASED:
            grouped: Dict[Optional[str], List[Workload]] = {}
            for workload in workloads:
                grouped.setdefault(workload.affinity_group, []).append(workload)
            ordered: List[Workload] = []
            for members in grouped.values():
                ordered.extend(sorted(members, key=lambda w: w.size_score, reverse=True))
            return ordered

        return sorted(workloads, key=lambda w: w.size_score, reverse=True)

    # ── Eligibility and scoring ───────────────────────────────────────────────

    @staticmethod
    def meets_constraints(
        workload: Workload,
        node: Node,
        constraints: PlacementConstraints,
    ) -> bool:
        if constraints.enforce_node_selector:
            for key, value in workload.node_selector.items():
                if node.labels.get(key) != value:
                    return False

        if constraints.enforce_taints and not node.tolerated_by(workload.tolerations):
            return False

        if constraints.enforce_zones and workload.zone and node.zone != workload.zone:
            return False

        return True

    @staticmethod
    def has_capacity(workload: Workload, node: Node) -> bool:
        return (
            node.cpu.available >= workload.cpu.usage * HEADROOM_FACTOR
            and node.memory.available >= workload.memory.usage * HEADROOM_FACTOR
        )

    @staticmethod
    def fit_score(workload: Workload, node: Node) -> float:
        cpu_fit = ratio(node.cpu.total - node.cpu.used - workload.cpu.usage, node.cpu.total)
        mem_fit = ratio(
            node.memory.total - node.memory.used - workload.memory.usage, node.memory.total
        )
        return (cpu_fit + mem_fit) / 2.0

    def eligible_nodes(
        self,
        workload: Workload,
        nodes: Sequence[Node],
        constraints: PlacementConstraints,
    ) -> List[Node]:
        return [
            node for node in nodes
            if self.meets_constraints(workload, node, constraints)
            and self.has_capacity(workload, node)
        ]

    def find_best_node(
        self,
        workload: Workload,
        nodes: Sequence[Node],
        strategy: PackingStrategy,
        constraints: PlacementConstraints,
        groups: Optional[Dict[str, str]] = None,
    ) -> Optional[Node]:
        eligible = self.eligible_nodes(workload, nodes, constraints)
        if not eligible:
            return None

        if strategy == PackingStrategy.FIRST_FIT_DECREASING:
            return eligible[0]
        if strategy == PackingStrategy.BEST_FIT_DECREASING:
            return self._pick(eligible, lambda n: -self.fit_score(workload, n))
        if strategy == PackingStrategy.WORST_FIT_DECREASING:
            return self._pick(eligible, lambda n: self.fit_score(workload, n))
        if strategy == PackingStrategy.NETWORK_AWARE:
            return self._pick(eligible, lambda n: self.network_score(workload, n))
        return self._pick(eligible, lambda n: self.affinity_score(workload, n, groups or {}))

    def network_score(self, workload: Workload, node: Node) -> float:
        peers = set(workload.communicates_with)
        co_located = sum(1 for wid in node.workloads if wid in peers)
        return PEER_WEIGHT * co_located + FIT_WEIGHT * self.fit_score(workload, node)

    @staticmethod
    def affinity_score(workload: Workload, node: Node, groups: Dict[str, str]) -> float:
        label_matches = sum(
            1 for label, value in workload.preferred_nodes.items()
            if node.labels.get(label) == value
        )
        group_peers = 0
        if workload.affinity_group:
            group_peers = sum(
                1 for wid in node.workloads
                if wid != workload.id and groups.get(wid) == workload.affinity_group
            )
        return PEER_WEIGHT * label_matches + FIT_WEIGHT * group_peers

    @staticmethod
    def _pick(candidates: Sequence[Node], score) -> Node:
        best = candidates[0]
        best_score = score(best)
        for node in candidates[1:]:
            node_score = score(node)
            if node_score > best_score:
                best, best_score = node, node_score
        return best

    # ── Simulation helpers ────────────────────────────────────────────────────

    @staticmethod
    def _release(workloads: Sequence[Workload], nodes: Sequence[Node]) -> None:
        by_id = {node.id: node for node in nodes}
        for workload in workloads:
            node = by_id.get(workload.node_id) if workload.node_id else None
            if node is None or workload.id not in node.workloads:
                continue
            node.workloads.remove(workload.id)
            node.cpu.used = max(0.0, node.cpu.used - workload.cpu.usage)
            node.memory.used = max(0.0, node.memory.used - workload.memory.usage)
            node.cpu.allocated = max(0.0, node.cpu.allocated - workload.cpu.limit)
            node.memory.allocated = max(0.0, node.memory.allocated - workload.memory.limit)

    @staticmethod
    def _commit(workload: Workload, node: Node) -> None:
        node.cpu.used += workload.cpu.usage
        node.memory.used += workload.memory.usage
        node.cpu.allocated += workload.cpu.limit
        node.memory.allocated += workload.memory.limit
        node.workloads.append(workload.id)

    @staticmethod
    def calculate_efficiency(nodes: Sequence[Node]) -> float:
        """
        Approximate packing efficiency in [0, 100].

            per dimension: Σ used on active nodes / (active_nodes × mean node capacity)
            efficiency   = mean(cpu, memory) × 100

        Intentionally approximate: it uses the *mean* node capacity, which is
        exact only for homogeneous fleets. A node is active when it has CPU in use.
        """
        if not nodes:
            return 0.0
        active = [node for node in nodes if node.cpu.used > 0]
        if not active:
            return 0.0

        mean_cpu = sum(n.cpu.total for n in nodes) / len(nodes)
        mean_mem = sum(n.memory.total for n in nodes) / len(nodes)
        cpu_eff = ratio(sum(n.cpu.used for n in active), len(active) * mean_cpu)
        mem_eff = ratio(sum(n.memory.used for n in active), len(active) * mean_mem)

        efficiency = (cpu_eff + mem_eff) / 2.0 * 100.0
        return round(min(100.0, max(0.0, efficiency)), 2)

    @staticmethod
    def _rank(placement: Placement) -> Tuple[float, int, int]:
        return (placement.efficiency, -len(placement.unplaceable), -len(placement.migrations))

    # ── Migration derivation ──────────────────────────────────────────────────

    @staticmethod
    def migration_reason(workload: Workload) -> str:
        if workload.affinity_labels:
            return REASON_AFFINITY
        if workload.network_intensity > NETWORK_REASON_THRESHOLD:
            return REASON_NETWORK
        return REASON_CONSOLIDATION

    def derive_migrations(
        self,
        workloads: Sequence[Workload],
        assignments: Dict[str, str],
        nodes: Optional[Sequence[Node]] = None,
    ) -> List[MigrationStep]:
        """
        Diff ``assignments`` against each workload's recorded node_id.

        Workloads missing from ``assignments`` (unplaceable) produce no step.
        Feeding the assignments back as node_ids yields an empty list.
        """
        names = {node.id: node.name for node in nodes or ()}
        steps: List[MigrationStep] = []
        for workload in workloads:
            target = assignments.get(workload.id)
            if target is None or target == workload.node_id:
                continue
            step = MigrationStep.for_workload(
                workload,
                target_node=target,
                reason=self.migration_reason(workload),
                target_node_name=names.get(target),
            )
            step.risk_level = self._risk.assess_risk(step).level
            steps.append(step)
        return order_migrations(steps)
