"""
packing_core/graph.py
─────────────────────
CommunicationGraphOptimizer: locality-aware analysis of workload traffic.

What this is
─────────────
Bin packing sees workloads as independent boxes. In practice a frontend,
its API and its cache talk to each other thousands of times a second, and
putting them on different nodes costs latency and cross-node bandwidth.
This module turns observed traffic into an undirected weighted graph and
answers four questions about it:

  1. Which workloads belong together?      spectral_clustering(), detect_communities()
  2. Where should each cluster run?        optimize_placement_by_graph()
  3. Which call chains matter most?        find_critical_paths(), recommend_placement()
  4. Did a candidate placement help?       calculate_network_cost()

Edge weight
────────────
  w = log(bandwidth + 1) · 1 / (latency + 1) · log(frequency + 1)

Building the graph
───────────────────
  • One vertex per workload, in the order the workloads were given.
  • A sample whose source or target is not a known workload is dropped.
  • Self-loops are dropped.
  • Several samples for the same pair: the last one wins.

Community detection
────────────────────
A greedy, Louvain-style local move loop. Every workload starts in its own
community. In each pass every workload may move to the neighbouring
community with the largest strictly positive gain:

  gain = Σ w(edges into the candidate) − Σ w(edges into the current community)

Passes repeat until nothing moves (bounded by MAX_COMMUNITY_PASSES).

Critical paths
───────────────
A depth-first search from every not-yet-visited workload keeps the deepest
path of its DFS tree (the first one found on ties). Paths of a single
workload are discarded. Each path carries its summed latency and its
bottleneck bandwidth, and the list is ranked by latency × bandwidth.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from consolidator.shared.models import (
    ColocationRecommendation,
    CommunicationEdge,
    CriticalPath,
    MigrationStep,
    NetworkCost,
    Node,
    TrafficSample,
    Workload,
    ratio,
)
from consolidator.shared.risk import RiskAssessor
from packing_core.bin_packing import REASON_NETWORK, order_migrations
from packing_core.spectral import kmeans, laplacian, spectral_embedding

logger = logging.getLogger(__name__)

# ── Graph constants ───────────────────────────────────────────────────────────

COLOCATION_HEADROOM: float = 1.2
"""A co-location target needs 120% of the path's aggregate usage available."""

WORKLOADS_PER_NODE: int = 3
"""A path of n workloads is spread over at most ceil(n / 3) nodes."""

COLOCATION_LATENCY_FACTOR: float = 0.7
"""Expected path latency after co-location (a 30% improvement)."""

MAX_COMMUNITY_PASSES: int = 100
"""Guard against oscillation in the local-move loop."""


class CommunicationGraphOptimizer:
    """
    Holds one communication graph and the algorithms that run over it.

    Usage:
        graph = CommunicationGraphOptimizer().build_graph(workloads, traffic)
        clusters = graph.spectral_clustering(k=3)
        paths = graph.find_critical_paths()
        recs = graph.recommend_placement(paths, nodes)

    build_graph() replaces any previous graph, so one instance can be reused
    across analysis cycles.
    """

    def __init__(self, risk_assessor: Optional[RiskAssessor] = None) -> None:
        self._workloads: Dict[str, Workload] = {}
        self._adjacency: Dict[str, Dict[str, CommunicationEdge]] = {}
        self._risk = risk_assessor or RiskAssessor()

    # ── Construction ──────────────────────────────────────────────────────────

    def build_graph(
        self,
        workloads: Sequence[Workload],
        traffic: Sequence[TrafficSample],
    ) -> "CommunicationGraphOptimizer":
        self._workloads = {w.id: w for w in workloads}
        self._adjacency = {w.id: {} for w in workloads}

        dropped = 0
        for sample in traffic:
            if sample.source not in self._adjacency or sample.target not in self._adjacency:
                logger.debug(
                    "Dropping traffic sample %s → %s: unknown workload",
                    sample.source, sample.target,
                )
                dropped += 1
                continue
            if sample.source == sample.target:
                continue

            edge = CommunicationEdge(
                source=sample.source,
                target=sample.target,
                bandwidth=sample.bandwidth,
                latency=sample.latency,
                frequency=sample.frequency,
            )
            self._adjacency[sample.source][sample.target] = edge
            self._adjacency[sample.target][sample.source] = edge

        logger.info(
            "Communication graph: %d workload(s), %d edge(s), %d sample(s) dropped",
            len(self._adjacency), len(self.edges()), dropped,
        )
        return self

    @property
    def workload_ids(self) -> List[str]:
        return list(self._adjacency)

    def neighbors(self, workload_id: str) -> Dict[str, CommunicationEdge]:
        return self._adjacency.get(workload_id, {})

    def edges(self) -> List[CommunicationEdge]:
        """Every undirected edge exactly once."""
        seen = set()
        result: List[CommunicationEdge] = []
        for source, neighbours in self._adjacency.items():
            for target, edge in neighbours.items():
                key = frozenset((source, target))
                if key in seen:
                    continue
                seen.add(key)
                result.append(edge)
        return result

    def weight_matrix(self) -> NDArray[np.float64]:
        ids = self.workload_ids
        index = {wid: i for i, wid in enumerate(ids)}
        weights = np.zeros((len(ids), len(ids)), dtype=np.float64)
        for edge in self.edges():
            i, j = index[edge.source], index[edge.target]
            weights[i, j] = weights[j, i] = edge.weight
        return weights

    def compute_laplacian(self) -> NDArray[np.float64]:
        return laplacian(self.weight_matrix())

    # ── Spectral clustering ───────────────────────────────────────────────────

    def spectral_clustering(self, k: int) -> List[List[str]]:
        """
        Partition the workloads into at most k clusters.

        Only non-empty clusters are returned, ordered by cluster label.
        Within a cluster workloads keep graph order.
        """
        ids = self.workload_ids
        if not ids or k < 1:
            return []

        embedding = spectral_embedding(self.compute_laplacian(), k)
        labels = kmeans(embedding, k)

        clusters: Dict[int, List[str]] = {}
        for workload_id, label in zip(ids, labels):
            clusters.setdefault(int(label), []).append(workload_id)
        return [clusters[label] for label in sorted(clusters)]

    def optimize_placement_by_graph(self, nodes: Sequence[Node]) -> Dict[str, str]:
        """Map spectral clusters onto nodes round-robin (cluster i → node i mod n)."""
        if not nodes:
            return {}
        placement: Dict[str, str] = {}
        for index, cluster in enumerate(self.spectral_clustering(len(nodes))):
            target = nodes[index % len(nodes)]
            for workload_id in cluster:
                placement[workload_id] = target.id
        return placement

    # ── Community detection ───────────────────────────────────────────────────

    def modularity_gain(
        self,
        workload_id: str,
        from_community: str,
        to_community: str,
        communities: Dict[str, str],
    ) -> float:
        gain = 0.0
        for neighbour, edge in self.neighbors(workload_id).items():
            community = communities.get(neighbour)
            if community == to_community:
                gain += edge.weight
            if community == from_community:
                gain -= edge.weight
        return gain

    def detect_communities(self) -> List[List[str]]:
        communities = {wid: wid for wid in self._adjacency}

        for _ in range(MAX_COMMUNITY_PASSES):
            moved = False
            for workload_id, neighbours in self._adjacency.items():
                current = communities[workload_id]
                best, best_gain = current, 0.0
                for neighbour in neighbours:
                    candidate = communities[neighbour]
                    if candidate == current:
                        continue
                    gain = self.modularity_gain(workload_id, current, candidate, communities)
                    if gain > best_gain:
                        best, best_gain = candidate, gain
                if best != current:
                    communities[workload_id] = best
                    moved = True
            if not moved:
                break
        else:
            logger.warning(
                "Community detection stopped after %d passes without converging",
                MAX_COMMUNITY_PASSES,
            )

        groups: Dict[str, List[str]] = {}
        for workload_id, community in communities.items():
            groups.setdefault(community, []).append(workload_id)
        return list(groups.values())

    # ── Critical paths ────────────────────────────────────────────────────────

    def _deepest_path(self, start: str, visited: set) -> List[str]:
        visited.add(start)
        parent: Dict[str, Optional[str]] = {start: None}
        depth = {start: 1}
        deepest = start

        stack = [(start, iter(self._adjacency[start]))]
        while stack:
            node, pending = stack[-1]
            for neighbour in pending:
                if neighbour in visited:
                    continue
                visited.add(neighbour)
                parent[neighbour] = node
                depth[neighbour] = depth[node] + 1
                if depth[neighbour] > depth[deepest]:
                    deepest = neighbour
                stack.append((neighbour, iter(self._adjacency[neighbour])))
                break
            else:
                stack.pop()

        path: List[str] = []
        cursor: Optional[str] = deepest
        while cursor is not None:
            path.append(cursor)
            cursor = parent[cursor]
        path.reverse()
        return path

    def _path_metrics(self, path: Sequence[str]) -> Tuple[float, float]:
        latency = 0.0
        bandwidth = math.inf
        for source, target in zip(path, path[1:]):
            edge = self._adjacency[source].get(target)
            if edge is None:
                continue
            latency += edge.latency
            bandwidth = min(bandwidth, edge.bandwidth)
        return latency, (0.0 if bandwidth == math.inf else bandwidth)

    def find_critical_paths(self) -> List[CriticalPath]:
        visited: set = set()
        paths: List[CriticalPath] = []
        for workload_id in self._adjacency:
            if workload_id in visited:
                continue
            path = self._deepest_path(workload_id, visited)
            if len(path) < 2:
                continue
            latency, bandwidth = self._path_metrics(path)
            paths.append(CriticalPath(path=path, latency=latency, bandwidth=bandwidth))

        paths.sort(key=lambda p: p.criticality, reverse=True)
        return paths

    # ── Recommendations ───────────────────────────────────────────────────────

    def _nodes_for_path(self, path: Sequence[str], nodes: Sequence[Node]) -> List[str]:
        members = [self._workloads[wid] for wid in path if wid in self._workloads]
        total_cpu = sum(w.cpu.usage for w in members)
        total_memory = sum(w.memory.usage for w in members)

        eligible = [
            node for node in nodes
            if node.cpu.available >= total_cpu * COLOCATION_HEADROOM
            and node.memory.available >= total_memory * COLOCATION_HEADROOM
        ]
        limit = math.ceil(len(members) / WORKLOADS_PER_NODE)
        return [node.id for node in eligible[:limit]]

    def recommend_placement(
        self,
        critical_paths: Sequence[CriticalPath],
        nodes: Sequence[Node],
        top: Optional[int] = None,
    ) -> List[ColocationRecommendation]:
        """
        One co-location recommendation per path (the first ``top`` paths if given).

        ``target_nodes`` may be empty when no node has enough headroom.
        """
        selected = critical_paths if top is None else critical_paths[:top]
        return [
            ColocationRecommendation(
                workloads=list(path.path),
                target_nodes=self._nodes_for_path(path.path, nodes),
                expected_latency_ms=round(path.latency * COLOCATION_LATENCY_FACTOR, 2),
            )
            for path in selected
        ]

    def locality_migrations(
        self,
        recommendations: Sequence[ColocationRecommendation],
        nodes: Sequence[Node] = (),
    ) -> List[MigrationStep]:
        """
        Steps that move each path member onto its recommendation's first node.

        Recommendations without a target node are skipped. A workload appearing
        in several recommendations moves with the first one.
        """
        names = {node.id: node.name for node in nodes}
        seen = set()
        steps: List[MigrationStep] = []
        for recommendation in recommendations:
            if not recommendation.target_nodes:
                continue
            target = recommendation.target_nodes[0]
            for workload_id in recommendation.workloads:
                workload = self._workloads.get(workload_id)
                if workload is None or workload_id in seen:
                    continue
                seen.add(workload_id)
                if workload.node_id == target:
                    continue
                step = MigrationStep.for_workload(
                    workload,
                    target_node=target,
                    reason=REASON_NETWORK,
                    target_node_name=names.get(target),
                )
                step.risk_level = self._risk.assess_risk(step).level
                steps.append(step)
        return order_migrations(steps)

    # ── Cost ──────────────────────────────────────────────────────────────────

    def calculate_network_cost(self, placement: Dict[str, str]) -> NetworkCost:
        """
        Cross-node traffic of a placement (workload id → node id).

        An edge is cross-node when its endpoints map to different nodes.
        Workloads absent from ``placement`` count as sharing one unknown node.
        """
        total_cost = 0.0
        cross_traffic = 0.0
        for edge in self.edges():
            if placement.get(edge.source) == placement.get(edge.target):
                continue
            traffic = edge.bandwidth * edge.frequency
            cross_traffic += traffic
            total_cost += traffic * edge.latency

        return NetworkCost(
            total_cost=total_cost,
            cross_node_traffic=cross_traffic,
            avg_latency=ratio(total_cost, cross_traffic),
        )
