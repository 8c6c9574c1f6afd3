"""
tests/test_graph_optimizer.py
─────────────────────────────
Test suite for packing_core/graph.py and packing_core/spectral.py

Test groups
────────────
Group 1: graph construction     — dropped samples, last sample wins, edge weight
Group 2: spectral primitives    — Laplacian, embedding, deterministic k-means
Group 3: clustering             — spectral clusters, graph placement, communities
Group 4: critical paths         — DFS depth, path metrics, ranking
Group 5: recommendations        — co-location targets and locality migrations
Group 6: network cost           — cross-node traffic per placement
"""

from __future__ import annotations

import math
from typing import List

import numpy as np
import pytest

from consolidator.shared.models import (
    ColocationRecommendation,
    CommunicationEdge,
    CriticalPath,
    Node,
    ResourceCapacity,
    ResourceClaim,
    TrafficSample,
    Workload,
)
from packing_core.bin_packing import REASON_NETWORK
from packing_core.graph import CommunicationGraphOptimizer
from packing_core.spectral import kmeans, laplacian, spectral_embedding


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_workload(workload_id: str, node_id: str = None, name: str = None) -> Workload:
    """1 core, 512 MiB of usage."""
    return Workload(
        id=workload_id,
        name=name or workload_id,
        node_id=node_id,
        cpu=ResourceClaim(limit=2.0, usage=1.0),
        memory=ResourceClaim(limit=1024.0, usage=512.0),
    )


def _make_node(node_id: str, cpu_total: float = 8.0) -> Node:
    return Node(
        id=node_id,
        name=f"{node_id}-name",
        cpu=ResourceCapacity(total=cpu_total),
        memory=ResourceCapacity(total=16384.0),
    )


def _sample(source: str, target: str, bandwidth=10.0, latency=1.0, frequency=10.0) -> TrafficSample:
    return TrafficSample(
        source=source, target=target,
        bandwidth=bandwidth, latency=latency, frequency=frequency,
    )


def _two_cliques() -> CommunicationGraphOptimizer:
    """{a, b, c} and {d, e, f}, equal weights inside, nothing between."""
    workloads = [_make_workload(w) for w in "abcdef"]
    traffic = [
        _sample("a", "b"), _sample("b", "c"), _sample("a", "c"),
        _sample("d", "e"), _sample("e", "f"), _sample("d", "f"),
    ]
    return CommunicationGraphOptimizer().build_graph(workloads, traffic)


def _as_sets(groups: List[List[str]]):
    return sorted(sorted(g) for g in groups)


@pytest.fixture
def chain() -> CommunicationGraphOptimizer:
    """frontend → api → db, plus an isolated workload and two ignored samples."""
    workloads = [
        _make_workload("fe", "node-x", "frontend"),
        _make_workload("api", "big-1", "orders-api"),
        _make_workload("db", "node-x", "orders-database"),
        _make_workload("lonely"),
    ]
    traffic = [
        _sample("fe", "api", bandwidth=100, latency=5, frequency=1000),
        _sample("api", "db", bandwidth=50, latency=10, frequency=500),
        _sample("ghost", "api"),
        _sample("fe", "fe"),
    ]
    return CommunicationGraphOptimizer().build_graph(workloads, traffic)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: graph construction
# ─────────────────────────────────────────────────────────────────────────────

class TestBuildGraph:

    def test_unknown_endpoints_and_self_loops_are_dropped(self, chain) -> None:
        assert len(chain.edges()) == 2
        assert chain.workload_ids == ["fe", "api", "db", "lonely"]

    def test_edges_are_undirected(self, chain) -> None:
        assert "api" in chain.neighbors("fe")
        assert "fe" in chain.neighbors("api")
        assert chain.neighbors("lonely") == {}
        assert chain.neighbors("missing") == {}

    def test_last_sample_for_a_pair_wins(self) -> None:
        graph = CommunicationGraphOptimizer().build_graph(
            [_make_workload("a"), _make_workload("b")],
            [_sample("a", "b", bandwidth=1), _sample("b", "a", bandwidth=99)],
        )
        assert len(graph.edges()) == 1
        assert graph.neighbors("a")["b"].bandwidth == 99

    def test_edge_weight_formula(self) -> None:
        edge = CommunicationEdge(source="a", target="b", bandwidth=100, latency=5, frequency=1000)
        expected = math.log(101) * (1 / 6) * math.log(1001)
        assert edge.weight == pytest.approx(expected)

    def test_zero_traffic_edge_weighs_nothing(self) -> None:
        assert CommunicationEdge(source="a", target="b").weight == 0.0

    def test_rebuild_replaces_previous_graph(self, chain) -> None:
        chain.build_graph([_make_workload("x")], [])
        assert chain.workload_ids == ["x"]
        assert chain.edges() == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: spectral primitives
# ─────────────────────────────────────────────────────────────────────────────

class TestSpectralPrimitives:

    def test_laplacian_rows_sum_to_zero(self, chain) -> None:
        lap = chain.compute_laplacian()
        assert lap.shape == (4, 4)
        assert np.allclose(lap.sum(axis=1), 0.0)
        assert np.allclose(lap, lap.T)

    def test_laplacian_ignores_diagonal(self) -> None:
        lap = laplacian(np.array([[5.0, 1.0], [1.0, 5.0]]))
        assert np.allclose(lap, [[1.0, -1.0], [-1.0, 1.0]])

    def test_laplacian_rejects_non_square(self) -> None:
        with pytest.raises(ValueError):
            laplacian(np.zeros((2, 3)))

    def test_embedding_shape_is_clamped(self) -> None:
        lap = laplacian(np.ones((3, 3)))
        assert spectral_embedding(lap, 5).shape == (3, 3)
        assert spectral_embedding(np.zeros((0, 0)), 2).shape == (0, 0)

    def test_kmeans_is_deterministic_and_separates_blobs(self) -> None:
        points = np.array([[0.0], [0.1], [10.0], [10.1], [0.05]])
        first = kmeans(points, 2)
        second = kmeans(points, 2)

        assert list(first) == list(second)
        assert first[0] == first[1] == first[4]
        assert first[2] == first[3]
        assert first[0] != first[2]

    def test_kmeans_empty_input(self) -> None:
        assert kmeans(np.zeros((0, 2)), 3).shape == (0,)


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: clustering
# ─────────────────────────────────────────────────────────────────────────────

class TestClustering:

    def test_spectral_clustering_finds_the_two_cliques(self) -> None:
        clusters = _two_cliques().spectral_clustering(2)
        assert _as_sets(clusters) == [["a", "b", "c"], ["d", "e", "f"]]

    def test_spectral_clustering_is_repeatable(self) -> None:
        graph = _two_cliques()
        assert graph.spectral_clustering(2) == graph.spectral_clustering(2)

    def test_spectral_clustering_degenerate_inputs(self) -> None:
        assert CommunicationGraphOptimizer().spectral_clustering(2) == []
        assert _two_cliques().spectral_clustering(0) == []

    def test_single_cluster_holds_everything(self) -> None:
        clusters = _two_cliques().spectral_clustering(1)
        assert _as_sets(clusters) == [["a", "b", "c", "d", "e", "f"]]

    def test_graph_placement_keeps_clusters_on_one_node(self) -> None:
        placement = _two_cliques().optimize_placement_by_graph(
            [_make_node("n1"), _make_node("n2")]
        )
        assert len(placement) == 6
        assert placement["a"] == placement["b"] == placement["c"]
        assert placement["d"] == placement["e"] == placement["f"]
        assert placement["a"] != placement["d"]

    def test_graph_placement_without_nodes(self) -> None:
        assert _two_cliques().optimize_placement_by_graph([]) == {}

    def test_communities_match_the_cliques(self) -> None:
        communities = _two_cliques().detect_communities()
        assert _as_sets(communities) == [["a", "b", "c"], ["d", "e", "f"]]

    def test_isolated_workload_is_its_own_community(self, chain) -> None:
        communities = chain.detect_communities()
        assert ["lonely"] in communities
        assert _as_sets(communities) == [["api", "db", "fe"], ["lonely"]]

    def test_modularity_gain(self) -> None:
        graph = _two_cliques()
        weight = graph.neighbors("a")["b"].weight
        communities = {"a": "a", "b": "x", "c": "x"}
        assert graph.modularity_gain("a", "a", "x", communities) == pytest.approx(2 * weight)


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: critical paths
# ─────────────────────────────────────────────────────────────────────────────

class TestCriticalPaths:

    def test_chain_path_and_metrics(self, chain) -> None:
        paths = chain.find_critical_paths()

        assert len(paths) == 1, "single-workload paths are discarded"
        assert paths[0].path == ["fe", "api", "db"]
        assert paths[0].latency == pytest.approx(15.0)
        assert paths[0].bandwidth == pytest.approx(50.0)

    def test_paths_ranked_by_criticality(self) -> None:
        workloads = [_make_workload(w) for w in ("a", "b", "x", "y")]
        traffic = [
            _sample("a", "b", bandwidth=10, latency=1),
            _sample("x", "y", bandwidth=100, latency=100),
        ]
        paths = CommunicationGraphOptimizer().build_graph(workloads, traffic).find_critical_paths()

        assert [p.path for p in paths] == [["x", "y"], ["a", "b"]]
        assert paths[0].criticality == pytest.approx(10000.0)

    def test_no_edges_no_paths(self) -> None:
        graph = CommunicationGraphOptimizer().build_graph([_make_workload("a")], [])
        assert graph.find_critical_paths() == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: recommendations
# ─────────────────────────────────────────────────────────────────────────────

class TestRecommendations:

    def test_colocation_targets_need_headroom(self, chain) -> None:
        nodes = [_make_node("small", cpu_total=2.0), _make_node("big-1"), _make_node("big-2")]
        recs = chain.recommend_placement(chain.find_critical_paths(), nodes)

        assert len(recs) == 1
        assert recs[0].workloads == ["fe", "api", "db"]
        assert recs[0].target_nodes == ["big-1"], "3 workloads fit on ceil(3/3) = 1 node"
        assert recs[0].expected_latency_ms == pytest.approx(10.5)

    def test_no_eligible_node_gives_empty_targets(self, chain) -> None:
        recs = chain.recommend_placement(chain.find_critical_paths(), [_make_node("tiny", 1.0)])
        assert recs[0].target_nodes == []

    def test_top_limits_recommendations(self) -> None:
        paths = [
            CriticalPath(path=["a", "b"], latency=1, bandwidth=1),
            CriticalPath(path=["c", "d"], latency=1, bandwidth=1),
        ]
        recs = _two_cliques().recommend_placement(paths, [_make_node("n1")], top=1)
        assert [r.workloads for r in recs] == [["a", "b"]]

    def test_locality_migrations_skip_workloads_already_there(self, chain) -> None:
        rec = ColocationRecommendation(
            workloads=["fe", "api", "db"], target_nodes=["big-1"], expected_latency_ms=10.5
        )
        steps = chain.locality_migrations([rec], [_make_node("big-1")])

        assert [s.workload_id for s in steps] == ["fe", "db"], "api already runs on big-1"
        assert all(s.reason == REASON_NETWORK for s in steps)
        assert all(s.target_node_name == "big-1-name" for s in steps)
        assert steps[0].source_node == "node-x"

    def test_locality_migrations_skip_targetless_recommendations(self, chain) -> None:
        rec = ColocationRecommendation(workloads=["fe"], target_nodes=[], expected_latency_ms=0)
        assert chain.locality_migrations([rec]) == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: network cost
# ─────────────────────────────────────────────────────────────────────────────

class TestNetworkCost:

    def test_all_on_one_node_costs_nothing(self, chain) -> None:
        cost = chain.calculate_network_cost({"fe": "n1", "api": "n1", "db": "n1"})
        assert cost.total_cost == 0.0
        assert cost.cross_node_traffic == 0.0
        assert cost.avg_latency == 0.0

    def test_one_cross_node_edge(self, chain) -> None:
        cost = chain.calculate_network_cost({"fe": "n1", "api": "n2", "db": "n2"})
        assert cost.cross_node_traffic == pytest.approx(100 * 1000)
        assert cost.total_cost == pytest.approx(100 * 1000 * 5)
        assert cost.avg_latency == pytest.approx(5.0)

    def test_every_edge_counted_once(self, chain) -> None:
        cost = chain.calculate_network_cost({"fe": "n1", "api": "n2", "db": "n3"})
        assert cost.cross_node_traffic == pytest.approx(125000.0)
        assert cost.total_cost == pytest.approx(750000.0)
        assert cost.avg_latency == pytest.approx(6.0)

    def test_unplaced_workloads_share_one_unknown_node(self, chain) -> None:
        assert chain.calculate_network_cost({}).total_cost == 0.0
