"""
packing_core — placement heuristics and communication-graph analysis.

Public API:
    PlacementOptimizer          — multi-strategy bin packing, returns Placement
    CommunicationGraphOptimizer — traffic graph clustering, critical paths, network cost

Usage:
    from packing_core import PlacementOptimizer, CommunicationGraphOptimizer

    placement = PlacementOptimizer().optimize(workloads, nodes, "bfd")
    graph = CommunicationGraphOptimizer().build_graph(workloads, traffic)
    cost = graph.calculate_network_cost(placement.assignments)
"""

from packing_core.bin_packing import PlacementOptimizer
from packing_core.graph import CommunicationGraphOptimizer

__all__ = ["PlacementOptimizer", "CommunicationGraphOptimizer"]
