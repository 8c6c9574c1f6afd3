"""
consolidator/snapshot — cluster snapshot input contract.

Public API:
    ClusterSnapshot     — validated nodes + workloads + traffic
    load_snapshot()     — read and validate a JSON snapshot file
    snapshot_from_dict()— validate an already-parsed snapshot
    parse_cpu()         — Kubernetes CPU quantity → cores
    parse_memory()      — Kubernetes memory quantity → MiB
    SnapshotError       — raised for unreadable or invalid snapshots
"""

from consolidator.snapshot.loader import (
    ClusterSnapshot,
    SnapshotError,
    load_snapshot,
    parse_cpu,
    parse_memory,
    snapshot_from_dict,
)

__all__ = [
    "ClusterSnapshot",
    "SnapshotError",
    "load_snapshot",
    "parse_cpu",
    "parse_memory",
    "snapshot_from_dict",
]
