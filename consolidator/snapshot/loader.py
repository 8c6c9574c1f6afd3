"""
consolidator/snapshot/loader.py
───────────────────────────────
Reads a cluster snapshot (nodes + workloads + optional traffic) from a
dict or a JSON file and validates it into pydantic records.

Input shape
────────────
  {
    "nodes":     [{"id", "name", "cpu": {"total", "used", "allocated"},
                   "memory": {...}, "labels"?, "taints"?, "zone"?}],
    "workloads": [{"id", "name", "nodeId", "namespace"?,
                   "cpu": {"limit", "request"?, "usage"}, "memory": {...},
                   "nodeSelector"?, "tolerations"?, "affinityGroup"?,
                   "preferredNodes"?, "networkIntensity"?, "communicatesWith"?,
                   "replicas"?, "hasVolumes"?, "hasInitContainers"?}],
    "traffic":   [{"source", "target", "bandwidth", "latency", "frequency"}]
  }

Keys may be camelCase or snake_case. Resource figures may be plain numbers
(cores / MiB) or Kubernetes quantity strings:

  CPU:     "250m" → 0.25      "2" → 2.0
           "123456789n" (nanocores) → 0.123...   "500u" (microcores) → 0.0005
  Memory:  "512Mi" → 512      "2Gi" → 2048      "1048576" (bytes) → 1.0
           Ki / Ti and the decimal k / M / G / T suffixes are accepted too.

Anything malformed raises SnapshotError; the message names what failed.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from pydantic import BaseModel, Field, ValidationError

from consolidator.shared.models import Node, TrafficSample, Workload

logger = logging.getLogger(__name__)

MIB: float = 1024.0 * 1024.0

_BINARY_SUFFIXES: Dict[str, float] = {
    "Ki": 1024.0,
    "Mi": 1024.0 ** 2,
    "Gi": 1024.0 ** 3,
    "Ti": 1024.0 ** 4,
}
_DECIMAL_SUFFIXES: Dict[str, float] = {
    "k": 1e3,
    "M": 1e6,
    "G": 1e9,
    "T": 1e12,
}

_CPU_SUFFIXES: Dict[str, float] = {
    "n": 1e-9,
    "u": 1e-6,
    "m": 1e-3,
}

_QUANTITY_FIELDS = ("total", "used", "allocated", "limit", "request", "usage")


class SnapshotError(Exception):
    """Raised when a snapshot cannot be read or does not validate."""


class ClusterSnapshot(BaseModel):
    nodes: List[Node] = Field(default_factory=list)
    workloads: List[Workload] = Field(default_factory=list)
    traffic: List[TrafficSample] = Field(default_factory=list)


def parse_cpu(value: Union[str, int, float]) -> float:
    """CPU quantity in cores."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        for suffix, factor in _CPU_SUFFIXES.items():
            if text.endswith(suffix):
                return float(text[: -len(suffix)]) * factor
        return float(text)
    except ValueError:
        raise SnapshotError(f"Invalid CPU quantity {value!r}") from None


def parse_memory(value: Union[str, int, float]) -> float:
    """Memory quantity in MiB. Bare numbers are already MiB; bare strings are bytes."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        for suffix, factor in _BINARY_SUFFIXES.items():
            if text.endswith(suffix):
                return float(text[: -len(suffix)]) * factor / MIB
        for suffix, factor in _DECIMAL_SUFFIXES.items():
            if text.endswith(suffix):
                return float(text[: -len(suffix)]) * factor / MIB
        return float(text) / MIB
    except ValueError:
        raise SnapshotError(f"Invalid memory quantity {value!r}") from None


def _normalize(resource: Any, parse) -> Any:
    if not isinstance(resource, Mapping):
        return resource
    normalized = dict(resource)
    for key in _QUANTITY_FIELDS:
        value = normalized.get(key)
        if value is not None:
            normalized[key] = parse(value)
    return normalized


def _normalize_record(record: Any) -> Any:
    if not isinstance(record, Mapping):
        return record
    normalized = dict(record)
    if "cpu" in normalized:
        normalized["cpu"] = _normalize(normalized["cpu"], parse_cpu)
    if "memory" in normalized:
        normalized["memory"] = _normalize(normalized["memory"], parse_memory)
    return normalized


def snapshot_from_dict(data: Mapping[str, Any]) -> ClusterSnapshot:
    if not isinstance(data, Mapping):
        raise SnapshotError(f"Snapshot must be a mapping, got {type(data).__name__}")

    payload = {
        "nodes": [_normalize_record(n) for n in data.get("nodes") or []],
        "workloads": [_normalize_record(w) for w in data.get("workloads") or []],
        "traffic": list(data.get("traffic") or []),
    }
    try:
        snapshot = ClusterSnapshot.model_validate(payload)
    except ValidationError as exc:
        raise SnapshotError(f"Snapshot failed validation: {exc}") from exc

    logger.debug(
        "Loaded snapshot: %d node(s), %d workload(s), %d traffic sample(s)",
        len(snapshot.nodes), len(snapshot.workloads), len(snapshot.traffic),
    )
    return snapshot


def load_snapshot(path: Union[str, Path]) -> ClusterSnapshot:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise SnapshotError(f"Cannot read snapshot {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"Snapshot {path} is not valid JSON: {exc}") from exc
    return snapshot_from_dict(data)
