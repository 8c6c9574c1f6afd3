"""
consolidator/shared/config.py
─────────────────────────────
Run options for the optimizers and the migration orchestrator.

Three dataclasses, one per layer:

  PlacementConstraints → which hard constraints PlacementOptimizer enforces.
  MigrationOptions     → mode, safety threshold and pre-approvals for one
                         MigrationOrchestrator run.
  OptimizationConfig   → everything OptimizationService needs for a cycle
                         (namespace filtering, strategy, mode, ...).

Enum-typed fields accept their string values ("semi-auto", "bfd", "medium")
and are coerced in __post_init__, so options can come straight from a parsed
config file or CLI flags.

Coercion rules
───────────────
  mode / packing_strategy / migration_source:
      unknown value → ValueError (a typo here would silently change what runs).
  safety_threshold:
      unknown value → SafetyThreshold.CONSERVATIVE plus a warning log.
      The strictest tier is the only safe fallback for an automation gate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Union

from consolidator.shared.models import (
    MigrationMode,
    MigrationSource,
    PackingStrategy,
    SafetyThreshold,
)

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_NAMESPACES: List[str] = ["kube-system", "kube-public"]
"""System namespaces never considered for consolidation unless explicitly targeted."""


def coerce_safety_threshold(value: Union[str, SafetyThreshold]) -> SafetyThreshold:
    try:
        return SafetyThreshold(value)
    except ValueError:
        logger.warning(
            "Unknown safety threshold %r, falling back to %s",
            value, SafetyThreshold.CONSERVATIVE.value,
        )
        return SafetyThreshold.CONSERVATIVE


@dataclass
class PlacementConstraints:
    """Hard constraints checked before a node is considered for a workload."""

    enforce_node_selector: bool = True
    enforce_taints: bool = True
    enforce_zones: bool = False


@dataclass
class MigrationOptions:
    """
    Options for one MigrationOrchestrator.execute_plan() call.

    auto_approve holds workload *names* the operator has pre-approved;
    only manual mode consults it.
    """

    mode: MigrationMode = MigrationMode.OBSERVE
    safety_threshold: SafetyThreshold = SafetyThreshold.MEDIUM
    auto_approve: List[str] = field(default_factory=list)
    confirm_full_auto: bool = False

    def __post_init__(self) -> None:
        self.mode = MigrationMode(self.mode)
        self.safety_threshold = coerce_safety_threshold(self.safety_threshold)


@dataclass
class OptimizationConfig:
    """
    Configuration for one OptimizationService.

    target_namespaces empty means "every namespace not excluded".
    """

    mode: MigrationMode = MigrationMode.OBSERVE
    packing_strategy: PackingStrategy = PackingStrategy.BEST_FIT_DECREASING
    safety_threshold: SafetyThreshold = SafetyThreshold.MEDIUM
    consolidation_enabled: bool = True
    confirm_full_auto: bool = False
    auto_approve: List[str] = field(default_factory=list)
    target_namespaces: List[str] = field(default_factory=list)
    exclude_namespaces: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_NAMESPACES)
    )
    migration_source: MigrationSource = MigrationSource.CONSOLIDATION
    constraints: PlacementConstraints = field(default_factory=PlacementConstraints)

    def __post_init__(self) -> None:
        self.mode = MigrationMode(self.mode)
        self.packing_strategy = PackingStrategy(self.packing_strategy)
        self.safety_threshold = coerce_safety_threshold(self.safety_threshold)
        self.migration_source = MigrationSource(self.migration_source)

    def migration_options(self) -> MigrationOptions:
        return MigrationOptions(
            mode=self.mode,
            safety_threshold=self.safety_threshold,
            auto_approve=list(self.auto_approve),
            confirm_full_auto=self.confirm_full_auto,
        )

    def includes_namespace(self, namespace: str) -> bool:
        if self.target_namespaces:
            return namespace in self.target_namespaces
        return namespace not in self.exclude_namespaces
