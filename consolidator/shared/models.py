"""
consolidator/shared/models.py
─────────────────────────────
The single source of truth for every data structure in the consolidator.

Design philosophy
-----------------
Every model answers one question: "What does the optimizer *need to know*
about this thing in order to decide where it should run, and whether it is
safe to move it there?"

Input records (Node, Workload, TrafficSample) accept both the camelCase names
used by the external collectors (``nodeId``, ``nodeSelector``, ...) and the
snake_case attribute names used throughout the Python code.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
  Section 1 → enumerations
  Section 2 → resource dimensions (capacity on nodes, claims by workloads)
  Section 3 → node / workload / traffic input records
  Section 4 → analysis outputs (utilization, over-provisioning, limits)
  Section 5 → placement and graph outputs
  Section 6 → consolidation plan
  Section 7 → risk grading and the migration recommendation lifecycle
  Section 8 → service-level report
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def ratio(numerator: float, denominator: float) -> float:
    """
    numerator / denominator, or 0.0 when the denominator is zero.

    Every percentage in the package goes through this guard so an empty
    cluster or a zero-capacity node reports 0% instead of NaN or inf.
    """
    if not denominator:
        return 0.0
    value = numerator / denominator
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class PackingStrategy(str, Enum):
    """
    The heuristic used by PlacementOptimizer to choose a node per workload.

    FIRST_FIT_DECREASING  → first eligible node in list order.
    BEST_FIT_DECREASING   → eligible node left with the tightest headroom.
    WORST_FIT_DECREASING  → eligible node left with the most headroom.
    NETWORK_AWARE         → prefer nodes already hosting communication peers.
    AFFINITY_BASED        → prefer preferred-label nodes and affinity-group peers.
    """
    FIRST_FIT_DECREASING = "ffd"
    BEST_FIT_DECREASING = "bfd"
    WORST_FIT_DECREASING = "wfd"
    NETWORK_AWARE = "network"
    AFFINITY_BASED = "affinity"


class MigrationMode(str, Enum):
    """
    How much of a migration plan the orchestrator may act on by itself.

    OBSERVE   → recommendations only, no state transitions.
    MANUAL    → everything waits for an explicit approval (unless pre-approved).
    SEMI_AUTO → risk-eligible migrations run in safe windows, the rest wait.
    FULL_AUTO → everything runs in safe windows. Requires explicit confirmation.
    """
    OBSERVE = "observe"
    MANUAL = "manual"
    SEMI_AUTO = "semi-auto"
    FULL_AUTO = "full-auto"


class SafetyThreshold(str, Enum):
    """Highest risk tier semi-auto mode may execute without a human."""
    CONSERVATIVE = "conservative"
    MEDIUM = "medium"
    AGGRESSIVE = "aggressive"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecommendationStatus(str, Enum):
    """
    Lifecycle of a MigrationRecommendation.

    RECOMMENDED      → produced, nothing decided yet.
    PENDING_APPROVAL → waiting for an operator (carries a single-use token).
    SCHEDULED        → cleared to run, waiting for the next safe window.
    EXECUTED         → cleared to run now. Terminal.
    REJECTED         → declined or expired. Terminal.
    """
    RECOMMENDED = "recommended"
    PENDING_APPROVAL = "pending-approval"
    SCHEDULED = "scheduled"
    EXECUTED = "executed"
    REJECTED = "rejected"


class MigrationSource(str, Enum):
    """Which plan feeds the migration orchestrator in a service cycle."""
    PLACEMENT = "placement"
    CONSOLIDATION = "consolidation"
    LOCALITY = "locality"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: RESOURCE DIMENSIONS
# CPU is measured in cores, memory in MiB, everywhere.
# ─────────────────────────────────────────────────────────────────────────────

class _WireModel(BaseModel):
    """Base for records that arrive from external collectors in camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResourceCapacity(_WireModel):
    """
    One resource dimension of a node.

    Fields:
        total     → physical capacity.
        used      → live usage (metrics plus any workloads folded in).
        allocated → sum of the limits of workloads assigned to the node.

    ``used <= total`` is expected but not enforced. Over-commitment shows up
    as utilization above 100% in the analysis instead of a validation error.
    """
    total: float = Field(..., ge=0, description="Total capacity")
    used: float = Field(0.0, ge=0, description="Live usage")
    allocated: float = Field(0.0, ge=0, description="Sum of assigned workload limits")

    @property
    def available(self) -> float:
        """Capacity not currently in use. Negative when over-committed."""
        return self.total - self.used


class ResourceClaim(_WireModel):
    """
    What a workload declares and what it actually consumes in one dimension.

    ``request`` is optional on input; ClusterModel.add_workload() fills it
    with half of ``limit`` when absent.
    """
    limit: float = Field(..., ge=0, description="Declared limit")
    request: Optional[float] = Field(None, ge=0, description="Declared request")
    usage: float = Field(0.0, ge=0, description="Observed usage")

    @property
    def usage_ratio(self) -> float:
        """usage / limit as a percentage. 0.0 when no limit is declared."""
        return ratio(self.usage, self.limit) * 100.0


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: INPUT RECORDS
# ─────────────────────────────────────────────────────────────────────────────

class Taint(_WireModel):
    key: str
    value: Optional[str] = None
    effect: str = "NoSchedule"


class Toleration(_WireModel):
    """
    A workload's permission to land on a tainted node.

    ``Equal`` needs matching key and value, ``Exists`` only a matching key.
    When the toleration names an effect, it must match the taint's effect.
    """
    key: str
    operator: Literal["Equal", "Exists"] = "Equal"
    value: Optional[str] = None
    effect: Optional[str] = None

    def tolerates(self, taint: Taint) -> bool:
        if self.key != taint.key:
            return False
        if self.effect is not None and self.effect != taint.effect:
            return False
        if self.operator == "Exists":
            return True
        return self.value == taint.value


class Node(_WireModel):
    """
    A compute node in the cluster snapshot.

    Mutated only by placement simulation (``used``, ``allocated``,
    ``workloads``) and only ever on a copy owned by that simulation.
    """
    id: str = Field(..., description="Unique node identifier")
    name: str = Field(..., description="Human-readable node name")
    cpu: ResourceCapacity
    memory: ResourceCapacity
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    zone: Optional[str] = None
    workloads: List[str] = Field(
        default_factory=list,
        description="Ids of the workloads currently placed on this node",
    )

    def tolerated_by(self, tolerations: List[Toleration]) -> bool:
        """True if every taint on this node is tolerated."""
        return all(
            any(t.tolerates(taint) for t in tolerations)
            for taint in self.taints
        )


class Workload(_WireModel):
    """
    A schedulable unit (pod) and everything the optimizers may look at.

    Immutable input to the optimizers except for ``node_id``, which only
    changes when a caller commits an executed migration.
    """
    id: str = Field(..., description="Unique workload identifier")
    name: str = Field(..., description="Workload name, used for risk grading")
    node_id: Optional[str] = Field(None, description="Node currently hosting the workload")
    namespace: str = "default"
    cpu: ResourceClaim
    memory: ResourceClaim

    # Placement constraints
    node_selector: Dict[str, str] = Field(default_factory=dict)
    tolerations: List[Toleration] = Field(default_factory=list)
    zone: Optional[str] = None

    # Affinity hints
    affinity_group: Optional[str] = None
    affinity_labels: Dict[str, str] = Field(default_factory=dict)
    preferred_nodes: Dict[str, str] = Field(
        default_factory=dict,
        description="Preferred node labels (label → value)",
    )

    # Communication hints
    network_intensity: float = Field(0.0, ge=0)
    communicates_with: List[str] = Field(default_factory=list)

    # Migration risk hints
    replicas: Optional[int] = Field(None, ge=0)
    has_volumes: bool = False
    has_init_containers: bool = False

    @property
    def size_score(self) -> float:
        """Composite size used to order workloads before packing."""
        return self.cpu.usage + self.memory.usage / 1024.0


class TrafficSample(_WireModel):
    """One observed communication relation between two workloads."""
    source: str
    target: str
    bandwidth: float = Field(0.0, ge=0, description="Throughput (Mbps)")
    latency: float = Field(0.0, ge=0, description="Latency (ms)")
    frequency: float = Field(0.0, ge=0, description="Requests per second")


class CommunicationEdge(BaseModel):
    """
    Undirected weighted relation between two workloads.

    weight = log(bandwidth + 1) · 1 / (latency + 1) · log(frequency + 1)

    High-throughput, low-latency, frequent pairs get the heaviest edges.
    """
    source: str
    target: str
    bandwidth: float = 0.0
    latency: float = 0.0
    frequency: float = 0.0

    @property
    def weight(self) -> float:
        bandwidth_score = math.log(self.bandwidth + 1.0)
        latency_score = 1.0 / (self.latency + 1.0)
        frequency_score = math.log(self.frequency + 1.0)
        return bandwidth_score * latency_score * frequency_score

    def other(self, workload_id: str) -> str:
        return self.target if workload_id == self.source else self.source


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: ANALYSIS OUTPUTS
# ─────────────────────────────────────────────────────────────────────────────

class DimensionUtilization(BaseModel):
    """Percentages are exact (not rounded): value / total × 100."""
    total: float
    used: float
    allocated: float
    utilization: float
    allocation_ratio: float
    wasted_ratio: float


class NodeUtilization(BaseModel):
    id: str
    name: str
    cpu: DimensionUtilization
    memory: DimensionUtilization
    workload_count: int
    efficiency: float = Field(..., description="Mean of used/allocated over CPU and memory (%)")


class ClusterUtilization(BaseModel):
    total_cpu: float = 0.0
    used_cpu: float = 0.0
    allocated_cpu: float = 0.0
    total_memory: float = 0.0
    used_memory: float = 0.0
    allocated_memory: float = 0.0
    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    cpu_allocation_ratio: float = 0.0
    memory_allocation_ratio: float = 0.0


class UtilizationReport(BaseModel):
    nodes: List[NodeUtilization] = Field(default_factory=list)
    overall: ClusterUtilization = Field(default_factory=ClusterUtilization)
    diagnostics: List[str] = Field(
        default_factory=list,
        description="Nodes skipped because their figures could not be computed",
    )


class LimitRecommendation(BaseModel):
    limit: float
    usage: float
    usage_ratio: float
    recommended_limit: float


class OverprovisionedWorkload(BaseModel):
    id: str
    name: str
    node_id: Optional[str]
    cpu: LimitRecommendation
    memory: LimitRecommendation


class DimensionLimitStatus(BaseModel):
    limit: float
    request: Optional[float]
    usage: float
    usage_ratio: float
    status: str


class WorkloadLimitAnalysis(BaseModel):
    id: str
    name: str
    node_id: Optional[str]
    cpu: DimensionLimitStatus
    memory: DimensionLimitStatus
    recommendation: str
    suggested_cpu_limit: Optional[float] = None
    suggested_memory_limit: Optional[float] = None
    cpu_savings: float = 0.0
    memory_savings: float = 0.0


class TypedRecommendation(BaseModel):
    """An operator-facing recommendation with a type and a priority."""
    type: str
    priority: str
    message: str
    action: str
    potential_savings: Optional[str] = None


class LimitReport(BaseModel):
    over_provisioned: List[WorkloadLimitAnalysis] = Field(default_factory=list)
    under_provisioned: List[WorkloadLimitAnalysis] = Field(default_factory=list)
    optimized: List[WorkloadLimitAnalysis] = Field(default_factory=list)
    recommendations: List[TypedRecommendation] = Field(default_factory=list)
    potential_cpu_savings: float = 0.0
    potential_memory_savings: float = 0.0


class RightSizingAction(BaseModel):
    workload_name: str
    action: Literal["REDUCE", "INCREASE"]
    current_cpu: float
    current_memory: float
    recommended_cpu: float
    recommended_memory: float
    cpu_savings: float = 0.0
    memory_savings: float = 0.0
    risk: str


class RightSizingPlan(BaseModel):
    total_workloads: int
    needs_right_sizing: int
    already_optimized: int
    actions: List[RightSizingAction] = Field(default_factory=list)
    estimated_monthly_savings_usd: float = 0.0


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: PLACEMENT AND GRAPH OUTPUTS
# ─────────────────────────────────────────────────────────────────────────────

class MigrationStep(BaseModel):
    """
    One workload relocation: produced by diffing a placement against the
    workloads' recorded ``node_id``.

    The resource and replica hints are copied from the workload so the
    risk assessor can grade the step without looking the workload up again.
    """
    workload_id: str
    workload_name: str
    namespace: str = "default"
    source_node: Optional[str] = None
    target_node: str
    target_node_name: Optional[str] = None
    reason: str
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    replicas: Optional[int] = None
    has_volumes: bool = False
    has_init_containers: bool = False
    dependents: List[str] = Field(default_factory=list)
    risk_level: Optional[RiskLevel] = None

    @classmethod
    def for_workload(
        cls,
        workload: Workload,
        target_node: str,
        reason: str,
        target_node_name: Optional[str] = None,
    ) -> "MigrationStep":
        return cls(
            workload_id=workload.id,
            workload_name=workload.name,
            namespace=workload.namespace,
            source_node=workload.node_id,
            target_node=target_node,
            target_node_name=target_node_name,
            reason=reason,
            cpu_usage=workload.cpu.usage,
            memory_usage=workload.memory.usage,
            replicas=workload.replicas,
            has_volumes=workload.has_volumes,
            has_init_containers=workload.has_init_containers,
            dependents=list(workload.communicates_with),
        )


class Placement(BaseModel):
    """
    Output of one PlacementOptimizer run.

    ``efficiency`` is an approximation that assumes homogeneous node sizing
    (see PlacementOptimizer.calculate_efficiency), clamped to [0, 100].
    """
    strategy: PackingStrategy
    assignments: Dict[str, str] = Field(default_factory=dict, description="workload id → node id")
    unplaceable: List[str] = Field(default_factory=list, description="Workload ids with no eligible node")
    efficiency: float = Field(0.0, ge=0.0, le=100.0)
    migrations: List[MigrationStep] = Field(default_factory=list)

    @property
    def active_nodes(self) -> int:
        return len(set(self.assignments.values()))


class CriticalPath(BaseModel):
    """
    A chain of communicating workloads.

    latency   → summed edge latency along the path.
    bandwidth → bottleneck (minimum) edge bandwidth along the path.
    """
    path: List[str]
    latency: float
    bandwidth: float

    @property
    def criticality(self) -> float:
        return self.latency * self.bandwidth


class ColocationRecommendation(BaseModel):
    workloads: List[str]
    target_nodes: List[str]
    expected_latency_ms: float
    reason: str = "Co-locating frequently communicating services"


class NetworkCost(BaseModel):
    """Cross-node traffic for a placement. Each undirected edge counted once."""
    total_cost: float = 0.0
    cross_node_traffic: float = 0.0
    avg_latency: float = 0.0


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: CONSOLIDATION PLAN
# ─────────────────────────────────────────────────────────────────────────────

class TargetNodeAllocation(BaseModel):
    node_id: str
    node_name: str
    allocated_cpu: float
    allocated_memory: float


class ConsolidationSavings(BaseModel):
    node_reduction: int
    percent_reduction: float
    cpu_saved: float
    memory_saved: float


class ConsolidationPlan(BaseModel):
    """
    Minimum-node plan produced by ConsolidationPredictor.

    ``unmigrated`` lists workloads the greedy target packing could not fit
    onto any remaining target node; they need manual placement.
    """
    feasible: bool = False
    current_nodes: int = 0
    required_nodes: int = 0
    target_nodes: List[TargetNodeAllocation] = Field(default_factory=list)
    savings: Optional[ConsolidationSavings] = None
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    migration_steps: List[MigrationStep] = Field(default_factory=list)
    unmigrated: List[str] = Field(default_factory=list)

    @property
    def total_migrations(self) -> int:
        return len(self.migration_steps)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: RISK GRADING AND RECOMMENDATION LIFECYCLE
# ─────────────────────────────────────────────────────────────────────────────

class RiskAssessment(BaseModel):
    level: RiskLevel
    score: int
    factors: List[str] = Field(default_factory=list)
    reason: str


class DowntimeEstimate(BaseModel):
    estimated_ms: int
    can_be_zero: bool

    @property
    def formatted(self) -> str:
        return f"{math.ceil(self.estimated_ms / 1000)} seconds"


class ImpactAssessment(BaseModel):
    users: str
    services: List[str] = Field(default_factory=list)
    data_loss: str
    performance: str


class MigrationCommands(BaseModel):
    drain: str
    evict: str
    cordon: str
    uncordon: str
    verify: str


class RollbackPlan(BaseModel):
    """Static guidance. Nothing in the package executes it."""
    steps: List[str]
    automated: str


class SafeWindow(BaseModel):
    """
    Result of a safe-window lookup.

    is_now=True  → start/end are the bounds of the window we are inside.
    is_now=False → start/end are the bounds of the next window.
    """
    is_now: bool
    start: datetime
    end: datetime


class Recommended(BaseModel):
    kind: Literal["recommended"] = "recommended"


class PendingApproval(BaseModel):
    kind: Literal["pending-approval"] = "pending-approval"
    approval_token: str
    expires_at: datetime
    reason: Optional[str] = None
    approve_command: str
    reject_command: str

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class Scheduled(BaseModel):
    kind: Literal["scheduled"] = "scheduled"
    scheduled_for: datetime
    window_end: datetime
    reason: str = "Waiting for low-traffic window"


class Executed(BaseModel):
    kind: Literal["executed"] = "executed"
    executed_at: datetime
    trigger: str = Field(..., description="What cleared the migration: pre-approval, approval, safe-window")


class Rejected(BaseModel):
    kind: Literal["rejected"] = "rejected"
    rejected_at: datetime
    reason: str


RecommendationState = Annotated[
    Union[Recommended, PendingApproval, Scheduled, Executed, Rejected],
    Field(discriminator="kind"),
]


class MigrationRecommendation(BaseModel):
    """
    A MigrationStep enriched with risk, impact, downtime, commands and a
    rollback procedure, plus its current lifecycle state.

    ``state`` is a tagged variant: inspect ``state.kind`` (or ``status``)
    and the variant's own fields. Transitions live in
    consolidator/control_plane/lifecycle.py and never mutate in place.
    """
    id: str
    created_at: datetime
    workload_id: str
    workload: str
    namespace: str = "default"
    source_node: Optional[str] = None
    target_node: str
    reason: str
    risk: RiskAssessment
    impact: ImpactAssessment
    downtime: DowntimeEstimate
    commands: MigrationCommands
    rollback: RollbackPlan
    state: RecommendationState = Field(default_factory=Recommended)

    @property
    def status(self) -> RecommendationStatus:
        return RecommendationStatus(self.state.kind)


class RunSummary(BaseModel):
    total: int
    risk_breakdown: Dict[str, int]
    estimated_monthly_savings_usd: float
    estimated_total_downtime_s: int

    @property
    def estimated_savings(self) -> str:
        return f"${self.estimated_monthly_savings_usd:.2f}/month"


class MigrationRunResult(BaseModel):
    mode: MigrationMode
    recommendations: List[MigrationRecommendation] = Field(default_factory=list)
    pending_approvals: List[MigrationRecommendation] = Field(default_factory=list)
    executed: List[MigrationRecommendation] = Field(default_factory=list)
    rejected: List[MigrationRecommendation] = Field(default_factory=list)
    scheduled: List[MigrationRecommendation] = Field(default_factory=list)
    summary: Optional[RunSummary] = None
    next_steps: List[str] = Field(default_factory=list)
    warning: Optional[str] = None
    message: Optional[str] = None
    interactive_prompt: bool = False


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 8: SERVICE REPORT
# ─────────────────────────────────────────────────────────────────────────────

class ReportSummary(BaseModel):
    total_nodes: int = 0
    active_nodes: int = 0
    total_workloads: int = 0
    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0


class OptimizationReport(BaseModel):
    """Everything one OptimizationService cycle produced."""
    generated_at: datetime
    status: Literal["ready", "error"] = "ready"
    error: Optional[str] = None
    summary: ReportSummary = Field(default_factory=ReportSummary)
    utilization: Optional[UtilizationReport] = None
    placement: Optional[Placement] = None
    consolidation: Optional[ConsolidationPlan] = None
    network_cost_baseline: Optional[NetworkCost] = None
    network_cost_candidate: Optional[NetworkCost] = None
    colocations: List[ColocationRecommendation] = Field(default_factory=list)
    locality_migrations: List[MigrationStep] = Field(default_factory=list)
    communities: List[List[str]] = Field(default_factory=list)
    overprovisioned_workloads: List[OverprovisionedWorkload] = Field(default_factory=list)
    right_sizing: Optional[RightSizingPlan] = None
    recommendations: List[TypedRecommendation] = Field(default_factory=list)
    migration_result: Optional[MigrationRunResult] = None
    diagnostics: List[str] = Field(default_factory=list)

    @property
    def network_cost_reduced(self) -> Optional[bool]:
        if self.network_cost_baseline is None or self.network_cost_candidate is None:
            return None
        return self.network_cost_candidate.total_cost < self.network_cost_baseline.total_cost
