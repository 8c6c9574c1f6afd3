"""
consolidator/control_plane/optimization_service.py
──────────────────────────────────────────────────
OptimizationService: one full analysis cycle over a cluster snapshot, plus
the approval registry that outlives a single cycle.

What a cycle does
──────────────────
  1. Namespace filter      target_namespaces, else everything not excluded
                           (kube-system and kube-public by default)
  2. ClusterModel          nodes + filtered workloads
  3. Utilization analysis  per node and cluster wide
  4. Placement             PlacementOptimizer with the configured strategy
  5. Consolidation         ConsolidationPredictor (if enabled)
  6. Network validation    baseline vs candidate cross-node cost, communities,
                           co-location recommendations and the locality
                           migrations that realise them (only when traffic is
                           present). With the network-aware strategy, traffic
                           peers are added to each workload's communicates_with
                           before step 4.
  7. Right-sizing          over-provisioned workloads, LimitAnalyzer report
  8. Migration run         MigrationOrchestrator in the configured mode, fed
                           from consolidation, placement or locality steps
  9. Report                OptimizationReport, kept in a bounded history

The service is polled by an outer control loop. is_due(now) tells the loop
whether ANALYSIS_INTERVAL has passed since the previous cycle.

Error handling contract
────────────────────────
  Full-auto without confirmation: checked before step 1. The cycle returns
  an error report naming the problem and does no work.

  Anything unexpected inside a cycle: logged with logger.exception and
  returned as an error report. run_cycle() never raises.

Approvals
──────────
Pending approvals produced by any cycle are kept by recommendation id until
approve(), reject() or expire_stale_approvals() resolves them. One relocation
(workload, source node, target node) has at most one pending entry: when a
later cycle proposes the same move again, the earlier entry is rejected as
superseded and the new one takes its place. Resolved recommendations are kept
in `decided`, oldest evicted first once DECIDED_SIZE is reached.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from consolidator.control_plane import lifecycle
from consolidator.control_plane.cluster_model import ClusterModel
from consolidator.control_plane.consolidation import ConsolidationPredictor
from consolidator.control_plane.limit_analyzer import LimitAnalyzer
from consolidator.control_plane.migration import (
    ConfigurationError,
    FullAutoNotConfirmedError,
    MigrationOrchestrator,
)
from consolidator.shared.config import OptimizationConfig
from consolidator.shared.models import (
    ConsolidationPlan,
    MigrationMode,
    MigrationRecommendation,
    MigrationSource,
    MigrationStep,
    OptimizationReport,
    PackingStrategy,
    Placement,
    ReportSummary,
    TrafficSample,
    TypedRecommendation,
    UtilizationReport,
    Workload,
)
from consolidator.shared.risk import RiskAssessor
from consolidator.snapshot.loader import ClusterSnapshot
from packing_core import CommunicationGraphOptimizer, PlacementOptimizer

logger = logging.getLogger(__name__)

ANALYSIS_INTERVAL: timedelta = timedelta(minutes=30)
"""Minimum time between two analysis cycles."""

HISTORY_SIZE: int = 50
"""Number of past reports kept in memory."""

DECIDED_SIZE: int = 500
"""Number of approved, rejected or expired recommendations kept for inspection."""

TOP_CRITICAL_PATHS: int = 5
"""Critical paths turned into co-location recommendations per cycle."""


class RecommendationNotFoundError(Exception):
    """Raised when approve()/reject() names no pending recommendation."""

    def __init__(self, recommendation_id: str) -> None:
        self.recommendation_id = recommendation_id
        super().__init__(f"No pending recommendation {recommendation_id}")


def relocation_key(rec: MigrationRecommendation) -> Tuple[str, Optional[str], str]:
    return rec.workload_id, rec.source_node, rec.target_node


def with_traffic_peers(
    workloads: Sequence[Workload],
    traffic: Sequence[TrafficSample],
) -> List[Workload]:
    """
    Copies of ``workloads`` whose communicates_with also lists every workload
    they exchange traffic with, in either direction. Workloads with no new
    peer are returned as is.
    """
    peers: Dict[str, List[str]] = {}
    for sample in traffic:
        if sample.source == sample.target:
            continue
        peers.setdefault(sample.source, []).append(sample.target)
        peers.setdefault(sample.target, []).append(sample.source)

    enriched: List[Workload] = []
    for workload in workloads:
        extra = [p for p in peers.get(workload.id, []) if p not in workload.communicates_with]
        if not extra:
            enriched.append(workload)
            continue
        merged = list(workload.communicates_with)
        for peer in extra:
            if peer not in merged:
                merged.append(peer)
        enriched.append(workload.model_copy(update={"communicates_with": merged}))
    return enriched


class OptimizationService:
    """
    Runs analysis cycles and tracks their pending approvals.

    Usage:
        service = OptimizationService(OptimizationConfig(mode="semi-auto"))
        if service.is_due(now):
            report = service.run_cycle(load_snapshot("cluster.json"), now)

    Attributes:
        history  : deque(maxlen=HISTORY_SIZE)            — past reports, newest last
        pending  : Dict[str, MigrationRecommendation]    — awaiting approval
        decided  : Dict[str, MigrationRecommendation]    — approved / rejected / expired,
                                                           at most decided_size entries
    """

    def __init__(
        self,
        config: Optional[OptimizationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        interval: timedelta = ANALYSIS_INTERVAL,
        decided_size: int = DECIDED_SIZE,
    ) -> None:
        self.config = config or OptimizationConfig()
        self._clock = clock or datetime.now
        self._interval = interval
        self._decided_size = decided_size
        self._risk = RiskAssessor()
        self._placement = PlacementOptimizer(self._risk)

        self.history: Deque[OptimizationReport] = deque(maxlen=HISTORY_SIZE)
        self.pending: Dict[str, MigrationRecommendation] = {}
        self.decided: Dict[str, MigrationRecommendation] = {}
        self.last_run: Optional[datetime] = None

    # ── Scheduling of cycles ──────────────────────────────────────────────────

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.last_run is None:
            return True
        now = now or self._clock()
        return now - self.last_run >= self._interval

    # ── Cycle ─────────────────────────────────────────────────────────────────

    def run_cycle(
        self,
        snapshot: ClusterSnapshot,
        now: Optional[datetime] = None,
    ) -> OptimizationReport:
        now = now or self._clock()
        self.last_run = now
        config = self.config

        if config.mode == MigrationMode.FULL_AUTO and not config.confirm_full_auto:
            error = FullAutoNotConfirmedError()
            logger.warning("Optimization cycle refused: %s", error)
            return self._record(
                OptimizationReport(generated_at=now, status="error", error=str(error))
            )

        try:
            report = self._analyze(snapshot, now)
        except ConfigurationError as exc:
            logger.warning("Optimization cycle refused: %s", exc)
            report = OptimizationReport(generated_at=now, status="error", error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error in optimization cycle")
            report = OptimizationReport(
                generated_at=now,
                status="error",
                error=f"Unexpected error: {exc.__class__.__name__}: {exc}",
            )
        return self._record(report)

    def _record(self, report: OptimizationReport) -> OptimizationReport:
        self.history.append(report)
        return report

    def _analyze(self, snapshot: ClusterSnapshot, now: datetime) -> OptimizationReport:
        config = self.config

        workloads = [w for w in snapshot.workloads if config.includes_namespace(w.namespace)]
        skipped = len(snapshot.workloads) - len(workloads)
        if skipped:
            logger.debug("Namespace filter skipped %d workload(s)", skipped)

        model = ClusterModel.from_records(snapshot.nodes, workloads)
        utilization = model.analyze_utilization()

        placement_input = model.workloads
        if config.packing_strategy == PackingStrategy.NETWORK_AWARE and snapshot.traffic:
            placement_input = with_traffic_peers(placement_input, snapshot.traffic)
        placement = self._placement.optimize(
            placement_input, model.nodes, config.packing_strategy, config.constraints
        )

        consolidation: Optional[ConsolidationPlan] = None
        if config.consolidation_enabled:
            consolidation = ConsolidationPredictor(
                model, risk_assessor=self._risk
            ).generate_migration_plan()

        report = OptimizationReport(
            generated_at=now,
            utilization=utilization,
            placement=placement,
            consolidation=consolidation,
            diagnostics=list(utilization.diagnostics),
        )

        if snapshot.traffic:
            graph = CommunicationGraphOptimizer(self._risk).build_graph(
                model.workloads, snapshot.traffic
            )
            baseline = {w.id: w.node_id for w in model.workloads if w.node_id}
            report.network_cost_baseline = graph.calculate_network_cost(baseline)
            report.network_cost_candidate = graph.calculate_network_cost(placement.assignments)
            report.communities = graph.detect_communities()
            report.colocations = graph.recommend_placement(
                graph.find_critical_paths(), model.nodes, top=TOP_CRITICAL_PATHS
            )
            report.locality_migrations = graph.locality_migrations(
                report.colocations, model.nodes
            )

        report.overprovisioned_workloads = model.identify_overprovisioned_workloads()
        limits = LimitAnalyzer(model.workloads)
        report.right_sizing = limits.generate_right_sizing_report()

        report.summary = self._summary(utilization, len(model.workloads))
        report.recommendations = self._recommendations(
            utilization, consolidation, placement
        ) + limits.analyze_limits_vs_usage().recommendations

        orchestrator = MigrationOrchestrator(clock=lambda: now, risk_assessor=self._risk)
        steps = self._migration_steps(report)
        report.migration_result = orchestrator.execute_plan(steps, config.migration_options())
        for rec in report.migration_result.pending_approvals:
            self._register_pending(rec, now)

        logger.info(
            "Optimization cycle: %d node(s), %d workload(s), %d migration step(s), "
            "%d pending approval(s)",
            report.summary.total_nodes,
            report.summary.total_workloads,
            len(steps),
            len(report.migration_result.pending_approvals),
        )
        return report

    def _migration_steps(self, report: OptimizationReport) -> List[MigrationStep]:
        source = self.config.migration_source
        if source == MigrationSource.CONSOLIDATION:
            consolidation = report.consolidation
            if consolidation is not None and consolidation.feasible:
                return list(consolidation.migration_steps)
            return []
        if source == MigrationSource.LOCALITY:
            return list(report.locality_migrations)
        return list(report.placement.migrations)

    @staticmethod
    def _summary(utilization: UtilizationReport, workload_count: int) -> ReportSummary:
        return ReportSummary(
            total_nodes=len(utilization.nodes),
            active_nodes=sum(1 for n in utilization.nodes if n.workload_count > 0),
            total_workloads=workload_count,
            cpu_utilization=utilization.overall.cpu_utilization,
            memory_utilization=utilization.overall.memory_utilization,
        )

    @staticmethod
    def _recommendations(
        utilization: UtilizationReport,
        consolidation: Optional[ConsolidationPlan],
        placement: Placement,
    ) -> List[TypedRecommendation]:
        recommendations: List[TypedRecommendation] = []
        if consolidation is not None and consolidation.feasible:
            recommendations.append(
                TypedRecommendation(
                    type="CONSOLIDATION",
                    priority="HIGH",
                    message=(
                        f"Can reduce nodes from {len(utilization.nodes)} "
                        f"to {consolidation.required_nodes}"
                    ),
                    action="Review migration plan",
                )
            )
        if placement.unplaceable:
            recommendations.append(
                TypedRecommendation(
                    type="CAPACITY",
                    priority="MEDIUM",
                    message=(
                        f"{len(placement.unplaceable)} workloads have no eligible node "
                        f"under the {placement.strategy.value} strategy"
                    ),
                    action="Check node selectors, taints and free capacity",
                )
            )
        return recommendations

    # ── Approvals ─────────────────────────────────────────────────────────────

    def _register_pending(self, rec: MigrationRecommendation, now: datetime) -> None:
        key = relocation_key(rec)
        for rec_id, existing in list(self.pending.items()):
            if relocation_key(existing) != key:
                continue
            del self.pending[rec_id]
            self._decide(rec_id, lifecycle.reject(existing, now, f"Superseded by {rec.id}"))
            logger.info("Migration %s superseded by %s (%s)", rec_id, rec.id, rec.workload)
        self.pending[rec.id] = rec

    def _decide(self, rec_id: str, rec: MigrationRecommendation) -> None:
        self.decided[rec_id] = rec
        while len(self.decided) > self._decided_size:
            del self.decided[next(iter(self.decided))]

    def _take_pending(self, recommendation_id: str) -> MigrationRecommendation:
        rec = self.pending.get(recommendation_id)
        if rec is None:
            raise RecommendationNotFoundError(recommendation_id)
        return rec

    def approve(
        self,
        recommendation_id: str,
        token: str,
        now: Optional[datetime] = None,
    ) -> MigrationRecommendation:
        """
        Approve a pending recommendation. Raises lifecycle errors on a wrong
        token or an expired entry; the entry stays pending in both cases.
        """
        rec = self._take_pending(recommendation_id)
        approved = lifecycle.approve(rec, token, now or self._clock())
        del self.pending[recommendation_id]
        self._decide(recommendation_id, approved)
        logger.info("Migration %s approved (%s)", recommendation_id, approved.workload)
        return approved

    def reject(
        self,
        recommendation_id: str,
        reason: str = "Rejected by operator",
        now: Optional[datetime] = None,
    ) -> MigrationRecommendation:
        rec = self._take_pending(recommendation_id)
        rejected = lifecycle.reject(rec, now or self._clock(), reason)
        del self.pending[recommendation_id]
        self._decide(recommendation_id, rejected)
        logger.info("Migration %s rejected: %s", recommendation_id, reason)
        return rejected

    def expire_stale_approvals(self, now: Optional[datetime] = None) -> List[MigrationRecommendation]:
        now = now or self._clock()
        expired: List[MigrationRecommendation] = []
        for rec_id, rec in list(self.pending.items()):
            updated = lifecycle.expire(rec, now)
            if updated is rec:
                continue
            del self.pending[rec_id]
            self._decide(rec_id, updated)
            expired.append(updated)
        if expired:
            logger.info("Expired %d pending approval(s)", len(expired))
        return expired
