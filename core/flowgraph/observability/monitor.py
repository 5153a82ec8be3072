"""
Execution observers and the metrics monitor.

The engine reports lifecycle events to an ``ExecutionObserver`` passed in at
construction time. ``WorkflowMonitor`` is the stock observer: it keeps
per-execution and per-node metrics and derives a health score per workflow.

Example:
    monitor = WorkflowMonitor()
    engine = ExecutionEngine(store, observer=monitor)
    await engine.start(graph, {"amount": 1500})
    print(monitor.workflow_health(graph.id).status)
"""

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from flowgraph.schemas.execution import ExecutionStatus, NodeStatus

if TYPE_CHECKING:
    from flowgraph.graph.workflow import StepNode
    from flowgraph.schemas.execution import ExecutionState

logger = logging.getLogger(__name__)


class ExecutionObserver:
    """Receives engine lifecycle callbacks. All hooks default to no-ops."""

    async def on_execution_start(self, state: "ExecutionState") -> None:
        pass

    async def on_node_start(self, state: "ExecutionState", node: "StepNode") -> None:
        pass

    async def on_node_retry(
        self, state: "ExecutionState", node: "StepNode", attempt: int, error: str
    ) -> None:
        pass

    async def on_node_end(
        self,
        state: "ExecutionState",
        node: "StepNode",
        status: NodeStatus,
        error: str | None = None,
    ) -> None:
        pass

    async def on_execution_end(self, state: "ExecutionState") -> None:
        pass


class CompositeObserver(ExecutionObserver):
    """Fans every callback out to several observers in order."""

    def __init__(self, observers: list[ExecutionObserver]):
        self.observers = list(observers)

    async def on_execution_start(self, state):
        for o in self.observers:
            await o.on_execution_start(state)

    async def on_node_start(self, state, node):
        for o in self.observers:
            await o.on_node_start(state, node)

    async def on_node_retry(self, state, node, attempt, error):
        for o in self.observers:
            await o.on_node_retry(state, node, attempt, error)

    async def on_node_end(self, state, node, status, error=None):
        for o in self.observers:
            await o.on_node_end(state, node, status, error)

    async def on_execution_end(self, state):
        for o in self.observers:
            await o.on_execution_end(state)


@dataclass
class NodeMetrics:
    node_id: str
    node_kind: str
    node_label: str
    start_time: float
    end_time: float | None = None
    duration_ms: float | None = None
    status: str = NodeStatus.RUNNING.value
    retry_count: int = 0
    error_count: int = 0
    last_error: str | None = None


@dataclass
class ExecutionMetrics:
    execution_id: str
    workflow_id: str
    start_time: float
    end_time: float | None = None
    duration_ms: float | None = None
    status: str = ExecutionStatus.RUNNING.value
    total_nodes: int = 0
    completed_nodes: int = 0
    failed_nodes: int = 0
    paused_nodes: int = 0
    average_node_duration_ms: float = 0.0


@dataclass
class WorkflowHealth:
    workflow_id: str
    health_score: int = 100
    status: str = "healthy"  # "healthy", "degraded" or "unhealthy"
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    average_execution_ms: float = 0.0
    success_rate: float = 100.0
    error_rate: float = 0.0
    last_execution: ExecutionMetrics | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WorkflowMonitor(ExecutionObserver):
    """
    In-process metrics collector.

    Keeps one ExecutionMetrics per execution and the list of NodeMetrics
    recorded for it (a looped node appears once per visit).
    """

    SLOW_EXECUTION_MS = 300_000
    RECENT_WINDOW_SECONDS = 3600

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.executions: dict[str, ExecutionMetrics] = {}
        self.node_metrics: dict[str, list[NodeMetrics]] = {}

    def _latest_node(self, execution_id: str, node_id: str) -> NodeMetrics | None:
        for metric in reversed(self.node_metrics.get(execution_id, [])):
            if metric.node_id == node_id:
                return metric
        return None

    async def on_execution_start(self, state):
        if state.execution_id in self.executions:
            # Resumed run: keep the original start time
            self.executions[state.execution_id].status = ExecutionStatus.RUNNING.value
            return
        self.executions[state.execution_id] = ExecutionMetrics(
            execution_id=state.execution_id,
            workflow_id=state.workflow_id,
            start_time=self._clock(),
        )
        self.node_metrics[state.execution_id] = []

    async def on_node_start(self, state, node):
        self.node_metrics.setdefault(state.execution_id, []).append(
            NodeMetrics(
                node_id=node.id,
                node_kind=str(node.kind),
                node_label=node.label,
                start_time=self._clock(),
            )
        )
        metrics = self.executions.get(state.execution_id)
        if metrics:
            metrics.total_nodes += 1

    async def on_node_retry(self, state, node, attempt, error):
        metric = self._latest_node(state.execution_id, node.id)
        if metric:
            metric.retry_count += 1
            metric.error_count += 1
            metric.last_error = error

    async def on_node_end(self, state, node, status, error=None):
        metric = self._latest_node(state.execution_id, node.id)
        if metric is None:
            return
        metric.end_time = self._clock()
        metric.duration_ms = (metric.end_time - metric.start_time) * 1000
        metric.status = str(status)
        if error:
            metric.last_error = error
            metric.error_count += 1

        metrics = self.executions.get(state.execution_id)
        if metrics:
            if status == NodeStatus.COMPLETED:
                metrics.completed_nodes += 1
            elif status == NodeStatus.FAILED:
                metrics.failed_nodes += 1

    async def on_execution_end(self, state):
        metrics = self.executions.get(state.execution_id)
        if metrics is None:
            return
        metrics.status = str(state.status)
        if state.status == ExecutionStatus.PAUSED:
            metrics.paused_nodes += 1
            return
        metrics.end_time = self._clock()
        metrics.duration_ms = (metrics.end_time - metrics.start_time) * 1000

        finished = [
            m
            for m in self.node_metrics.get(state.execution_id, [])
            if m.status == NodeStatus.COMPLETED.value and m.duration_ms is not None
        ]
        if finished:
            metrics.average_node_duration_ms = sum(m.duration_ms for m in finished) / len(finished)

    def get_execution_metrics(self, execution_id: str) -> ExecutionMetrics | None:
        return self.executions.get(execution_id)

    def get_node_metrics(self, execution_id: str) -> list[NodeMetrics]:
        return list(self.node_metrics.get(execution_id, []))

    def workflow_health(self, workflow_id: str) -> WorkflowHealth:
        """
        Score a workflow from 0 to 100 based on its recorded executions.

        Deductions: success rate below 80% (-30), error rate above 20% (-25),
        average duration above 5 minutes (-20), more than half of the last
        hour's runs failed (-25). 80+ is healthy, 50+ degraded.
        """
        runs = [m for m in self.executions.values() if m.workflow_id == workflow_id]
        if not runs:
            return WorkflowHealth(workflow_id=workflow_id)

        completed = sum(1 for m in runs if m.status == ExecutionStatus.COMPLETED.value)
        failed = sum(1 for m in runs if m.status == ExecutionStatus.FAILED.value)
        success_rate = completed / len(runs) * 100
        error_rate = failed / len(runs) * 100
        average_ms = sum(m.duration_ms or 0 for m in runs) / len(runs)

        score = 100
        issues: list[str] = []
        recommendations: list[str] = []

        if success_rate < 80:
            score -= 30
            issues.append(f"Low success rate: {success_rate:.1f}%")
            recommendations.append("Review failed executions and fix common issues")

        if error_rate > 20:
            score -= 25
            issues.append(f"High error rate: {error_rate:.1f}%")
            recommendations.append("Implement better error handling and retry logic")

        if average_ms > self.SLOW_EXECUTION_MS:
            score -= 20
            issues.append(f"Long execution times: {average_ms / 1000:.1f}s average")
            recommendations.append("Optimize workflow performance and consider parallel execution")

        cutoff = self._clock() - self.RECENT_WINDOW_SECONDS
        recent = [m for m in runs if m.start_time > cutoff]
        if recent:
            recent_failure_rate = sum(
                1 for m in recent if m.status == ExecutionStatus.FAILED.value
            ) / len(recent)
            if recent_failure_rate > 0.5:
                score -= 25
                issues.append(f"Recent high failure rate: {recent_failure_rate * 100:.1f}%")
                recommendations.append("Investigate recent failures and check system health")

        if score >= 80:
            status = "healthy"
        elif score >= 50:
            status = "degraded"
        else:
            status = "unhealthy"

        return WorkflowHealth(
            workflow_id=workflow_id,
            health_score=max(0, score),
            status=status,
            issues=issues,
            recommendations=recommendations,
            average_execution_ms=average_ms,
            success_rate=success_rate,
            error_rate=error_rate,
            last_execution=runs[-1],
        )

    def clear_old_metrics(self, older_than_hours: float = 24) -> int:
        """Drop executions started before the cutoff. Returns how many were removed."""
        cutoff = self._clock() - older_than_hours * 3600
        stale = [eid for eid, m in self.executions.items() if m.start_time < cutoff]
        for execution_id in stale:
            del self.executions[execution_id]
            self.node_metrics.pop(execution_id, None)
        return len(stale)

    def export_metrics(self) -> dict[str, Any]:
        workflow_ids = {m.workflow_id for m in self.executions.values()}
        return {
            "exported_at": datetime.now(UTC).isoformat(),
            "executions": [asdict(m) for m in self.executions.values()],
            "node_metrics": {
                eid: [asdict(n) for n in nodes] for eid, nodes in self.node_metrics.items()
            },
            "health": {wid: self.workflow_health(wid).to_dict() for wid in sorted(workflow_ids)},
        }
