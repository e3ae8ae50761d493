"""
Assignment Coordinator - Agent Selection and Workload Balancing

Picks the best available agent for a task and keeps workload counters
consistent:
- assign_work / reassign_work: filter, score, select, commit
- start_assignment / complete_assignment: lifecycle of a committed assignment
- balance_workload: recommend moves from overloaded to idle agents

"No qualifying agent", "feature disabled" and "epic not active" return
None. Agent load is only incremented once an Assignment is committed.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .config import EpicFlowConfig
from .errors import NotFoundError
from .models import (
    AgentAvailability,
    AgentProfile,
    Assignment,
    AssignmentStatus,
    Epic,
    EpicState,
    PerformanceRecord,
    Task,
    TaskStatus,
)
from .notification_engine import NotificationEngine, ProgressEvent
from .scoring import CapabilityScorer, ScoreBreakdown
from .store import Store

logger = logging.getLogger("assignment_coordinator")

OVERLOADED_PERCENT = 80.0
UNDERUTILIZED_PERCENT = 40.0
MAX_MOVES_PER_AGENT = 2


class AssignmentAction(str, Enum):
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AssignmentHistoryEntry:
    """Append-only log entry."""
    action: AssignmentAction
    assignment_id: str
    task_id: str
    agent_id: str
    epic_id: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "assignment_id": self.assignment_id,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "epic_id": self.epic_id,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


@dataclass
class WorkloadRecommendation:
    from_agent_id: str
    to_agent_id: str
    task_id: str
    assignment_id: str
    expected_improvement: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_agent_id": self.from_agent_id,
            "to_agent_id": self.to_agent_id,
            "task_id": self.task_id,
            "assignment_id": self.assignment_id,
            "expected_improvement": round(self.expected_improvement, 2),
            "reason": self.reason,
        }


@dataclass
class WorkloadBalance:
    recommendations: List[WorkloadRecommendation]
    balance_score: float
    utilization: Dict[str, float]
    overloaded: List[str]
    underutilized: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendations": [r.to_dict() for r in self.recommendations],
            "balance_score": round(self.balance_score, 2),
            "utilization": {k: round(v, 2) for k, v in self.utilization.items()},
            "overloaded": list(self.overloaded),
            "underutilized": list(self.underutilized),
        }


def calculate_balance_score(utilization_percentages: List[float]) -> float:
    """100 minus the population standard deviation of utilization; 100 for no agents."""
    if not utilization_percentages:
        return 100.0
    mean = sum(utilization_percentages) / len(utilization_percentages)
    variance = sum((u - mean) ** 2 for u in utilization_percentages) / len(utilization_percentages)
    return max(0.0, 100.0 - math.sqrt(variance))


class AssignmentCoordinator:
    """
    Assigns tasks to agents.

    The below-threshold fallback is off by default. When
    config.agents.allow_below_threshold is set, both assign_work and
    reassign_work fall back to the best-scoring candidate and flag the
    Assignment with below_threshold=True.
    """

    def __init__(
        self,
        store: Store,
        scorer: CapabilityScorer,
        config: Optional[EpicFlowConfig] = None,
        notifications: Optional[NotificationEngine] = None,
    ):
        self.store = store
        self.scorer = scorer
        self.config = config or EpicFlowConfig()
        self.notifications = notifications
        self._history: List[AssignmentHistoryEntry] = []
        self._task_listeners: List[Callable[[Task], Any]] = []

    def add_task_listener(self, listener: Callable[[Task], Any]) -> None:
        """Called with the task after every status change made here."""
        self._task_listeners.append(listener)

    def _put_task(self, task: Task) -> None:
        self.store.put_task(task)
        for listener in list(self._task_listeners):
            listener(task)

    def _assignment_allowed(self, epic: Epic, task: Task) -> bool:
        if not self.config.enabled:
            logger.info(f"Assignment disabled; skipping task {task.task_id}")
            return False
        if epic.state != EpicState.ACTIVE:
            logger.info(f"Epic {epic.epic_id} is {epic.state.value}; skipping task {task.task_id}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Candidate selection
    # -------------------------------------------------------------------------

    @property
    def system_task_cap(self) -> int:
        return self.config.agents.max_tasks_per_agent

    def filter_candidates(
        self,
        candidates: List[AgentProfile],
        excluded: Optional[Set[str]] = None,
    ) -> List[AgentProfile]:
        excluded = excluded or set()
        cap = self.system_task_cap
        return [
            agent for agent in candidates
            if agent.agent_id not in excluded
            and agent.availability == AgentAvailability.AVAILABLE
            and agent.current_load < agent.max_concurrent_tasks
            and agent.current_load < cap
        ]

    def _select(self, scores: List[ScoreBreakdown]) -> Optional[ScoreBreakdown]:
        for breakdown in scores:
            if breakdown.meets_threshold:
                return breakdown
        return None

    def active_assignment_for(self, task: Task) -> Optional[Assignment]:
        for assignment in self.store.list_assignments(task.epic_id):
            if assignment.task_id == task.task_id and assignment.is_active:
                return assignment
        return None

    # -------------------------------------------------------------------------
    # Assign / Reassign
    # -------------------------------------------------------------------------

    async def assign_work(
        self,
        epic: Epic,
        task: Task,
        candidates: Optional[List[AgentProfile]] = None,
    ) -> Optional[Assignment]:
        """
        Assign `task` to the best qualifying candidate.

        candidates defaults to every agent in the store. If the task already
        has an active assignment, that assignment is returned unchanged.
        """
        if not self._assignment_allowed(epic, task):
            return None

        existing = self.active_assignment_for(task)
        if existing is not None:
            logger.info(f"Task {task.task_id} already assigned to {existing.agent_id}")
            return existing

        return await self._assign(
            epic,
            task,
            candidates,
            excluded=set(),
            metadata={},
            action=AssignmentAction.ASSIGNED,
        )

    async def reassign_work(
        self,
        epic: Epic,
        task: Task,
        candidates: Optional[List[AgentProfile]] = None,
        reason: str = "",
        current_assignment: Optional[Assignment] = None,
    ) -> Optional[Assignment]:
        """
        Supersede the task's current assignment and pick a different agent.

        The previous agent is excluded. The old assignment is marked FAILED
        and its agent's load released even if no replacement qualifies.
        Raises NotFoundError if the task has no active assignment, or if
        current_assignment is no longer active.
        """
        if not self._assignment_allowed(epic, task):
            return None

        previous = current_assignment or self.active_assignment_for(task)
        if previous is None or not previous.is_active:
            raise NotFoundError("assignment", task.task_id)

        now = datetime.utcnow()
        previous.status = AssignmentStatus.FAILED
        previous.completed_at = now
        previous.metadata["superseded_reason"] = reason
        self.store.put_assignment(previous)
        self._release_agent(previous.agent_id)
        self._record(AssignmentAction.FAILED, previous, {"reason": reason, "superseded": True})

        task.status = TaskStatus.PENDING
        task.assigned_agent_id = None
        task.updated_at = now
        self._put_task(task)

        replacement = await self._assign(
            epic,
            task,
            candidates,
            excluded={previous.agent_id},
            metadata={
                "reassigned_from": previous.agent_id,
                "reason": reason,
                "original_assignment_id": previous.assignment_id,
            },
            action=AssignmentAction.REASSIGNED,
        )
        if replacement is not None:
            previous.superseded_by = replacement.assignment_id
            self.store.put_assignment(previous)
            logger.info(
                f"Reassigned task {task.task_id}: {previous.agent_id} -> {replacement.agent_id} ({reason or 'no reason given'})"
            )
        else:
            logger.warning(f"No replacement agent for task {task.task_id} after releasing {previous.agent_id}")
        return replacement

    async def _assign(
        self,
        epic: Epic,
        task: Task,
        candidates: Optional[List[AgentProfile]],
        excluded: Set[str],
        metadata: Dict[str, Any],
        action: AssignmentAction,
    ) -> Optional[Assignment]:
        pool = self.filter_candidates(
            candidates if candidates is not None else self.store.list_agents(),
            excluded,
        )
        if not pool:
            logger.warning(f"No available agents for task {task.task_id}")
            return None

        scores = self.scorer.score_many(pool, task)
        chosen = self._select(scores)
        below_threshold = False
        if chosen is None:
            if not self.config.agents.allow_below_threshold:
                logger.warning(
                    f"No agent meets threshold {self.scorer.min_threshold} for task {task.task_id} "
                    f"(best: {scores[0].total_score:.1f})"
                )
                return None
            chosen = scores[0]
            below_threshold = True
            logger.warning(
                f"Assigning task {task.task_id} below threshold to {chosen.agent_id} ({chosen.total_score:.1f})"
            )

        agent = next(a for a in pool if a.agent_id == chosen.agent_id)
        return await self._commit(epic, task, agent, chosen, below_threshold, metadata, action)

    async def _commit(
        self,
        epic: Epic,
        task: Task,
        agent: AgentProfile,
        breakdown: ScoreBreakdown,
        below_threshold: bool,
        metadata: Dict[str, Any],
        action: AssignmentAction,
    ) -> Assignment:
        assignment = Assignment(
            assignment_id=str(uuid.uuid4()),
            task_id=task.task_id,
            agent_id=agent.agent_id,
            epic_id=epic.epic_id,
            score=breakdown.total_score,
            confidence=breakdown.confidence,
            below_threshold=below_threshold,
            metadata={**metadata, "match_reason": breakdown.match_reason},
        )
        self.store.put_assignment(assignment)

        agent.current_load += 1
        self.store.put_agent(agent)

        task.status = TaskStatus.ASSIGNED
        task.assigned_agent_id = agent.agent_id
        task.updated_at = assignment.assigned_at
        self._put_task(task)

        self._record(action, assignment, {"score": round(breakdown.total_score, 2)})
        logger.info(
            f"Assigned task {task.task_id} to {agent.agent_id} "
            f"(score: {breakdown.total_score:.1f}, confidence: {breakdown.confidence:.2f})"
        )

        if self.notifications is not None:
            await self.notifications.offer(
                epic.epic_id,
                ProgressEvent.TASK_ASSIGNED,
                {
                    "task_id": task.task_id,
                    "agent_id": agent.agent_id,
                    "assignment_id": assignment.assignment_id,
                    "score": round(breakdown.total_score, 2),
                    "below_threshold": below_threshold,
                },
            )
        return assignment

    # -------------------------------------------------------------------------
    # Assignment lifecycle
    # -------------------------------------------------------------------------

    def start_assignment(self, assignment_id: str) -> Assignment:
        assignment = self.store.require_assignment(assignment_id)
        if assignment.status == AssignmentStatus.ASSIGNED:
            assignment.status = AssignmentStatus.IN_PROGRESS
            assignment.started_at = datetime.utcnow()
            self.store.put_assignment(assignment)
            self._record(AssignmentAction.STARTED, assignment)
        return assignment

    def complete_assignment(
        self,
        assignment_id: str,
        success: bool = True,
        outcome: Optional[PerformanceRecord] = None,
    ) -> Assignment:
        """
        Close an active assignment, release the agent's load and feed the
        outcome into the agent's rolling performance.
        """
        assignment = self.store.require_assignment(assignment_id)
        if not assignment.is_active:
            return assignment

        now = datetime.utcnow()
        assignment.status = AssignmentStatus.COMPLETED if success else AssignmentStatus.FAILED
        assignment.completed_at = now
        self.store.put_assignment(assignment)

        agent = self.store.get_agent(assignment.agent_id)
        if agent is not None:
            agent.current_load = max(0, agent.current_load - 1)
            if success:
                agent.epic_experience[assignment.epic_id] = agent.epic_experience.get(assignment.epic_id, 0) + 1
            if outcome is None:
                started = assignment.started_at or assignment.assigned_at
                outcome = PerformanceRecord(
                    task_id=assignment.task_id,
                    success=success,
                    accuracy=1.0 if success else 0.0,
                    duration_hours=(now - started).total_seconds() / 3600,
                    recorded_at=now,
                )
            agent.performance.record(outcome)
            self.store.put_agent(agent)

        action = AssignmentAction.COMPLETED if success else AssignmentAction.FAILED
        self._record(action, assignment)
        logger.info(f"Assignment {assignment_id} {action.value} by {assignment.agent_id}")
        return assignment

    async def handle_task_status(self, task: Task, previous: TaskStatus) -> None:
        """Keep the task's active assignment in step with its status."""
        assignment = self.active_assignment_for(task)
        if assignment is None:
            return
        if task.status == TaskStatus.IN_PROGRESS:
            self.start_assignment(assignment.assignment_id)
        elif task.status == TaskStatus.COMPLETED:
            self.complete_assignment(assignment.assignment_id, success=True)
        elif task.status == TaskStatus.FAILED:
            self.complete_assignment(assignment.assignment_id, success=False)

    def _release_agent(self, agent_id: str) -> None:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            return
        agent.current_load = max(0, agent.current_load - 1)
        self.store.put_agent(agent)

    def _record(self, action: AssignmentAction, assignment: Assignment, details: Dict[str, Any] = None) -> None:
        self._history.append(AssignmentHistoryEntry(
            action=action,
            assignment_id=assignment.assignment_id,
            task_id=assignment.task_id,
            agent_id=assignment.agent_id,
            epic_id=assignment.epic_id,
            details=details or {},
        ))

    # -------------------------------------------------------------------------
    # Workload balancing
    # -------------------------------------------------------------------------

    def balance_workload(self, epic_id: str, agents: Optional[List[AgentProfile]] = None) -> WorkloadBalance:
        """
        Recommend moving up to two of the oldest active assignments off each
        overloaded agent (>80%) to the first underutilized agent (<40%,
        AVAILABLE) with spare capacity. Recommendations only; nothing moves.
        """
        agents = agents if agents is not None else self.store.list_agents()
        utilization = {a.agent_id: a.utilization_percent for a in agents}

        overloaded = [a for a in agents if utilization[a.agent_id] > OVERLOADED_PERCENT]
        underutilized = [
            a for a in agents
            if utilization[a.agent_id] < UNDERUTILIZED_PERCENT
            and a.availability == AgentAvailability.AVAILABLE
        ]
        planned_load = {a.agent_id: a.current_load for a in underutilized}
        epic_assignments = self.store.list_assignments(epic_id)

        recommendations: List[WorkloadRecommendation] = []
        for busy in overloaded:
            movable = sorted(
                (x for x in epic_assignments if x.agent_id == busy.agent_id and x.is_active),
                key=lambda x: x.assigned_at,
            )[:MAX_MOVES_PER_AGENT]

            for assignment in movable:
                target = next(
                    (u for u in underutilized if planned_load[u.agent_id] < u.max_concurrent_tasks),
                    None,
                )
                if target is None:
                    break
                planned_load[target.agent_id] += 1
                busy_pct = utilization[busy.agent_id]
                recommendations.append(WorkloadRecommendation(
                    from_agent_id=busy.agent_id,
                    to_agent_id=target.agent_id,
                    task_id=assignment.task_id,
                    assignment_id=assignment.assignment_id,
                    expected_improvement=(busy_pct - OVERLOADED_PERCENT)
                    + (UNDERUTILIZED_PERCENT - utilization[target.agent_id]),
                    reason=f"Balance workload: {busy.agent_id} is at {busy_pct:.0f}% capacity",
                ))

        balance = WorkloadBalance(
            recommendations=recommendations,
            balance_score=calculate_balance_score(list(utilization.values())),
            utilization=utilization,
            overloaded=[a.agent_id for a in overloaded],
            underutilized=[a.agent_id for a in underutilized],
        )
        if recommendations:
            logger.info(f"Epic {epic_id}: {len(recommendations)} workload recommendation(s), balance {balance.balance_score:.1f}")
        return balance

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_assignment(self, assignment_id: str) -> Assignment:
        return self.store.require_assignment(assignment_id)

    def get_epic_assignments(self, epic_id: str, active_only: bool = False) -> List[Assignment]:
        assignments = self.store.list_assignments(epic_id)
        if active_only:
            assignments = [a for a in assignments if a.is_active]
        return sorted(assignments, key=lambda a: a.assigned_at)

    def get_assignment_history(self, epic_id: Optional[str] = None, limit: Optional[int] = None) -> List[AssignmentHistoryEntry]:
        entries = [e for e in self._history if epic_id is None or e.epic_id == epic_id]
        if limit is not None:
            entries = entries[-limit:]
        return entries

    def agent_metrics(self, agent_id: str) -> Dict[str, Any]:
        """Aggregate assignment outcomes for one agent across all epics."""
        agent = self.store.require_agent(agent_id)
        assignment_ids = {e.assignment_id for e in self._history if e.agent_id == agent_id}
        assignments = [a for a in (self.store.get_assignment(i) for i in assignment_ids) if a is not None]

        completed = [a for a in assignments if a.status == AssignmentStatus.COMPLETED]
        failed = [a for a in assignments if a.status == AssignmentStatus.FAILED]
        finished = len(completed) + len(failed)
        return {
            "agent_id": agent_id,
            "total_assignments": len(assignments),
            "active_assignments": sum(1 for a in assignments if a.is_active),
            "completed": len(completed),
            "failed": len(failed),
            "success_rate": len(completed) / finished if finished else 0.0,
            "average_score": sum(a.score for a in assignments) / len(assignments) if assignments else 0.0,
            "current_load": agent.current_load,
            "utilization_percent": agent.utilization_percent,
            "performance": agent.performance.to_dict(),
        }
