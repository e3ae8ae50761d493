"""
Progress Monitor - Velocity, Forecast and Health Tracking

Derives an epic's trajectory from task-status events:
- Completion counts and percentage, cached per epic with a short TTL
- Velocity (completions per day) with a trend over the last 3 vs previous 3 days
- Forecast completion date from remaining work and current velocity
- Health: BLOCKED / AT_RISK / HEALTHY with reasons and recommendations
- Progress reports with celebratory messages and warnings
- Notifications for completed tasks, percentage milestones, epic completion,
  health changes and velocity drops

Velocity only counts days that had at least one completion.
"""

import inspect
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .config import ProgressSettings
from .models import EpicState, Milestone, Task, TaskStatus
from .notification_engine import NotificationEngine, ProgressEvent
from .state_machine import TransitionContext
from .store import SnapshotStore, Store

logger = logging.getLogger("progress_monitor")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
PERCENT_MILESTONES = (25, 50, 75, 100)
TREND_WINDOW = 3
AVERAGE_WINDOW = 7
TREND_UP_RATIO = 1.2
TREND_DOWN_RATIO = 0.8
REPORT_BLOCKED_FRACTION = 0.1
STALE_IN_PROGRESS_DAYS = 7
ESTIMATE_ACCURACY_WARNING = 0.7
SNAPSHOT_KIND = "progress"

CELEBRATIONS = {
    25: "A quarter of the epic is done. Good start!",
    50: "Halfway there!",
    75: "Three quarters complete. The finish line is in sight.",
    100: "Epic complete! All tasks are done.",
}


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    AT_RISK = "at_risk"
    BLOCKED = "blocked"


class VelocityTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------

@dataclass
class VelocityMetrics:
    current_velocity: float = 0.0
    average_velocity: float = 0.0
    peak_velocity: float = 0.0
    trend: VelocityTrend = VelocityTrend.STABLE
    daily_counts: List[Tuple[date, int]] = field(default_factory=list)

    def drop_percent(self) -> float:
        """How far current velocity sits below the 7-day average, in percent."""
        if self.average_velocity <= 0:
            return 0.0
        return (self.average_velocity - self.current_velocity) / self.average_velocity * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_velocity": round(self.current_velocity, 3),
            "average_velocity": round(self.average_velocity, 3),
            "peak_velocity": self.peak_velocity,
            "trend": self.trend.value,
            "daily_counts": [{"date": d.isoformat(), "count": c} for d, c in self.daily_counts],
        }


@dataclass
class MilestoneProgress:
    milestone_id: str
    title: str
    due_date: Optional[datetime]
    total_tasks: int
    completed_tasks: int
    percentage: float
    is_completed: bool
    is_overdue: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "milestone_id": self.milestone_id,
            "title": self.title,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "percentage": self.percentage,
            "is_completed": self.is_completed,
            "is_overdue": self.is_overdue,
        }


@dataclass
class ProgressSnapshot:
    epic_id: str
    total_tasks: int
    counts: Dict[str, int]
    completion_percentage: float
    velocity: float
    velocity_trend: VelocityTrend
    completion_rate: float
    average_task_duration_hours: float
    estimated_completion: Optional[datetime]
    health: HealthStatus
    milestones: List[MilestoneProgress] = field(default_factory=list)
    last_updated: datetime = field(default_factory=datetime.utcnow)

    @property
    def completed(self) -> int:
        return self.counts.get(TaskStatus.COMPLETED.value, 0)

    @property
    def blocked(self) -> int:
        return self.counts.get(TaskStatus.BLOCKED.value, 0)

    @property
    def in_progress(self) -> int:
        return self.counts.get(TaskStatus.IN_PROGRESS.value, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epic_id": self.epic_id,
            "total_tasks": self.total_tasks,
            "counts": dict(self.counts),
            "completion_percentage": self.completion_percentage,
            "velocity": round(self.velocity, 3),
            "trends": {
                "velocity_trend": self.velocity_trend.value,
                "completion_rate": round(self.completion_rate, 2),
                "average_task_duration_hours": round(self.average_task_duration_hours, 2),
            },
            "estimated_completion": self.estimated_completion.isoformat() if self.estimated_completion else None,
            "health": self.health.value,
            "milestones": [m.to_dict() for m in self.milestones],
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass
class HealthReport:
    status: HealthStatus
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reasons": list(self.reasons),
            "recommendations": list(self.recommendations),
        }


@dataclass
class TaskMetrics:
    task_id: str
    status: TaskStatus
    progress: float
    estimated_hours: Optional[float]
    actual_hours: Optional[float]
    duration_hours: Optional[float]
    velocity: float  # percent per day

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "progress": self.progress,
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "duration_hours": round(self.duration_hours, 2) if self.duration_hours is not None else None,
            "velocity": round(self.velocity, 2),
        }


@dataclass
class ProgressReport:
    snapshot: ProgressSnapshot
    velocity: VelocityMetrics
    health: HealthReport
    task_metrics: List[TaskMetrics]
    celebrations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    estimate_accuracy: Optional[float] = None
    generated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "velocity": self.velocity.to_dict(),
            "health": self.health.to_dict(),
            "task_metrics": [m.to_dict() for m in self.task_metrics],
            "celebrations": list(self.celebrations),
            "warnings": list(self.warnings),
            "recommendations": list(self.health.recommendations),
            "estimate_accuracy": self.estimate_accuracy,
            "generated_at": self.generated_at.isoformat(),
        }


StatusListener = Callable[[Task, TaskStatus], Union[Any, Awaitable[Any]]]


# -----------------------------------------------------------------------------
# Pure calculations
# -----------------------------------------------------------------------------

def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def calculate_velocity(tasks: List[Task]) -> VelocityMetrics:
    """Group completions by day; only days with completions are counted."""
    per_day: Dict[date, int] = {}
    for task in tasks:
        if task.status == TaskStatus.COMPLETED and task.completed_at is not None:
            day = task.completed_at.date()
            per_day[day] = per_day.get(day, 0) + 1

    if not per_day:
        return VelocityMetrics()

    daily = sorted(per_day.items())
    counts = [count for _, count in daily]
    recent = counts[-TREND_WINDOW:]
    previous = counts[-2 * TREND_WINDOW:-TREND_WINDOW]

    current = _mean(recent)
    trend = VelocityTrend.STABLE
    if previous:
        baseline = _mean(previous)
        if current > TREND_UP_RATIO * baseline:
            trend = VelocityTrend.INCREASING
        elif current < TREND_DOWN_RATIO * baseline:
            trend = VelocityTrend.DECREASING

    return VelocityMetrics(
        current_velocity=current,
        average_velocity=_mean(counts[-AVERAGE_WINDOW:]),
        peak_velocity=float(max(counts)),
        trend=trend,
        daily_counts=daily,
    )


def predict_completion(remaining: int, velocity: float, now: Optional[datetime] = None) -> Optional[datetime]:
    """now + ceil(remaining / velocity) days, or None if either is not positive."""
    if remaining <= 0 or velocity <= 0:
        return None
    now = now or datetime.utcnow()
    return now + timedelta(days=math.ceil(remaining / velocity))


def determine_health_status(
    tasks: List[Task],
    trend: VelocityTrend,
    estimated_completion: Optional[datetime],
    milestones: List[Milestone],
) -> HealthStatus:
    return _assess_health(tasks, trend, estimated_completion, milestones)[0]


def _assess_health(
    tasks: List[Task],
    trend: VelocityTrend,
    estimated_completion: Optional[datetime],
    milestones: List[Milestone],
) -> Tuple[HealthStatus, List[str], List[str]]:
    blocked = [t for t in tasks if t.status == TaskStatus.BLOCKED]
    if blocked:
        return (
            HealthStatus.BLOCKED,
            [f"{len(blocked)} task(s) blocked: {', '.join(t.task_id for t in blocked)}"],
            ["Resolve blockers or escalate to the coordinator"],
        )

    reasons: List[str] = []
    recommendations: List[str] = []
    if trend == VelocityTrend.DECREASING:
        reasons.append("Velocity is decreasing")
        recommendations.append("Review agent workload and task sizing")

    if estimated_completion is not None:
        late = [
            m for m in milestones
            if m.is_open and m.due_date is not None and estimated_completion > m.due_date
        ]
        if late:
            reasons.append(f"Forecast completion is after milestone(s): {', '.join(m.title for m in late)}")
            recommendations.append("Add agents or reduce scope before the milestone")

    if reasons:
        return HealthStatus.AT_RISK, reasons, recommendations
    return HealthStatus.HEALTHY, [], []


# -----------------------------------------------------------------------------
# Monitor
# -----------------------------------------------------------------------------

class ProgressMonitor:
    """
    Progress, velocity and health per epic.

    Snapshots are cached for settings.cache_ttl_seconds and invalidated on
    every task-status change made through update_task_status().
    """

    def __init__(
        self,
        store: Store,
        settings: Optional[ProgressSettings] = None,
        notifications: Optional[NotificationEngine] = None,
        snapshots: Optional[SnapshotStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.settings = settings or ProgressSettings()
        self.notifications = notifications
        self.snapshots = snapshots
        self._clock = clock
        self._cache: Dict[str, Tuple[ProgressSnapshot, datetime]] = {}
        self._listeners: List[StatusListener] = []
        self._velocity_alerted: Dict[str, bool] = {}

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def invalidate(self, epic_id: str) -> None:
        self._cache.pop(epic_id, None)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _cached(self, epic_id: str) -> Optional[ProgressSnapshot]:
        entry = self._cache.get(epic_id)
        if entry is None:
            return None
        snapshot, computed_at = entry
        if (self._clock() - computed_at).total_seconds() >= self.settings.cache_ttl_seconds:
            del self._cache[epic_id]
            return None
        logger.debug(f"Progress cache hit for epic {epic_id}")
        return snapshot

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def _milestones(self, epic_id: str) -> List[Milestone]:
        epic = self.store.get_epic(epic_id)
        return list(epic.milestones) if epic is not None else []

    def get_progress(self, epic_id: str, use_cache: bool = True) -> ProgressSnapshot:
        if use_cache:
            cached = self._cached(epic_id)
            if cached is not None:
                return cached

        snapshot = self._compute(epic_id)
        self._cache[epic_id] = (snapshot, self._clock())
        if self.snapshots is not None:
            self.snapshots.store(epic_id, SNAPSHOT_KIND, snapshot.to_dict())
        return snapshot

    def _compute(self, epic_id: str) -> ProgressSnapshot:
        now = self._clock()
        tasks = self.store.list_tasks(epic_id)
        milestones = self._milestones(epic_id)

        counts = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1

        total = len(tasks)
        completed = counts[TaskStatus.COMPLETED.value]
        percentage = round(completed / total * 100, 2) if total else 0.0

        velocity = calculate_velocity(tasks)
        remaining = total - completed - counts[TaskStatus.FAILED.value]
        estimated = predict_completion(remaining, velocity.current_velocity, now=now)
        health = determine_health_status(tasks, velocity.trend, estimated, milestones)

        durations = [
            (t.completed_at - t.started_at).total_seconds() / 3600
            for t in tasks
            if t.status == TaskStatus.COMPLETED and t.started_at and t.completed_at
        ]

        return ProgressSnapshot(
            epic_id=epic_id,
            total_tasks=total,
            counts=counts,
            completion_percentage=percentage,
            velocity=velocity.current_velocity,
            velocity_trend=velocity.trend,
            completion_rate=velocity.current_velocity / total * 100 if total else 0.0,
            average_task_duration_hours=_mean(durations),
            estimated_completion=estimated,
            health=health,
            milestones=self._milestone_progress(tasks, milestones, now),
            last_updated=now,
        )

    @staticmethod
    def _milestone_progress(tasks: List[Task], milestones: List[Milestone], now: datetime) -> List[MilestoneProgress]:
        by_id = {t.task_id: t for t in tasks}
        result = []
        for milestone in milestones:
            members = [by_id[i] for i in milestone.task_ids if i in by_id]
            done = sum(1 for t in members if t.status == TaskStatus.COMPLETED)
            result.append(MilestoneProgress(
                milestone_id=milestone.milestone_id,
                title=milestone.title,
                due_date=milestone.due_date,
                total_tasks=len(members),
                completed_tasks=done,
                percentage=round(done / len(members) * 100, 2) if members else 0.0,
                is_completed=not milestone.is_open,
                is_overdue=milestone.is_open and milestone.due_date is not None and milestone.due_date < now,
            ))
        return result

    def get_milestone_progress(self, epic_id: str) -> List[MilestoneProgress]:
        return self.get_progress(epic_id).milestones

    # -------------------------------------------------------------------------
    # Velocity / Health
    # -------------------------------------------------------------------------

    def calculate_velocity(self, epic_id: str) -> VelocityMetrics:
        return calculate_velocity(self.store.list_tasks(epic_id))

    def predict_completion(self, remaining: int, velocity: float) -> Optional[datetime]:
        return predict_completion(remaining, velocity, now=self._clock())

    def get_health_status(self, epic_id: str) -> HealthReport:
        tasks = self.store.list_tasks(epic_id)
        snapshot = self.get_progress(epic_id)
        status, reasons, recommendations = _assess_health(
            tasks, snapshot.velocity_trend, snapshot.estimated_completion, self._milestones(epic_id)
        )
        if status == HealthStatus.HEALTHY and snapshot.total_tasks and snapshot.velocity == 0:
            recommendations.append("No completions yet; confirm tasks are assigned")
        return HealthReport(status=status, reasons=reasons, recommendations=recommendations)

    # -------------------------------------------------------------------------
    # Task metrics
    # -------------------------------------------------------------------------

    def get_task_metrics(self, task_id: str) -> TaskMetrics:
        task = self.store.require_task(task_id)
        return self._task_metrics(task, self._clock())

    @staticmethod
    def _task_metrics(task: Task, now: datetime) -> TaskMetrics:
        duration = None
        velocity = 0.0
        if task.started_at is not None:
            end = task.completed_at or now
            duration = (end - task.started_at).total_seconds() / 3600
            days = max(duration / 24, 1 / 24)
            velocity = task.progress / days
        return TaskMetrics(
            task_id=task.task_id,
            status=task.status,
            progress=task.progress,
            estimated_hours=task.estimated_hours,
            actual_hours=task.actual_hours,
            duration_hours=duration,
            velocity=velocity,
        )

    # -------------------------------------------------------------------------
    # Status updates
    # -------------------------------------------------------------------------

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        progress: Optional[float] = None,
        actual_hours: Optional[float] = None,
        blockers: Optional[List[str]] = None,
    ) -> Task:
        """
        Apply a status change, invalidate the epic's cache, notify
        listeners and offer any triggered notifications.
        """
        task = self.store.require_task(task_id)
        status = TaskStatus(status)
        before = self.get_progress(task.epic_id, use_cache=False)
        previous = task.status
        now = self._clock()

        task.status = status
        task.updated_at = now
        if progress is not None:
            task.progress = max(0.0, min(100.0, progress))
        if status == TaskStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now
        if status == TaskStatus.COMPLETED:
            task.completed_at = task.completed_at or now
            task.progress = 100.0
            if actual_hours is None and task.actual_hours is None and task.started_at is not None:
                actual_hours = (task.completed_at - task.started_at).total_seconds() / 3600
        if actual_hours is not None:
            task.actual_hours = actual_hours
        if status == TaskStatus.BLOCKED:
            if blockers is not None:
                task.blockers = list(blockers)
        elif previous == TaskStatus.BLOCKED:
            task.blockers = []

        self.store.put_task(task)
        self.invalidate(task.epic_id)
        logger.info(f"Task {task_id} ({task.epic_id}): {previous.value} -> {status.value}")

        for listener in list(self._listeners):
            result = listener(task, previous)
            if inspect.isawaitable(result):
                await result

        after = self.get_progress(task.epic_id)
        await self._check_notifications(task, previous, before, after)
        return task

    async def _offer(self, epic_id: str, event: ProgressEvent, payload: Dict[str, Any]) -> None:
        if self.notifications is None:
            return
        await self.notifications.offer(epic_id, event, payload)

    async def _check_notifications(
        self,
        task: Task,
        previous: TaskStatus,
        before: ProgressSnapshot,
        after: ProgressSnapshot,
    ) -> None:
        epic_id = task.epic_id

        if task.status == TaskStatus.COMPLETED and previous != TaskStatus.COMPLETED:
            await self._offer(epic_id, ProgressEvent.TASK_COMPLETED, {
                "task_id": task.task_id,
                "title": task.title,
                "agent_id": task.assigned_agent_id,
                "completion_percentage": after.completion_percentage,
            })

        for mark in PERCENT_MILESTONES:
            if before.completion_percentage < mark <= after.completion_percentage:
                await self._offer(epic_id, ProgressEvent.MILESTONE_REACHED, {
                    "percentage": mark,
                    "message": CELEBRATIONS[mark],
                })

        if after.total_tasks and after.completion_percentage >= 100 > before.completion_percentage:
            await self._offer(epic_id, ProgressEvent.EPIC_COMPLETED, {
                "total_tasks": after.total_tasks,
            })

        if after.health != before.health:
            await self._offer(epic_id, ProgressEvent.HEALTH_CHANGED, {
                "from": before.health.value,
                "to": after.health.value,
            })

        velocity = self.calculate_velocity(epic_id)
        dropped = velocity.drop_percent() >= self.settings.velocity_drop_percent
        if dropped and not self._velocity_alerted.get(epic_id):
            await self._offer(epic_id, ProgressEvent.VELOCITY_CHANGED, {
                "current_velocity": round(velocity.current_velocity, 3),
                "average_velocity": round(velocity.average_velocity, 3),
                "drop_percent": round(velocity.drop_percent(), 1),
            })
        self._velocity_alerted[epic_id] = dropped

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    def generate_progress_report(self, epic_id: str) -> ProgressReport:
        now = self._clock()
        tasks = self.store.list_tasks(epic_id)
        snapshot = self.get_progress(epic_id)
        velocity = calculate_velocity(tasks)
        health = self.get_health_status(epic_id)
        metrics = [self._task_metrics(t, now) for t in tasks]

        celebrations = []
        reached = [m for m in PERCENT_MILESTONES if snapshot.completion_percentage >= m]
        if reached:
            celebrations.append(CELEBRATIONS[reached[-1]])

        warnings = []
        stale = [
            t.task_id for t in tasks
            if t.status == TaskStatus.IN_PROGRESS
            and t.started_at is not None
            and now - t.started_at > timedelta(days=STALE_IN_PROGRESS_DAYS)
        ]
        if stale:
            warnings.append(f"{len(stale)} task(s) in progress for more than {STALE_IN_PROGRESS_DAYS} days: {', '.join(stale)}")

        if tasks and snapshot.blocked / len(tasks) > REPORT_BLOCKED_FRACTION:
            warnings.append(f"{snapshot.blocked} of {len(tasks)} tasks are blocked")

        accuracy = self.estimate_accuracy(tasks)
        if accuracy is not None and accuracy < ESTIMATE_ACCURACY_WARNING:
            warnings.append(f"Estimate accuracy is {accuracy:.0%}; revisit task estimates")

        return ProgressReport(
            snapshot=snapshot,
            velocity=velocity,
            health=health,
            task_metrics=metrics,
            celebrations=celebrations,
            warnings=warnings,
            estimate_accuracy=accuracy,
            generated_at=now,
        )

    @staticmethod
    def estimate_accuracy(tasks: List[Task]) -> Optional[float]:
        """Mean of min(est, actual) / max(est, actual) over completed, estimated tasks."""
        ratios = [
            min(t.estimated_hours, t.actual_hours) / max(t.estimated_hours, t.actual_hours)
            for t in tasks
            if t.status == TaskStatus.COMPLETED
            and t.estimated_hours and t.actual_hours
            and t.estimated_hours > 0 and t.actual_hours > 0
        ]
        return _mean(ratios) if ratios else None

    def export_progress_data(self, epic_id: str) -> Dict[str, Any]:
        report = self.generate_progress_report(epic_id)
        return {
            "epic_id": epic_id,
            "exported_at": self._clock().isoformat(),
            "report": report.to_dict(),
            "tasks": [t.to_dict() for t in self.store.list_tasks(epic_id)],
        }


# -----------------------------------------------------------------------------
# State machine integration
# -----------------------------------------------------------------------------

def create_health_guard(monitor: ProgressMonitor, epic_id: str) -> Callable[[EpicState, EpicState, TransitionContext], bool]:
    """Guard that only lets an epic reach COMPLETED while it is HEALTHY."""
    def guard(current: EpicState, target: EpicState, context: TransitionContext) -> bool:
        if target != EpicState.COMPLETED:
            return True
        return monitor.get_progress(epic_id, use_cache=False).health == HealthStatus.HEALTHY
    return guard
