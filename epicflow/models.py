"""
Domain records for epicflow.

Epics, tasks, agents, assignments and milestones. These are plain
dataclasses; ownership and mutation rules live in the components that use
them:

- Epic state changes only through EpicStateMachine.transition()
- Agent load changes only when an Assignment is committed or released
- Task status changes flow through ProgressMonitor.update_task_status()
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class EpicState(str, Enum):
    """
    Lifecycle states of an epic.

    ARCHIVED is the only terminal state.
    """
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    PAUSED = "paused"
    BLOCKED = "blocked"
    REVIEW = "review"
    COMPLETED = "completed"
    ARCHIVED = "archived"

    @classmethod
    def terminal_states(cls) -> Set["EpicState"]:
        return {cls.ARCHIVED}


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskComplexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AgentAvailability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class AssignmentStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def active_statuses(cls) -> Set["AssignmentStatus"]:
        return {cls.ASSIGNED, cls.IN_PROGRESS}


# -----------------------------------------------------------------------------
# Epic
# -----------------------------------------------------------------------------

@dataclass
class BlockingReason:
    """Why an epic is blocked, and how it was unblocked."""
    reason_id: str
    description: str
    blocked_by: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason_id": self.reason_id,
            "description": self.description,
            "blocked_by": list(self.blocked_by),
            "created_at": self.created_at.isoformat(),
            "resolved_at": _iso(self.resolved_at),
            "resolution": self.resolution,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockingReason":
        return cls(
            reason_id=data["reason_id"],
            description=data["description"],
            blocked_by=data.get("blocked_by", []),
            created_at=datetime.fromisoformat(data["created_at"]),
            resolved_at=_parse_iso(data.get("resolved_at")),
            resolution=data.get("resolution"),
        )


@dataclass
class Milestone:
    milestone_id: str
    epic_id: str
    title: str
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    task_ids: List[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "milestone_id": self.milestone_id,
            "epic_id": self.epic_id,
            "title": self.title,
            "due_date": _iso(self.due_date),
            "completed_at": _iso(self.completed_at),
            "task_ids": list(self.task_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Milestone":
        return cls(
            milestone_id=data["milestone_id"],
            epic_id=data["epic_id"],
            title=data["title"],
            due_date=_parse_iso(data.get("due_date")),
            completed_at=_parse_iso(data.get("completed_at")),
            task_ids=data.get("task_ids", []),
        )


@dataclass
class Epic:
    """
    A long-lived unit of work.

    Owned by exactly one EpicStateMachine, which also keeps its
    transition history. Epics are never deleted; they end in ARCHIVED.
    """
    epic_id: str
    title: str = ""
    state: EpicState = EpicState.UNINITIALIZED
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    blocking_reasons: List[BlockingReason] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def open_blocking_reasons(self) -> List[BlockingReason]:
        return [r for r in self.blocking_reasons if not r.is_resolved]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epic_id": self.epic_id,
            "title": self.title,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "archived_at": _iso(self.archived_at),
            "blocking_reasons": [r.to_dict() for r in self.blocking_reasons],
            "milestones": [m.to_dict() for m in self.milestones],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Epic":
        return cls(
            epic_id=data["epic_id"],
            title=data.get("title", ""),
            state=EpicState(data.get("state", EpicState.UNINITIALIZED.value)),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.utcnow(),
            updated_at=_parse_iso(data.get("updated_at")),
            completed_at=_parse_iso(data.get("completed_at")),
            archived_at=_parse_iso(data.get("archived_at")),
            blocking_reasons=[BlockingReason.from_dict(r) for r in data.get("blocking_reasons", [])],
            milestones=[Milestone.from_dict(m) for m in data.get("milestones", [])],
            metadata=data.get("metadata", {}),
        )


# -----------------------------------------------------------------------------
# Task
# -----------------------------------------------------------------------------

@dataclass
class Task:
    """
    A discrete unit of work inside an epic.

    The capability lists double as the scoring requirements: required and
    preferred capabilities, languages, frameworks, domains and labels.
    """
    task_id: str
    epic_id: str
    title: str = ""
    required_capabilities: List[str] = field(default_factory=list)
    preferred_capabilities: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    frameworks: List[str] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    complexity: TaskComplexity = TaskComplexity.MEDIUM
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_id: Optional[str] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    progress: float = 0.0
    blockers: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "epic_id": self.epic_id,
            "title": self.title,
            "required_capabilities": list(self.required_capabilities),
            "preferred_capabilities": list(self.preferred_capabilities),
            "languages": list(self.languages),
            "frameworks": list(self.frameworks),
            "domains": list(self.domains),
            "labels": list(self.labels),
            "complexity": self.complexity.value,
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "assigned_agent_id": self.assigned_agent_id,
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "progress": self.progress,
            "blockers": list(self.blockers),
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


# -----------------------------------------------------------------------------
# Agent
# -----------------------------------------------------------------------------

@dataclass
class AgentCapabilities:
    core: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    frameworks: List[str] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)

    def all_skills(self) -> List[str]:
        return [*self.core, *self.languages, *self.frameworks, *self.domains]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "core": list(self.core),
            "languages": list(self.languages),
            "frameworks": list(self.frameworks),
            "domains": list(self.domains),
        }


@dataclass
class PerformanceRecord:
    """Outcome of one finished task, as fed back into an agent's profile."""
    task_id: str
    success: bool
    accuracy: float = 1.0
    efficiency: float = 1.0
    duration_hours: Optional[float] = None
    recorded_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "accuracy": self.accuracy,
            "efficiency": self.efficiency,
            "duration_hours": self.duration_hours,
            "recorded_at": self.recorded_at.isoformat(),
        }


PERFORMANCE_WINDOW = 10


@dataclass
class AgentPerformance:
    """
    Rolling performance metrics.

    Rates are 0-1. The rolling values are recomputed from the last
    PERFORMANCE_WINDOW records every time a record is added.
    """
    tasks_completed: int = 0
    success_rate: float = 0.0
    average_accuracy: float = 0.0
    average_efficiency: float = 0.0
    error_rate: float = 0.0
    health: float = 1.0
    last_activity_at: Optional[datetime] = None
    recent: List[PerformanceRecord] = field(default_factory=list)

    @property
    def has_history(self) -> bool:
        return self.tasks_completed > 0 or bool(self.recent)

    def record(self, outcome: PerformanceRecord, window: int = PERFORMANCE_WINDOW) -> None:
        self.recent.append(outcome)
        if len(self.recent) > window:
            self.recent = self.recent[-window:]

        if outcome.success:
            self.tasks_completed += 1
        count = len(self.recent)
        successes = sum(1 for r in self.recent if r.success)
        self.success_rate = successes / count
        self.error_rate = 1.0 - self.success_rate
        self.average_accuracy = sum(r.accuracy for r in self.recent) / count
        self.average_efficiency = sum(r.efficiency for r in self.recent) / count
        self.last_activity_at = outcome.recorded_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks_completed": self.tasks_completed,
            "success_rate": self.success_rate,
            "average_accuracy": self.average_accuracy,
            "average_efficiency": self.average_efficiency,
            "error_rate": self.error_rate,
            "health": self.health,
            "last_activity_at": _iso(self.last_activity_at),
            "recent": [r.to_dict() for r in self.recent],
        }


@dataclass
class AgentProfile:
    agent_id: str
    name: str = ""
    agent_type: str = "coder"
    capabilities: AgentCapabilities = field(default_factory=AgentCapabilities)
    performance: AgentPerformance = field(default_factory=AgentPerformance)
    availability: AgentAvailability = AgentAvailability.AVAILABLE
    current_load: int = 0
    max_concurrent_tasks: int = 3
    epic_experience: Dict[str, int] = field(default_factory=dict)

    @property
    def workload_factor(self) -> float:
        """Fraction of capacity in use, 0-1."""
        if self.max_concurrent_tasks <= 0:
            return 1.0
        return min(1.0, self.current_load / self.max_concurrent_tasks)

    @property
    def utilization_percent(self) -> float:
        if self.max_concurrent_tasks <= 0:
            return 100.0
        return self.current_load / self.max_concurrent_tasks * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "agent_type": self.agent_type,
            "capabilities": self.capabilities.to_dict(),
            "performance": self.performance.to_dict(),
            "availability": self.availability.value,
            "current_load": self.current_load,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "workload_factor": self.workload_factor,
            "epic_experience": dict(self.epic_experience),
        }


# -----------------------------------------------------------------------------
# Assignment
# -----------------------------------------------------------------------------

@dataclass
class Assignment:
    """
    Binds one task to one agent at a captured score.

    score >= threshold unless below_threshold is set, which only happens
    under the explicit allow_below_threshold policy.
    """
    assignment_id: str
    task_id: str
    agent_id: str
    epic_id: str
    score: float
    confidence: float = 0.0
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    assigned_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    below_threshold: bool = False
    superseded_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in AssignmentStatus.active_statuses()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignment_id": self.assignment_id,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "epic_id": self.epic_id,
            "score": self.score,
            "confidence": self.confidence,
            "status": self.status.value,
            "assigned_at": self.assigned_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "below_threshold": self.below_threshold,
            "superseded_by": self.superseded_by,
            "metadata": self.metadata,
        }
