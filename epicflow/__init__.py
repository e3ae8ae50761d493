"""
epicflow - Epic Scheduling Core

Assigns tasks to agents inside long-lived epics:
- EpicStateMachine: controlled epic lifecycle with guards, hooks and audit history
- CapabilityScorer: multi-factor agent/task fit scoring
- AssignmentCoordinator: capacity-aware assignment, reassignment and workload balancing
- ProgressMonitor: velocity, forecast, health and progress notifications

Components are wired together explicitly through build_context().
"""

import logging

from .assignment import AssignmentCoordinator, WorkloadBalance, WorkloadRecommendation
from .config import EpicFlowConfig, load_config
from .context import EpicFlowContext, build_context
from .errors import (
    ConfigurationError,
    EpicFlowError,
    GuardFailureError,
    InvalidTransitionError,
    NotFoundError,
    TerminalStateError,
)
from .models import (
    AgentAvailability,
    AgentCapabilities,
    AgentPerformance,
    AgentProfile,
    Assignment,
    AssignmentStatus,
    Epic,
    EpicState,
    Milestone,
    Task,
    TaskComplexity,
    TaskPriority,
    TaskStatus,
)
from .notification_engine import NotificationEngine, ProgressEvent
from .progress import HealthStatus, ProgressMonitor, VelocityTrend
from .scoring import CapabilityScorer, ScoreBreakdown
from .state_machine import EpicStateMachine, HookPhase, TransitionContext, TransitionRecord

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


__all__ = [
    "AgentAvailability",
    "AgentCapabilities",
    "AgentPerformance",
    "AgentProfile",
    "Assignment",
    "AssignmentCoordinator",
    "AssignmentStatus",
    "CapabilityScorer",
    "ConfigurationError",
    "Epic",
    "EpicFlowConfig",
    "EpicFlowContext",
    "EpicFlowError",
    "EpicState",
    "EpicStateMachine",
    "GuardFailureError",
    "HealthStatus",
    "HookPhase",
    "InvalidTransitionError",
    "Milestone",
    "NotFoundError",
    "NotificationEngine",
    "ProgressEvent",
    "ProgressMonitor",
    "ScoreBreakdown",
    "Task",
    "TaskComplexity",
    "TaskPriority",
    "TaskStatus",
    "TerminalStateError",
    "TransitionContext",
    "TransitionRecord",
    "VelocityTrend",
    "WorkloadBalance",
    "WorkloadRecommendation",
    "build_context",
    "configure_logging",
    "load_config",
]
