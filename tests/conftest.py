"""
Pytest configuration for epicflow tests.

This module provides:
1. Builders for agents, tasks and epics
2. Common fixtures (config, store, scorer, coordinator, monitor)
3. Test session configuration
"""

from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from epicflow.assignment import AssignmentCoordinator
from epicflow.config import EpicFlowConfig
from epicflow.models import (
    AgentAvailability,
    AgentCapabilities,
    AgentPerformance,
    AgentProfile,
    Epic,
    EpicState,
    Task,
    TaskComplexity,
    TaskStatus,
)
from epicflow.notification_engine import NotificationEngine
from epicflow.progress import ProgressMonitor
from epicflow.scoring import CapabilityScorer
from epicflow.store import InMemoryStore

# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
TEST_EPIC_ID = "epic-1"
BASE_TIME = datetime(2024, 3, 1, 9, 0, 0)


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------
def create_test_agent(
    agent_id: str = "agent-1",
    agent_type: str = "coder",
    core: Optional[List[str]] = None,
    languages: Optional[List[str]] = None,
    frameworks: Optional[List[str]] = None,
    domains: Optional[List[str]] = None,
    availability: AgentAvailability = AgentAvailability.AVAILABLE,
    current_load: int = 0,
    max_concurrent_tasks: int = 3,
    tasks_completed: int = 0,
    success_rate: float = 0.0,
    health: float = 1.0,
    last_activity_at: Optional[datetime] = None,
) -> AgentProfile:
    """Helper to create test agent profiles."""
    return AgentProfile(
        agent_id=agent_id,
        name=agent_id,
        agent_type=agent_type,
        capabilities=AgentCapabilities(
            core=core if core is not None else ["python", "testing"],
            languages=languages if languages is not None else ["python"],
            frameworks=frameworks or [],
            domains=domains or [],
        ),
        performance=AgentPerformance(
            tasks_completed=tasks_completed,
            success_rate=success_rate,
            health=health,
            last_activity_at=last_activity_at,
        ),
        availability=availability,
        current_load=current_load,
        max_concurrent_tasks=max_concurrent_tasks,
    )


def create_test_task(
    task_id: str = "task-1",
    epic_id: str = TEST_EPIC_ID,
    required: Optional[List[str]] = None,
    status: TaskStatus = TaskStatus.PENDING,
    complexity: TaskComplexity = TaskComplexity.MEDIUM,
    **kwargs,
) -> Task:
    """Helper to create test tasks."""
    return Task(
        task_id=task_id,
        epic_id=epic_id,
        title=f"Task {task_id}",
        required_capabilities=required if required is not None else ["python"],
        status=status,
        complexity=complexity,
        **kwargs,
    )


def create_completed_task(task_id: str, completed_at: datetime, epic_id: str = TEST_EPIC_ID) -> Task:
    return create_test_task(
        task_id=task_id,
        epic_id=epic_id,
        status=TaskStatus.COMPLETED,
        started_at=completed_at - timedelta(hours=4),
        completed_at=completed_at,
        progress=100.0,
    )


def create_test_epic(epic_id: str = TEST_EPIC_ID, state: EpicState = EpicState.ACTIVE) -> Epic:
    return Epic(epic_id=epic_id, title="Test epic", state=state)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def enabled_config() -> EpicFlowConfig:
    """Config with assignment turned on."""
    return EpicFlowConfig(enabled=True)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def scorer() -> CapabilityScorer:
    return CapabilityScorer()


@pytest.fixture
def notifications() -> NotificationEngine:
    return NotificationEngine()


@pytest.fixture
def coordinator(store, scorer, enabled_config, notifications) -> AssignmentCoordinator:
    return AssignmentCoordinator(store, scorer, config=enabled_config, notifications=notifications)


@pytest.fixture
def active_epic(store) -> Epic:
    epic = create_test_epic()
    store.put_epic(epic)
    return epic


class FakeClock:
    """Settable clock for time-dependent components."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monitor(store, notifications, clock) -> ProgressMonitor:
    return ProgressMonitor(store, notifications=notifications, clock=clock)


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "integration: exercises several components through EpicFlowContext"
    )
