"""
EpicFlowContext - explicit wiring of the scheduling core.

One context owns one config, store, scorer, notification engine,
assignment coordinator and progress monitor, plus a state machine per
epic. Build as many as needed; nothing is global.
"""

import logging
from typing import Dict, Iterable, List, Optional

from .assignment import AssignmentCoordinator
from .config import EpicFlowConfig, load_config
from .errors import NotFoundError
from .models import AgentProfile, Assignment, Epic, Milestone, Task
from .notification_engine import NotificationEngine
from .progress import ProgressMonitor, create_health_guard
from .scoring import CapabilityScorer
from .state_machine import EpicStateMachine
from .store import InMemorySnapshotStore, InMemoryStore, SnapshotStore, Store

logger = logging.getLogger("epicflow")

STATE_SNAPSHOT_KIND = "state"
HEALTH_GUARD_NAME = "epic_health"


class EpicFlowContext:
    def __init__(
        self,
        config: EpicFlowConfig,
        store: Store,
        snapshots: SnapshotStore,
        scorer: CapabilityScorer,
        notifications: NotificationEngine,
    ):
        self.config = config
        self.store = store
        self.snapshots = snapshots
        self.scorer = scorer
        self.notifications = notifications
        self.coordinator = AssignmentCoordinator(store, scorer, config=config, notifications=notifications)
        self.monitor = ProgressMonitor(
            store,
            settings=config.progress,
            notifications=notifications,
            snapshots=snapshots,
        )
        self.monitor.add_status_listener(self.coordinator.handle_task_status)
        self.coordinator.add_task_listener(lambda task: self.monitor.invalidate(task.epic_id))
        self._machines: Dict[str, EpicStateMachine] = {}

    # -------------------------------------------------------------------------
    # Epics
    # -------------------------------------------------------------------------

    def create_epic(
        self,
        epic_id: str,
        title: str = "",
        milestones: Optional[Iterable[Milestone]] = None,
        health_gate: bool = False,
    ) -> EpicStateMachine:
        """
        Register a new epic in UNINITIALIZED state.

        health_gate=True installs a guard that refuses REVIEW -> COMPLETED
        unless the epic is HEALTHY.
        """
        epic = Epic(epic_id=epic_id, title=title, milestones=list(milestones or []))
        self.store.put_epic(epic)
        machine = EpicStateMachine(epic, max_history=self.config.state_machine.max_history)
        if health_gate:
            machine.register_guard(HEALTH_GUARD_NAME, create_health_guard(self.monitor, epic_id))
        self._machines[epic_id] = machine
        logger.info(f"Created epic {epic_id}")
        return machine

    def get_state_machine(self, epic_id: str) -> EpicStateMachine:
        machine = self._machines.get(epic_id)
        if machine is None:
            raise NotFoundError("epic", epic_id)
        return machine

    def list_epic_ids(self) -> List[str]:
        return list(self._machines)

    def save_epic(self, epic_id: str) -> None:
        machine = self.get_state_machine(epic_id)
        self.snapshots.store(epic_id, STATE_SNAPSHOT_KIND, machine.to_dict())

    def restore_epic(self, epic_id: str) -> Optional[EpicStateMachine]:
        """Rebuild a state machine from its snapshot; None if absent or expired."""
        data = self.snapshots.load(epic_id, STATE_SNAPSHOT_KIND)
        if data is None:
            return None
        machine = EpicStateMachine.from_dict(data)
        self.store.put_epic(machine.epic)
        self._machines[epic_id] = machine
        return machine

    # -------------------------------------------------------------------------
    # Tasks and agents
    # -------------------------------------------------------------------------

    def add_task(self, task: Task) -> Task:
        if self.store.get_epic(task.epic_id) is None:
            raise NotFoundError("epic", task.epic_id)
        self.store.put_task(task)
        self.monitor.invalidate(task.epic_id)
        return task

    def add_agent(self, agent: AgentProfile) -> AgentProfile:
        self.store.put_agent(agent)
        return agent

    async def assign(self, epic_id: str, task_id: str, candidates: Optional[List[AgentProfile]] = None) -> Optional[Assignment]:
        epic = self.store.require_epic(epic_id)
        task = self.store.require_task(task_id)
        return await self.coordinator.assign_work(epic, task, candidates)


def build_context(
    config: Optional[EpicFlowConfig] = None,
    store: Optional[Store] = None,
    snapshots: Optional[SnapshotStore] = None,
    notifications: Optional[NotificationEngine] = None,
) -> EpicFlowContext:
    """Build a context; config defaults to load_config() (file + env)."""
    config = config or load_config()
    return EpicFlowContext(
        config=config,
        store=store or InMemoryStore(),
        snapshots=snapshots or InMemorySnapshotStore(
            namespace_prefix=config.memory.namespace_prefix,
            default_ttl_seconds=config.memory.ttl_seconds,
        ),
        scorer=CapabilityScorer(
            weights=config.scoring.model_dump(),
            min_threshold=config.agents.assignment_threshold,
        ),
        notifications=notifications or NotificationEngine(),
    )
