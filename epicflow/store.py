"""
Record stores for epicflow.

Store: the owned get/put/list-by-epic interface for epics, tasks, agents
and assignments. Scoring and assignment logic only talk to this interface.

SnapshotStore: the persistence adapter boundary. Snapshots are namespaced
by epic id and kind; some kinds are permanent, the rest expire after a
TTL. A miss (absent or expired) is None, never an error.
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import NotFoundError
from .models import AgentProfile, Assignment, Epic, Task

logger = logging.getLogger("epicflow_store")

PERMANENT_KINDS = frozenset({"decisions", "assignments"})


# -----------------------------------------------------------------------------
# Record Store
# -----------------------------------------------------------------------------

class Store(ABC):
    """Owned storage for epics, tasks, agents and assignments."""

    @abstractmethod
    def get_epic(self, epic_id: str) -> Optional[Epic]:
        ...

    @abstractmethod
    def put_epic(self, epic: Epic) -> None:
        ...

    @abstractmethod
    def list_epics(self) -> List[Epic]:
        ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    def put_task(self, task: Task) -> None:
        ...

    @abstractmethod
    def list_tasks(self, epic_id: str) -> List[Task]:
        ...

    @abstractmethod
    def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        ...

    @abstractmethod
    def put_agent(self, agent: AgentProfile) -> None:
        ...

    @abstractmethod
    def list_agents(self) -> List[AgentProfile]:
        ...

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        ...

    @abstractmethod
    def put_assignment(self, assignment: Assignment) -> None:
        ...

    @abstractmethod
    def list_assignments(self, epic_id: str) -> List[Assignment]:
        ...

    def require_epic(self, epic_id: str) -> Epic:
        epic = self.get_epic(epic_id)
        if epic is None:
            raise NotFoundError("epic", epic_id)
        return epic

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def require_agent(self, agent_id: str) -> AgentProfile:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    def require_assignment(self, assignment_id: str) -> Assignment:
        assignment = self.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("assignment", assignment_id)
        return assignment


class InMemoryStore(Store):
    """Process-local dict-backed store. Records are stored by reference."""

    def __init__(self):
        self._epics: Dict[str, Epic] = {}
        self._tasks: Dict[str, Task] = {}
        self._agents: Dict[str, AgentProfile] = {}
        self._assignments: Dict[str, Assignment] = {}

    def get_epic(self, epic_id: str) -> Optional[Epic]:
        return self._epics.get(epic_id)

    def put_epic(self, epic: Epic) -> None:
        self._epics[epic.epic_id] = epic

    def list_epics(self) -> List[Epic]:
        return list(self._epics.values())

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def put_task(self, task: Task) -> None:
        self._tasks[task.task_id] = task

    def list_tasks(self, epic_id: str) -> List[Task]:
        return [t for t in self._tasks.values() if t.epic_id == epic_id]

    def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        return self._agents.get(agent_id)

    def put_agent(self, agent: AgentProfile) -> None:
        self._agents[agent.agent_id] = agent

    def list_agents(self) -> List[AgentProfile]:
        return list(self._agents.values())

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return self._assignments.get(assignment_id)

    def put_assignment(self, assignment: Assignment) -> None:
        self._assignments[assignment.assignment_id] = assignment

    def list_assignments(self, epic_id: str) -> List[Assignment]:
        return [a for a in self._assignments.values() if a.epic_id == epic_id]

    def clear(self) -> None:
        self._epics.clear()
        self._tasks.clear()
        self._agents.clear()
        self._assignments.clear()


# -----------------------------------------------------------------------------
# Snapshot Persistence Adapter
# -----------------------------------------------------------------------------

class SnapshotStore(ABC):
    """Namespaced snapshot persistence with per-kind expiry."""

    def __init__(self, namespace_prefix: str = "epic", default_ttl_seconds: Optional[int] = None):
        self.namespace_prefix = namespace_prefix
        self.default_ttl_seconds = default_ttl_seconds

    def key(self, epic_id: str, kind: str) -> str:
        return f"{self.namespace_prefix}:{epic_id}:{kind}"

    def ttl_for(self, kind: str, ttl_seconds: Optional[int] = None) -> Optional[int]:
        """None means the snapshot never expires."""
        if kind in PERMANENT_KINDS:
            return None
        return ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds

    @abstractmethod
    def store(self, epic_id: str, kind: str, snapshot: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def load(self, epic_id: str, kind: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def delete(self, epic_id: str, kind: str) -> bool:
        ...


class InMemorySnapshotStore(SnapshotStore):
    """Dict-backed SnapshotStore; expired entries are dropped on read."""

    def __init__(
        self,
        namespace_prefix: str = "epic",
        default_ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        super().__init__(namespace_prefix, default_ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[Dict[str, Any], Optional[datetime]]] = {}

    def store(self, epic_id: str, kind: str, snapshot: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl_for(kind, ttl_seconds)
        expires_at = self._clock() + timedelta(seconds=ttl) if ttl is not None else None
        self._entries[self.key(epic_id, kind)] = (copy.deepcopy(snapshot), expires_at)
        logger.debug(f"Stored snapshot {self.key(epic_id, kind)} (ttl: {ttl})")

    def load(self, epic_id: str, kind: str) -> Optional[Dict[str, Any]]:
        key = self.key(epic_id, kind)
        entry = self._entries.get(key)
        if entry is None:
            return None
        snapshot, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            logger.debug(f"Snapshot {key} expired")
            return None
        return copy.deepcopy(snapshot)

    def delete(self, epic_id: str, kind: str) -> bool:
        return self._entries.pop(self.key(epic_id, kind), None) is not None
