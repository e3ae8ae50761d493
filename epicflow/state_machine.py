"""
Epic State Machine - Controlled Epic Lifecycle

Each EpicStateMachine exclusively owns one epic's state and a bounded,
ordered history of transition attempts (successful and failed).

States:
    UNINITIALIZED → ACTIVE ⇄ {PAUSED, BLOCKED, REVIEW}
    REVIEW → COMPLETED → ARCHIVED
    PAUSED → ARCHIVED
    (ARCHIVED is terminal)

transition() pipeline:
1. Validate the edge (terminal / not allowed → recorded, then raised)
2. Guards, in registration order, short-circuit on first False
3. "before" hooks
4. State actions, calling whichever optional TransitionContext callables are set
5. Commit
6. "after" hooks
7. Append to history, evicting the oldest beyond max_history

Any exception in 2-6 is recorded as a failed attempt and re-raised.

IMPORTANT: there is no internal locking. Callers must serialize
concurrent transition() calls on the same instance.
"""

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from .errors import GuardFailureError, InvalidTransitionError, NotFoundError, TerminalStateError
from .models import BlockingReason, Epic, EpicState

logger = logging.getLogger("epic_state_machine")

DEFAULT_MAX_HISTORY = 100

# -----------------------------------------------------------------------------
# Valid Transitions
# -----------------------------------------------------------------------------
VALID_TRANSITIONS: Dict[EpicState, Set[EpicState]] = {
    EpicState.UNINITIALIZED: {EpicState.ACTIVE},
    EpicState.ACTIVE: {EpicState.PAUSED, EpicState.BLOCKED, EpicState.REVIEW},
    EpicState.PAUSED: {EpicState.ACTIVE, EpicState.ARCHIVED},
    EpicState.BLOCKED: {EpicState.ACTIVE, EpicState.PAUSED},
    EpicState.REVIEW: {EpicState.ACTIVE, EpicState.COMPLETED},
    EpicState.COMPLETED: {EpicState.ARCHIVED},
    EpicState.ARCHIVED: set(),
}


class HookPhase(str, Enum):
    BEFORE = "before"
    AFTER = "after"


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------

MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass
class TransitionContext:
    """
    Optional collaborator callables invoked by state actions.

    Every member may be None; a missing callable is skipped. Callables may
    be plain functions or coroutines. `data` carries caller context
    through to guards and hooks untouched.
    """
    notify_agents: Optional[Callable[[str], MaybeAwaitable]] = None
    initialize_epic: Optional[Callable[[], MaybeAwaitable]] = None
    update_progress: Optional[Callable[[str], MaybeAwaitable]] = None
    preserve_context: Optional[Callable[[], MaybeAwaitable]] = None
    pause_agents: Optional[Callable[[], MaybeAwaitable]] = None
    update_labels: Optional[Callable[[List[str]], MaybeAwaitable]] = None
    escalate_to_coordinator: Optional[Callable[[str], MaybeAwaitable]] = None
    create_blocker_issue: Optional[Callable[[Dict[str, Any]], MaybeAwaitable]] = None
    notify_stakeholders: Optional[Callable[[str], MaybeAwaitable]] = None
    trigger_final_validation: Optional[Callable[[], MaybeAwaitable]] = None
    request_human_approval: Optional[Callable[[], MaybeAwaitable]] = None
    generate_completion_checklist: Optional[Callable[[], MaybeAwaitable]] = None
    generate_completion_report: Optional[Callable[[], MaybeAwaitable]] = None
    calculate_metrics: Optional[Callable[[], MaybeAwaitable]] = None
    archive_epic_context: Optional[Callable[[], MaybeAwaitable]] = None
    close_issue: Optional[Callable[[], MaybeAwaitable]] = None
    update_agent_metrics: Optional[Callable[[], MaybeAwaitable]] = None
    move_to_long_term_storage: Optional[Callable[[], MaybeAwaitable]] = None
    remove_from_active_list: Optional[Callable[[], MaybeAwaitable]] = None
    archive_issue: Optional[Callable[[], MaybeAwaitable]] = None
    generate_final_analytics: Optional[Callable[[], MaybeAwaitable]] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionRecord:
    """One transition attempt, successful or not."""
    record_id: str
    epic_id: str
    from_state: EpicState
    to_state: EpicState
    timestamp: datetime
    triggered_by: str = "system"
    reason: str = ""
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "epic_id": self.epic_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "triggered_by": self.triggered_by,
            "reason": self.reason,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionRecord":
        return cls(
            record_id=data["record_id"],
            epic_id=data["epic_id"],
            from_state=EpicState(data["from_state"]),
            to_state=EpicState(data["to_state"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            triggered_by=data.get("triggered_by", "system"),
            reason=data.get("reason", ""),
            success=data.get("success", False),
            error=data.get("error"),
            metadata=data.get("metadata", {}),
        )


Guard = Callable[[EpicState, EpicState, TransitionContext], MaybeAwaitable]
Hook = Callable[[TransitionRecord, TransitionContext], MaybeAwaitable]


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


# -----------------------------------------------------------------------------
# State Machine
# -----------------------------------------------------------------------------

class EpicStateMachine:
    """
    Lifecycle state machine for a single epic.

    Guards and hooks are named; registering an existing name replaces the
    callable in place, keeping its position in the run order.
    """

    def __init__(self, epic: Epic, max_history: int = DEFAULT_MAX_HISTORY):
        if max_history < 1:
            raise ValueError(f"max_history must be >= 1, got {max_history}")
        self.epic = epic
        self.max_history = max_history
        self._history: List[TransitionRecord] = []
        self._guards: Dict[str, Guard] = {}
        self._hooks: Dict[HookPhase, Dict[str, Hook]] = {
            HookPhase.BEFORE: {},
            HookPhase.AFTER: {},
        }

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def state(self) -> EpicState:
        return self.epic.state

    @property
    def epic_id(self) -> str:
        return self.epic.epic_id

    @property
    def history(self) -> List[TransitionRecord]:
        return list(self._history)

    def recent_history(self, count: int = 10) -> List[TransitionRecord]:
        if count <= 0:
            return []
        return self._history[-count:]

    def is_terminal(self) -> bool:
        return self.epic.state in EpicState.terminal_states()

    def allowed_transitions(self) -> Set[EpicState]:
        return set(VALID_TRANSITIONS.get(self.epic.state, set()))

    def can_transition(self, target: EpicState) -> Tuple[bool, str]:
        """
        Check the transition table only; guards are not consulted.

        Returns (allowed, message).
        """
        current = self.epic.state
        if current in EpicState.terminal_states():
            return False, f"State '{current.value}' is terminal"
        if target not in VALID_TRANSITIONS.get(current, set()):
            allowed = sorted(s.value for s in VALID_TRANSITIONS.get(current, set()))
            return False, f"Cannot transition from '{current.value}' to '{target.value}'. Allowed: {allowed}"
        return True, "Transition allowed"

    # -------------------------------------------------------------------------
    # Guard / Hook Registry
    # -------------------------------------------------------------------------

    def register_guard(self, name: str, guard: Guard) -> None:
        self._guards[name] = guard
        logger.debug(f"Epic {self.epic_id}: registered guard '{name}'")

    def unregister_guard(self, name: str) -> bool:
        return self._guards.pop(name, None) is not None

    def register_hook(self, name: str, hook: Hook, phase: HookPhase = HookPhase.AFTER) -> None:
        self._hooks[HookPhase(phase)][name] = hook
        logger.debug(f"Epic {self.epic_id}: registered {HookPhase(phase).value} hook '{name}'")

    def unregister_hook(self, name: str, phase: Optional[HookPhase] = None) -> bool:
        phases = [HookPhase(phase)] if phase is not None else list(HookPhase)
        removed = False
        for p in phases:
            removed = self._hooks[p].pop(name, None) is not None or removed
        return removed

    def guard_names(self) -> List[str]:
        return list(self._guards)

    def hook_names(self, phase: HookPhase) -> List[str]:
        return list(self._hooks[HookPhase(phase)])

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        target: EpicState,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[TransitionContext] = None,
    ) -> TransitionRecord:
        """
        Move the epic to `target`.

        metadata may carry `reason`, `triggered_by` and `blocker_details`;
        the rest is stored on the record as-is. Returns the successful
        record. Raises TerminalStateError, InvalidTransitionError,
        GuardFailureError, or whatever a hook or context callable raised.
        """
        target = EpicState(target)
        metadata = dict(metadata or {})
        context = context or TransitionContext()
        current = self.epic.state

        record = TransitionRecord(
            record_id=str(uuid.uuid4()),
            epic_id=self.epic_id,
            from_state=current,
            to_state=target,
            timestamp=datetime.utcnow(),
            triggered_by=metadata.get("triggered_by", "system"),
            reason=metadata.get("reason", ""),
            metadata=metadata,
        )

        validation_error: Optional[InvalidTransitionError] = None
        if current in EpicState.terminal_states():
            validation_error = TerminalStateError(current.value, target.value)
        elif target not in VALID_TRANSITIONS.get(current, set()):
            validation_error = InvalidTransitionError(current.value, target.value)

        if validation_error is not None:
            record.error = validation_error.message
            self._append(record)
            logger.warning(f"Epic {self.epic_id}: rejected transition {current.value} -> {target.value}")
            raise validation_error

        try:
            for name, guard in self._guards.items():
                allowed = await _maybe_await(guard(current, target, context))
                if not allowed:
                    raise GuardFailureError(name, current.value, target.value)

            for hook in list(self._hooks[HookPhase.BEFORE].values()):
                await _maybe_await(hook(record, context))

            await self._run_state_actions(current, target, metadata, context)

            self._commit(current, target, record)
            record.success = True

            for hook in list(self._hooks[HookPhase.AFTER].values()):
                await _maybe_await(hook(record, context))
        except Exception as e:
            record.success = False
            record.error = str(e)
            self._append(record)
            logger.error(f"Epic {self.epic_id}: transition {current.value} -> {target.value} failed: {e}")
            raise

        self._append(record)
        logger.info(
            f"Epic {self.epic_id}: {current.value} -> {target.value} "
            f"(by: {record.triggered_by}, reason: {record.reason or 'n/a'})"
        )
        return record

    def _commit(self, current: EpicState, target: EpicState, record: TransitionRecord) -> None:
        now = datetime.utcnow()
        epic = self.epic
        epic.state = target
        epic.updated_at = now

        if target == EpicState.BLOCKED:
            details = record.metadata.get("blocker_details") or {}
            self.add_blocking_reason(
                description=record.reason or details.get("description", "Epic blocked"),
                blocked_by=details.get("blocked_by", []),
            )
        elif current == EpicState.BLOCKED and target == EpicState.ACTIVE:
            for reason in epic.open_blocking_reasons():
                reason.resolved_at = now
                reason.resolution = record.reason or "Unblocked"

        if target == EpicState.COMPLETED:
            epic.completed_at = now
        elif target == EpicState.ARCHIVED:
            epic.archived_at = now

    def _append(self, record: TransitionRecord) -> None:
        self._history.append(record)
        while len(self._history) > self.max_history:
            evicted = self._history.pop(0)
            logger.debug(f"Epic {self.epic_id}: evicted history record {evicted.record_id}")

    # -------------------------------------------------------------------------
    # State Actions
    # -------------------------------------------------------------------------

    @staticmethod
    async def _call(context: TransitionContext, name: str, *args: Any) -> None:
        fn = getattr(context, name, None)
        if fn is None:
            return
        await _maybe_await(fn(*args))

    async def _run_state_actions(
        self,
        current: EpicState,
        target: EpicState,
        metadata: Dict[str, Any],
        context: TransitionContext,
    ) -> None:
        title = self.epic.title or self.epic_id
        reason = metadata.get("reason", "")

        if target == EpicState.ACTIVE:
            if current in (EpicState.PAUSED, EpicState.BLOCKED):
                await self._call(context, "notify_agents", f"Epic reactivated: {title}")
            elif current == EpicState.UNINITIALIZED:
                await self._call(context, "initialize_epic")
            await self._call(context, "update_progress", "epic_activated")

        elif target == EpicState.PAUSED:
            await self._call(context, "preserve_context")
            await self._call(context, "notify_agents", f"Epic paused: {title}")
            await self._call(context, "pause_agents")
            await self._call(context, "update_labels", ["paused"])

        elif target == EpicState.BLOCKED:
            await self._call(context, "escalate_to_coordinator", reason or "Epic blocked")
            await self._call(context, "update_labels", ["blocked", "needs-attention"])
            if metadata.get("blocker_details"):
                await self._call(context, "create_blocker_issue", metadata["blocker_details"])
            await self._call(context, "notify_stakeholders", f"Epic blocked: {title}")

        elif target == EpicState.REVIEW:
            await self._call(context, "trigger_final_validation")
            await self._call(context, "request_human_approval")
            await self._call(context, "generate_completion_checklist")
            await self._call(context, "update_labels", ["in-review", "pending-approval"])

        elif target == EpicState.COMPLETED:
            await self._call(context, "generate_completion_report")
            await self._call(context, "calculate_metrics")
            await self._call(context, "archive_epic_context")
            await self._call(context, "close_issue")
            await self._call(context, "notify_stakeholders", f"Epic completed: {title}")
            await self._call(context, "update_agent_metrics")

        elif target == EpicState.ARCHIVED:
            await self._call(context, "move_to_long_term_storage")
            await self._call(context, "remove_from_active_list")
            await self._call(context, "archive_issue")
            await self._call(context, "generate_final_analytics")

    # -------------------------------------------------------------------------
    # Blocking Reasons
    # -------------------------------------------------------------------------

    def add_blocking_reason(self, description: str, blocked_by: Optional[List[str]] = None) -> BlockingReason:
        reason = BlockingReason(
            reason_id=str(uuid.uuid4()),
            description=description,
            blocked_by=list(blocked_by or []),
        )
        self.epic.blocking_reasons.append(reason)
        logger.info(f"Epic {self.epic_id}: blocking reason added: {description}")
        return reason

    def resolve_blocking_reason(self, reason_id: str, resolution: str) -> BlockingReason:
        for reason in self.epic.blocking_reasons:
            if reason.reason_id == reason_id:
                reason.resolved_at = datetime.utcnow()
                reason.resolution = resolution
                return reason
        raise NotFoundError("blocking_reason", reason_id)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        """
        Counts and dwell times derived from the retained history.

        Dwell time for a state is measured between consecutive successful
        transitions where the earlier one entered that state.
        """
        successful = [r for r in self._history if r.success]
        by_state: Dict[str, int] = {}
        for record in successful:
            by_state[record.to_state.value] = by_state.get(record.to_state.value, 0) + 1

        dwell: Dict[str, List[float]] = {}
        for earlier, later in zip(successful, successful[1:]):
            seconds = (later.timestamp - earlier.timestamp).total_seconds()
            dwell.setdefault(earlier.to_state.value, []).append(seconds)

        return {
            "epic_id": self.epic_id,
            "current_state": self.epic.state.value,
            "total_transitions": len(self._history),
            "successful_transitions": len(successful),
            "failed_transitions": len(self._history) - len(successful),
            "transitions_by_state": by_state,
            "average_time_in_state": {
                state: sum(values) / len(values) for state, values in dwell.items()
            },
        }

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Epic and history only; guards and hooks are not serialized."""
        return {
            "epic": self.epic.to_dict(),
            "max_history": self.max_history,
            "history": [r.to_dict() for r in self._history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EpicStateMachine":
        machine = cls(
            Epic.from_dict(data["epic"]),
            max_history=data.get("max_history", DEFAULT_MAX_HISTORY),
        )
        for entry in data.get("history", []):
            machine._append(TransitionRecord.from_dict(entry))
        return machine
