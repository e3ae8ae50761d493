"""
Unit Tests for the Epic State Machine

Test coverage for:
- Valid and invalid transitions
- Terminal state handling
- Bounded history with FIFO eviction
- Guards (ordering, short-circuit, failure recording)
- Before/after hooks
- State actions through optional context callables
- Blocking reasons
- Statistics and serialization
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from epicflow.errors import GuardFailureError, InvalidTransitionError, TerminalStateError
from epicflow.models import Epic, EpicState
from epicflow.state_machine import (
    VALID_TRANSITIONS,
    EpicStateMachine,
    HookPhase,
    TransitionContext,
)


def create_machine(state: EpicState = EpicState.UNINITIALIZED, max_history: int = 100) -> EpicStateMachine:
    """Helper to create a state machine for a fresh epic."""
    return EpicStateMachine(Epic(epic_id="epic-sm", title="Checkout", state=state), max_history=max_history)


INVALID_PAIRS = [
    (source, target)
    for source in EpicState
    for target in EpicState
    if target not in VALID_TRANSITIONS[source]
]


# -----------------------------------------------------------------------------
# Test 1: Valid Transitions
# -----------------------------------------------------------------------------
class TestValidTransitions:
    """Test that every edge in the table is allowed."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self):
        """Test UNINITIALIZED through ARCHIVED via REVIEW and COMPLETED."""
        machine = create_machine()

        for target in (EpicState.ACTIVE, EpicState.REVIEW, EpicState.COMPLETED, EpicState.ARCHIVED):
            record = await machine.transition(target)
            assert record.success is True
            assert machine.state == target

        assert len(machine.history) == 4
        assert machine.epic.completed_at is not None
        assert machine.epic.archived_at is not None
        assert machine.is_terminal()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("source,target", [
        (source, target) for source, targets in VALID_TRANSITIONS.items() for target in targets
    ])
    async def test_each_table_edge(self, source, target):
        """Test every listed edge succeeds."""
        machine = create_machine(state=source)

        record = await machine.transition(target)

        assert record.success is True
        assert record.from_state == source
        assert machine.state == target

    def test_allowed_transitions(self):
        """Test allowed_transitions mirrors the table."""
        machine = create_machine(state=EpicState.ACTIVE)
        assert machine.allowed_transitions() == {EpicState.PAUSED, EpicState.BLOCKED, EpicState.REVIEW}

    def test_can_transition(self):
        """Test can_transition without side effects."""
        machine = create_machine(state=EpicState.REVIEW)

        allowed, _ = machine.can_transition(EpicState.COMPLETED)
        denied, message = machine.can_transition(EpicState.PAUSED)

        assert allowed is True
        assert denied is False
        assert "paused" in message
        assert machine.history == []

    @pytest.mark.asyncio
    async def test_metadata_recorded(self):
        """Test reason and triggered_by land on the record."""
        machine = create_machine()

        record = await machine.transition(
            EpicState.ACTIVE,
            metadata={"reason": "kickoff", "triggered_by": "coordinator", "ticket": 42},
        )

        assert record.reason == "kickoff"
        assert record.triggered_by == "coordinator"
        assert record.metadata["ticket"] == 42


# -----------------------------------------------------------------------------
# Test 2: Invalid Transitions
# -----------------------------------------------------------------------------
class TestInvalidTransitions:
    """Test that edges outside the table are rejected and recorded."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("source,target", INVALID_PAIRS)
    async def test_invalid_pair_rejected(self, source, target):
        """Test invalid pairs raise, record one failed entry and keep state."""
        machine = create_machine(state=source)

        with pytest.raises(InvalidTransitionError):
            await machine.transition(target)

        assert machine.state == source
        assert len(machine.history) == 1
        failed = machine.history[0]
        assert failed.success is False
        assert failed.to_state == target
        assert failed.error

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", list(EpicState))
    async def test_archived_is_terminal(self, target):
        """Test every transition out of ARCHIVED raises TerminalStateError."""
        machine = create_machine(state=EpicState.ARCHIVED)

        with pytest.raises(TerminalStateError) as exc_info:
            await machine.transition(target)

        assert exc_info.value.code == "TERMINAL_STATE"
        assert machine.state == EpicState.ARCHIVED

    def test_archived_has_no_edges(self):
        """Test ARCHIVED has an empty allowed set."""
        assert VALID_TRANSITIONS[EpicState.ARCHIVED] == set()
        assert EpicState.terminal_states() == {EpicState.ARCHIVED}

    @pytest.mark.asyncio
    async def test_guards_not_run_for_invalid_edge(self):
        """Test validation happens before guards."""
        machine = create_machine(state=EpicState.ACTIVE)
        guard = MagicMock(return_value=True)
        machine.register_guard("spy", guard)

        with pytest.raises(InvalidTransitionError):
            await machine.transition(EpicState.ARCHIVED)

        guard.assert_not_called()


# -----------------------------------------------------------------------------
# Test 3: History
# -----------------------------------------------------------------------------
class TestHistory:
    """Test bounded history."""

    @pytest.mark.asyncio
    async def test_cap_evicts_oldest(self):
        """Test cap=3 with five transitions keeps the last three."""
        machine = create_machine(max_history=3)
        path = [EpicState.ACTIVE, EpicState.PAUSED, EpicState.ACTIVE, EpicState.BLOCKED, EpicState.ACTIVE]

        for target in path:
            await machine.transition(target)

        history = machine.history
        assert len(history) == 3
        assert [(r.from_state, r.to_state) for r in history] == [
            (EpicState.PAUSED, EpicState.ACTIVE),
            (EpicState.ACTIVE, EpicState.BLOCKED),
            (EpicState.BLOCKED, EpicState.ACTIVE),
        ]

    @pytest.mark.asyncio
    async def test_failed_attempts_count_toward_cap(self):
        """Test failed records are retained and evicted like successful ones."""
        machine = create_machine(max_history=2)
        await machine.transition(EpicState.ACTIVE)
        for _ in range(3):
            with pytest.raises(InvalidTransitionError):
                await machine.transition(EpicState.ARCHIVED)

        assert len(machine.history) == 2
        assert all(not r.success for r in machine.history)

    @pytest.mark.asyncio
    async def test_recent_history(self):
        """Test recent_history returns the newest records."""
        machine = create_machine()
        await machine.transition(EpicState.ACTIVE)
        await machine.transition(EpicState.PAUSED)

        recent = machine.recent_history(1)

        assert len(recent) == 1
        assert recent[0].to_state == EpicState.PAUSED
        assert machine.recent_history(0) == []

    def test_invalid_cap(self):
        """Test max_history below one is rejected."""
        with pytest.raises(ValueError):
            create_machine(max_history=0)


# -----------------------------------------------------------------------------
# Test 4: Guards
# -----------------------------------------------------------------------------
class TestGuards:
    """Test guard predicates."""

    @pytest.mark.asyncio
    async def test_first_failing_guard_aborts(self):
        """Test guards run in order and stop at the first False."""
        machine = create_machine()
        calls = []

        def allow(current, target, context):
            calls.append("allow")
            return True

        def deny(current, target, context):
            calls.append("deny")
            return False

        def never(current, target, context):
            calls.append("never")
            return True

        machine.register_guard("allow", allow)
        machine.register_guard("deny", deny)
        machine.register_guard("never", never)

        with pytest.raises(GuardFailureError) as exc_info:
            await machine.transition(EpicState.ACTIVE)

        assert exc_info.value.guard_name == "deny"
        assert calls == ["allow", "deny"]
        assert machine.state == EpicState.UNINITIALIZED
        assert machine.history[-1].success is False
        assert "deny" in machine.history[-1].error

    @pytest.mark.asyncio
    async def test_async_guard(self):
        """Test coroutine guards are awaited."""
        machine = create_machine()
        guard = AsyncMock(return_value=False)
        machine.register_guard("async-deny", guard)

        with pytest.raises(GuardFailureError):
            await machine.transition(EpicState.ACTIVE)

        guard.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_guard_receives_context(self):
        """Test guards see current state, target and caller context."""
        machine = create_machine()
        seen = {}

        def guard(current, target, context):
            seen.update(current=current, target=target, data=context.data)
            return True

        machine.register_guard("inspect", guard)
        await machine.transition(EpicState.ACTIVE, context=TransitionContext(data={"user": "lead"}))

        assert seen == {"current": EpicState.UNINITIALIZED, "target": EpicState.ACTIVE, "data": {"user": "lead"}}

    @pytest.mark.asyncio
    async def test_unregister_guard(self):
        """Test an unregistered guard no longer runs."""
        machine = create_machine()
        machine.register_guard("deny", lambda c, t, ctx: False)

        assert machine.unregister_guard("deny") is True
        assert machine.unregister_guard("deny") is False

        await machine.transition(EpicState.ACTIVE)
        assert machine.state == EpicState.ACTIVE

    def test_reregister_keeps_position(self):
        """Test replacing a guard keeps its place in the order."""
        machine = create_machine()
        machine.register_guard("a", lambda c, t, ctx: True)
        machine.register_guard("b", lambda c, t, ctx: True)
        machine.register_guard("a", lambda c, t, ctx: False)

        assert machine.guard_names() == ["a", "b"]


# -----------------------------------------------------------------------------
# Test 5: Hooks
# -----------------------------------------------------------------------------
class TestHooks:
    """Test before/after hooks."""

    @pytest.mark.asyncio
    async def test_hook_order_and_commit_point(self):
        """Test before hooks see uncommitted state, after hooks see committed state."""
        machine = create_machine()
        events = []

        def before(record, context):
            events.append(("before", machine.state, record.success))

        async def after(record, context):
            events.append(("after", machine.state, record.success))

        machine.register_hook("after", after, phase=HookPhase.AFTER)
        machine.register_hook("before", before, phase=HookPhase.BEFORE)

        await machine.transition(EpicState.ACTIVE)

        assert events == [
            ("before", EpicState.UNINITIALIZED, False),
            ("after", EpicState.ACTIVE, True),
        ]

    @pytest.mark.asyncio
    async def test_before_hook_failure_recorded(self):
        """Test a failing before hook aborts and is recorded."""
        machine = create_machine()

        def explode(record, context):
            raise RuntimeError("hook exploded")

        machine.register_hook("explode", explode, phase=HookPhase.BEFORE)

        with pytest.raises(RuntimeError, match="hook exploded"):
            await machine.transition(EpicState.ACTIVE)

        assert machine.state == EpicState.UNINITIALIZED
        assert machine.history[-1].success is False
        assert machine.history[-1].error == "hook exploded"

    @pytest.mark.asyncio
    async def test_after_hook_failure_recorded(self):
        """Test a failing after hook is re-raised and the record marked failed."""
        machine = create_machine()
        machine.register_hook("explode", MagicMock(side_effect=ValueError("late failure")), phase=HookPhase.AFTER)

        with pytest.raises(ValueError):
            await machine.transition(EpicState.ACTIVE)

        assert len(machine.history) == 1
        assert machine.history[0].success is False
        assert machine.history[0].error == "late failure"

    @pytest.mark.asyncio
    async def test_unregister_hook(self):
        """Test unregistering a hook from any phase."""
        machine = create_machine()
        hook = MagicMock()
        machine.register_hook("spy", hook, phase=HookPhase.BEFORE)

        assert machine.unregister_hook("spy") is True
        await machine.transition(EpicState.ACTIVE)

        hook.assert_not_called()
        assert machine.hook_names(HookPhase.BEFORE) == []


# -----------------------------------------------------------------------------
# Test 6: State Actions
# -----------------------------------------------------------------------------
class TestStateActions:
    """Test context callables invoked per target state."""

    @pytest.mark.asyncio
    async def test_empty_context_is_fine(self):
        """Test missing callables are skipped."""
        machine = create_machine()
        for target in (EpicState.ACTIVE, EpicState.BLOCKED, EpicState.PAUSED, EpicState.ARCHIVED):
            await machine.transition(target, context=TransitionContext())
        assert machine.state == EpicState.ARCHIVED

    @pytest.mark.asyncio
    async def test_activate_from_uninitialized(self):
        """Test first activation initializes the epic."""
        machine = create_machine()
        context = TransitionContext(
            initialize_epic=MagicMock(),
            notify_agents=MagicMock(),
            update_progress=MagicMock(),
        )

        await machine.transition(EpicState.ACTIVE, context=context)

        context.initialize_epic.assert_called_once_with()
        context.notify_agents.assert_not_called()
        context.update_progress.assert_called_once_with("epic_activated")

    @pytest.mark.asyncio
    async def test_reactivate_from_paused(self):
        """Test resuming notifies agents instead of initializing."""
        machine = create_machine(state=EpicState.PAUSED)
        context = TransitionContext(initialize_epic=MagicMock(), notify_agents=AsyncMock())

        await machine.transition(EpicState.ACTIVE, context=context)

        context.initialize_epic.assert_not_called()
        context.notify_agents.assert_awaited_once_with("Epic reactivated: Checkout")

    @pytest.mark.asyncio
    async def test_pause_actions(self):
        """Test pausing preserves context and labels the epic."""
        machine = create_machine(state=EpicState.ACTIVE)
        context = TransitionContext(
            preserve_context=MagicMock(),
            pause_agents=MagicMock(),
            update_labels=MagicMock(),
        )

        await machine.transition(EpicState.PAUSED, context=context)

        context.preserve_context.assert_called_once()
        context.pause_agents.assert_called_once()
        context.update_labels.assert_called_once_with(["paused"])

    @pytest.mark.asyncio
    async def test_block_actions(self):
        """Test blocking escalates, labels, files a blocker and notifies."""
        machine = create_machine(state=EpicState.ACTIVE)
        context = TransitionContext(
            escalate_to_coordinator=MagicMock(),
            update_labels=MagicMock(),
            create_blocker_issue=MagicMock(),
            notify_stakeholders=MagicMock(),
        )
        details = {"description": "API down", "blocked_by": ["infra-12"]}

        await machine.transition(
            EpicState.BLOCKED,
            metadata={"reason": "upstream outage", "blocker_details": details},
            context=context,
        )

        context.escalate_to_coordinator.assert_called_once_with("upstream outage")
        context.update_labels.assert_called_once_with(["blocked", "needs-attention"])
        context.create_blocker_issue.assert_called_once_with(details)
        context.notify_stakeholders.assert_called_once_with("Epic blocked: Checkout")

    @pytest.mark.asyncio
    async def test_block_without_details_skips_blocker_issue(self):
        """Test the blocker record is only created when details are supplied."""
        machine = create_machine(state=EpicState.ACTIVE)
        context = TransitionContext(create_blocker_issue=MagicMock())

        await machine.transition(EpicState.BLOCKED, metadata={"reason": "waiting"}, context=context)

        context.create_blocker_issue.assert_not_called()

    @pytest.mark.asyncio
    async def test_review_completed_archived_actions(self):
        """Test review, completion and archival callables."""
        machine = create_machine(state=EpicState.ACTIVE)
        context = TransitionContext(
            trigger_final_validation=MagicMock(),
            request_human_approval=MagicMock(),
            generate_completion_checklist=MagicMock(),
            update_labels=MagicMock(),
            generate_completion_report=MagicMock(),
            calculate_metrics=MagicMock(),
            archive_epic_context=MagicMock(),
            close_issue=MagicMock(),
            notify_stakeholders=MagicMock(),
            update_agent_metrics=MagicMock(),
            move_to_long_term_storage=MagicMock(),
            remove_from_active_list=MagicMock(),
            archive_issue=MagicMock(),
            generate_final_analytics=MagicMock(),
        )

        await machine.transition(EpicState.REVIEW, context=context)
        context.update_labels.assert_called_once_with(["in-review", "pending-approval"])
        context.trigger_final_validation.assert_called_once()
        context.request_human_approval.assert_called_once()
        context.generate_completion_checklist.assert_called_once()

        await machine.transition(EpicState.COMPLETED, context=context)
        context.generate_completion_report.assert_called_once()
        context.calculate_metrics.assert_called_once()
        context.archive_epic_context.assert_called_once()
        context.close_issue.assert_called_once()
        context.notify_stakeholders.assert_called_once_with("Epic completed: Checkout")
        context.update_agent_metrics.assert_called_once()

        await machine.transition(EpicState.ARCHIVED, context=context)
        context.move_to_long_term_storage.assert_called_once()
        context.remove_from_active_list.assert_called_once()
        context.archive_issue.assert_called_once()
        context.generate_final_analytics.assert_called_once()

    @pytest.mark.asyncio
    async def test_failing_action_recorded(self):
        """Test an exception from a context callable fails the transition."""
        machine = create_machine(state=EpicState.ACTIVE)
        context = TransitionContext(pause_agents=MagicMock(side_effect=ConnectionError("agents unreachable")))

        with pytest.raises(ConnectionError):
            await machine.transition(EpicState.PAUSED, context=context)

        assert machine.state == EpicState.ACTIVE
        assert machine.history[-1].error == "agents unreachable"


# -----------------------------------------------------------------------------
# Test 7: Blocking Reasons
# -----------------------------------------------------------------------------
class TestBlockingReasons:
    """Test blocking reason bookkeeping."""

    @pytest.mark.asyncio
    async def test_block_and_unblock(self):
        """Test blocking opens a reason and reactivating resolves it."""
        machine = create_machine(state=EpicState.ACTIVE)

        await machine.transition(
            EpicState.BLOCKED,
            metadata={"reason": "waiting on vendor", "blocker_details": {"blocked_by": ["vendor-1"]}},
        )
        open_reasons = machine.epic.open_blocking_reasons()
        assert len(open_reasons) == 1
        assert open_reasons[0].description == "waiting on vendor"
        assert open_reasons[0].blocked_by == ["vendor-1"]

        await machine.transition(EpicState.ACTIVE, metadata={"reason": "vendor replied"})

        assert machine.epic.open_blocking_reasons() == []
        assert machine.epic.blocking_reasons[0].resolution == "vendor replied"

    def test_resolve_unknown_reason(self):
        """Test resolving an unknown reason raises NotFoundError."""
        from epicflow.errors import NotFoundError

        machine = create_machine()
        with pytest.raises(NotFoundError):
            machine.resolve_blocking_reason("missing", "n/a")

    def test_manual_reason(self):
        """Test adding and resolving a reason explicitly."""
        machine = create_machine(state=EpicState.BLOCKED)
        reason = machine.add_blocking_reason("design review pending")

        resolved = machine.resolve_blocking_reason(reason.reason_id, "approved")

        assert resolved.is_resolved
        assert resolved.resolution == "approved"


# -----------------------------------------------------------------------------
# Test 8: Statistics and Serialization
# -----------------------------------------------------------------------------
class TestStatistics:
    """Test statistics derived from history."""

    @pytest.mark.asyncio
    async def test_counts_and_dwell_time(self):
        """Test success/failure counts and average dwell per state."""
        machine = create_machine()
        first = await machine.transition(EpicState.ACTIVE)
        second = await machine.transition(EpicState.PAUSED)
        with pytest.raises(InvalidTransitionError):
            await machine.transition(EpicState.COMPLETED)
        third = await machine.transition(EpicState.ACTIVE)

        second.timestamp = first.timestamp + timedelta(seconds=120)
        third.timestamp = second.timestamp + timedelta(seconds=30)

        stats = machine.get_statistics()

        assert stats["total_transitions"] == 4
        assert stats["successful_transitions"] == 3
        assert stats["failed_transitions"] == 1
        assert stats["transitions_by_state"] == {"active": 2, "paused": 1}
        assert stats["average_time_in_state"]["active"] == pytest.approx(120)
        assert stats["average_time_in_state"]["paused"] == pytest.approx(30)
        assert stats["current_state"] == "active"

    @pytest.mark.asyncio
    async def test_round_trip(self):
        """Test to_dict/from_dict restores state and history."""
        machine = create_machine(max_history=5)
        await machine.transition(EpicState.ACTIVE)
        await machine.transition(EpicState.BLOCKED, metadata={"reason": "waiting"})

        restored = EpicStateMachine.from_dict(machine.to_dict())

        assert restored.state == EpicState.BLOCKED
        assert restored.max_history == 5
        assert [r.record_id for r in restored.history] == [r.record_id for r in machine.history]
        assert len(restored.epic.open_blocking_reasons()) == 1
        assert restored.guard_names() == []
