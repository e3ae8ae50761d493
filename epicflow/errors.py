"""
Error taxonomy for epicflow.

Every failure that reaches a caller is one of these. Each error carries a
machine-readable code, a human message and a details dict, and can be
rendered with to_dict() for audit logs and notification payloads.

"No qualifying agent" and "feature disabled" are NOT errors; the
assignment layer returns None for those.
"""

from typing import Any, Dict, Optional


class EpicFlowError(Exception):
    """Base exception for epicflow errors."""

    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidTransitionError(EpicFlowError):
    """Raised when the target state is not reachable from the current state."""

    def __init__(self, from_state: str, to_state: str, message: Optional[str] = None, code: str = "INVALID_TRANSITION"):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            code=code,
            message=message or f"Invalid transition from '{from_state}' to '{to_state}'",
            details={"from_state": from_state, "to_state": to_state},
        )


class TerminalStateError(InvalidTransitionError):
    """Raised when a transition is attempted out of a terminal state."""

    def __init__(self, state: str, to_state: str):
        super().__init__(
            from_state=state,
            to_state=to_state,
            message=f"State '{state}' is terminal; cannot transition to '{to_state}'",
            code="TERMINAL_STATE",
        )


class GuardFailureError(EpicFlowError):
    """Raised when a registered guard rejects a transition."""

    def __init__(self, guard_name: str, from_state: str, to_state: str):
        self.guard_name = guard_name
        super().__init__(
            code="GUARD_FAILED",
            message=f"Guard '{guard_name}' failed for transition {from_state} -> {to_state}",
            details={"guard_name": guard_name, "from_state": from_state, "to_state": to_state},
        )


class ConfigurationError(EpicFlowError):
    """Raised for invalid weights, thresholds or configuration values."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(
            code="INVALID_CONFIGURATION",
            message=f"Invalid configuration for '{field}': {reason}",
            details={"field": field, "reason": reason},
        )


class NotFoundError(EpicFlowError):
    """Raised when an epic, task, agent or assignment is not known."""

    def __init__(self, entity_kind: str, entity_id: str):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(
            code=f"{entity_kind.upper()}_NOT_FOUND",
            message=f"{entity_kind.capitalize()} '{entity_id}' not found",
            details={"entity_kind": entity_kind, "entity_id": entity_id},
        )
