# app/handoff/exceptions.py
"""
Error taxonomy for the handoff core.

Every mutating service call either commits fully or raises one of these with
nothing written. ``AlreadyAssigned`` and ``CapacityExceeded`` are expected
outcomes of a lost race; callers move on to another handoff or agent.
``Unauthorized`` is final and is never retried.
"""


class HandoffError(Exception):
    """Base class for handoff core errors"""

    status_code = 500
    code = "handoff_error"

    def __init__(self, message: str = None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


class NotFound(HandoffError):
    """Resource not found"""

    status_code = 404
    code = "not_found"


class HandoffNotFound(NotFound):
    """Handoff not found"""

    code = "handoff_not_found"


class AgentNotFound(NotFound):
    """Agent record not found"""

    code = "agent_not_found"


class InvalidState(HandoffError):
    """Handoff is not in a state that allows this operation"""

    status_code = 400
    code = "invalid_state"


class InvalidStateTransition(InvalidState):
    """Illegal handoff status transition"""

    code = "invalid_state_transition"


class AlreadyAssigned(HandoffError):
    """Handoff was already picked up by another agent"""

    status_code = 409
    code = "already_assigned"


class CapacityExceeded(HandoffError):
    """Agent has no free chat capacity"""

    status_code = 409
    code = "capacity_exceeded"


class Unauthorized(HandoffError):
    """This conversation is assigned to another agent"""

    status_code = 403
    code = "unauthorized"


class AlreadyResolved(HandoffError):
    """Handoff is already resolved"""

    status_code = 409
    code = "already_resolved"


class ValidationError(HandoffError):
    """Malformed input"""

    status_code = 422
    code = "validation_error"
