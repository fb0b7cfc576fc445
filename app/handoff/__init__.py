# app/handoff/__init__.py
"""
Human handoff core: queue, assignment, ownership and message relay
"""

from .agent_directory import AgentDirectory
from .coordinator import AssignmentCoordinator
from .escalation import EscalationPolicy
from .guard import AuthorizationGuard
from .models import HandoffMessage, HandoffRequest, HumanAgent
from .registry import HandoffRegistry
from .relay import MessageRelay

__all__ = [
    "AgentDirectory",
    "AssignmentCoordinator",
    "EscalationPolicy",
    "AuthorizationGuard",
    "HandoffMessage",
    "HandoffRequest",
    "HumanAgent",
    "HandoffRegistry",
    "MessageRelay",
]
