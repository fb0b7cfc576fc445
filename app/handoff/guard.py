# app/handoff/guard.py
"""
Server-side capability check for acting on a handoff.

Operator and oversight consoles both go through ``can_act``; hiding buttons
per role in a UI does not replace it.
"""

import logging
from typing import Optional

from app.handoff.exceptions import Unauthorized
from app.handoff.models import HandoffRequest, HandoffStatus

logger = logging.getLogger(__name__)


class AuthorizationGuard:

    @staticmethod
    def can_act(handoff: HandoffRequest, actor_agent_id: Optional[int]) -> bool:
        """True for the assigned agent, or for anyone while the handoff is still pending.

        A pending handoff is visible to every agent of the tenant for queue
        browsing; the state rules of each operation decide what may actually
        be done with it.
        """
        if handoff.status == HandoffStatus.PENDING.value:
            return True
        return actor_agent_id is not None and handoff.assigned_agent_id == actor_agent_id

    @classmethod
    def require(cls, handoff: HandoffRequest, actor_agent_id: Optional[int]) -> None:
        if not cls.can_act(handoff, actor_agent_id):
            logger.warning(
                f"Agent {actor_agent_id} denied on handoff {handoff.id} "
                f"(status={handoff.status}, assigned={handoff.assigned_agent_id})"
            )
            raise Unauthorized(
                "This conversation is assigned to another agent",
                handoff_id=handoff.id,
            )
