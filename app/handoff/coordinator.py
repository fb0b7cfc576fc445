# app/handoff/coordinator.py
"""
Claiming and releasing handoffs.

``pickup`` is the one place where independent agents race for the same row.
It never reads the status and then writes it: the claim is an UPDATE that
only matches while the handoff is still pending, the capacity reservation is
an UPDATE that only matches while the agent has a free slot, and both run in
one transaction that is rolled back as a whole if either matches nothing.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.handoff.agent_directory import AgentDirectory
from app.handoff.exceptions import (
    AlreadyAssigned, AlreadyResolved, HandoffError, HandoffNotFound, InvalidStateTransition
)
from app.handoff.guard import AuthorizationGuard
from app.handoff.models import HandoffRequest, HandoffStatus, utc_now
from app.handoff.registry import HandoffRegistry
from app.handoff.relay import MessageRelay

logger = logging.getLogger(__name__)


class AssignmentCoordinator:

    def __init__(self, db: Session, registry: HandoffRegistry = None,
                 agents: AgentDirectory = None, relay: MessageRelay = None):
        self.db = db
        self.registry = registry or HandoffRegistry(db)
        self.agents = agents or AgentDirectory(db)
        self.relay = relay or MessageRelay(db, self.registry)

    def pickup(self, handoff_id: str, agent_id: int, tenant_id: int) -> HandoffRequest:
        """Claim a pending handoff for ``agent_id`` and reserve one unit of their capacity"""
        now = utc_now()
        try:
            claimed = self.registry.transition(
                handoff_id,
                HandoffStatus.PENDING,
                HandoffStatus.ACTIVE,
                conditions=(HandoffRequest.tenant_id == tenant_id,),
                assigned_agent_id=agent_id,
                picked_up_at=now,
            )
            if not claimed:
                raise self._pickup_rejection(handoff_id, tenant_id)

            self.agents.reserve(agent_id, tenant_id=tenant_id, commit=False)

            agent = self.agents.get(agent_id)
            self.relay.post_system_message(handoff_id, f"{agent.name} has joined the chat", commit=False)
            self.db.commit()

        except HandoffError as e:
            self.db.rollback()
            logger.info(f"Pickup of handoff {handoff_id} by agent {agent_id} refused: {e.code}")
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error picking up handoff {handoff_id}: {str(e)}")
            raise

        logger.info(f"Handoff {handoff_id} picked up by agent {agent_id} (tenant {tenant_id})")
        return self.registry.get(handoff_id)

    def resolve(self, handoff_id: str, agent_id: int, tenant_id: Optional[int] = None) -> HandoffRequest:
        """Close an active handoff on behalf of its owner and free their slot"""
        handoff = self._load(handoff_id, tenant_id)
        self._check_resolvable(handoff, agent_id)

        try:
            resolved = self.registry.transition(
                handoff_id,
                HandoffStatus.ACTIVE,
                HandoffStatus.RESOLVED,
                conditions=(HandoffRequest.assigned_agent_id == agent_id,),
                assigned_agent_id=None,
                resolved_at=utc_now(),
                resolved_by_agent_id=agent_id,
                resolved_by="agent",
            )
            if not resolved:
                # Lost a race with another resolve or the customer ending the chat
                self.db.rollback()
                self._check_resolvable(self.registry.get(handoff_id), agent_id)
                raise AlreadyResolved(f"Handoff {handoff_id} is already resolved", handoff_id=handoff_id)

            self.agents.release(agent_id, commit=False)
            self.relay.post_system_message(handoff_id, "The agent has closed this conversation", commit=False)
            self.db.commit()

        except HandoffError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error resolving handoff {handoff_id}: {str(e)}")
            raise

        logger.info(f"Handoff {handoff_id} resolved by agent {agent_id}")
        return self.registry.get(handoff_id)

    def end_by_customer(self, handoff_id: str, tenant_id: int) -> HandoffRequest:
        """The customer left the chat. Resolves an active handoff; anything else is left as is."""
        handoff = self.registry.get_for_tenant(handoff_id, tenant_id)
        if handoff.status != HandoffStatus.ACTIVE.value:
            logger.info(f"Customer ended chat on handoff {handoff_id} in status '{handoff.status}' - nothing to resolve")
            return handoff

        owner_id = handoff.assigned_agent_id
        try:
            resolved = self.registry.transition(
                handoff_id,
                HandoffStatus.ACTIVE,
                HandoffStatus.RESOLVED,
                conditions=(HandoffRequest.assigned_agent_id == owner_id,),
                assigned_agent_id=None,
                resolved_at=utc_now(),
                resolved_by="customer",
            )
            if not resolved:
                self.db.rollback()
                return self.registry.get(handoff_id)

            self.agents.release(owner_id, commit=False)
            self.relay.post_system_message(handoff_id, "Customer ended the chat", commit=False)
            self.db.commit()

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error ending handoff {handoff_id} for customer: {str(e)}")
            raise

        logger.info(f"Handoff {handoff_id} ended by customer, agent {owner_id} released")
        return self.registry.get(handoff_id)

    # ===== HELPERS =====

    def _load(self, handoff_id: str, tenant_id: Optional[int]) -> HandoffRequest:
        if tenant_id is None:
            return self.registry.get(handoff_id)
        return self.registry.get_for_tenant(handoff_id, tenant_id)

    def _pickup_rejection(self, handoff_id: str, tenant_id: int) -> HandoffError:
        """Explain why the claim UPDATE matched no row"""
        handoff = self.db.query(HandoffRequest).filter(
            HandoffRequest.id == handoff_id
        ).populate_existing().first()

        if not handoff or handoff.tenant_id != tenant_id:
            return HandoffNotFound(f"Handoff {handoff_id} not found", handoff_id=handoff_id)
        if handoff.status == HandoffStatus.EXPIRED.value:
            return InvalidStateTransition(
                f"Handoff {handoff_id} has expired",
                handoff_id=handoff_id,
                from_status=handoff.status,
                to_status=HandoffStatus.ACTIVE.value,
            )
        return AlreadyAssigned(f"Handoff {handoff_id} is no longer available", handoff_id=handoff_id)

    def _check_resolvable(self, handoff: HandoffRequest, agent_id: int) -> None:
        if handoff.status == HandoffStatus.RESOLVED.value:
            raise AlreadyResolved(f"Handoff {handoff.id} is already resolved", handoff_id=handoff.id)
        if handoff.status == HandoffStatus.EXPIRED.value:
            raise InvalidStateTransition(
                f"Handoff {handoff.id} has expired",
                handoff_id=handoff.id,
                from_status=handoff.status,
                to_status=HandoffStatus.RESOLVED.value,
            )
        AuthorizationGuard.require(handoff, agent_id)
        if handoff.status != HandoffStatus.ACTIVE.value:
            raise InvalidStateTransition(
                f"Handoff {handoff.id} is not active",
                handoff_id=handoff.id,
                from_status=handoff.status,
                to_status=HandoffStatus.RESOLVED.value,
            )
