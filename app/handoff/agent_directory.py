# app/handoff/agent_directory.py
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, case, update
from sqlalchemy.orm import Session

from app.handoff.exceptions import AgentNotFound, CapacityExceeded, ValidationError
from app.handoff.models import AgentStatus, HumanAgent, utc_now

logger = logging.getLogger(__name__)


class AgentDirectory:
    """Agent availability and concurrent-chat capacity.

    ``reserve`` and ``release`` are the only writers of ``active_chats``; both
    are single conditional UPDATE statements, so two claimants racing for an
    agent's last free slot cannot both get it. Neither commits unless asked:
    the coordinator runs them inside its own transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # ===== LOOKUPS =====

    def get(self, agent_id: int, tenant_id: Optional[int] = None) -> HumanAgent:
        query = self.db.query(HumanAgent).filter(HumanAgent.id == agent_id)
        if tenant_id is not None:
            query = query.filter(HumanAgent.tenant_id == tenant_id)

        agent = query.populate_existing().first()
        if not agent:
            raise AgentNotFound(f"Agent {agent_id} not found", agent_id=agent_id)
        return agent

    def list_for_tenant(self, tenant_id: int) -> List[HumanAgent]:
        return self.db.query(HumanAgent).filter(
            HumanAgent.tenant_id == tenant_id
        ).order_by(HumanAgent.created_at.desc(), HumanAgent.id.desc()).all()

    def list_available(self, tenant_id: int) -> List[HumanAgent]:
        """Available agents with a free slot, least loaded first"""
        return self.db.query(HumanAgent).filter(
            HumanAgent.tenant_id == tenant_id,
            HumanAgent.status == AgentStatus.AVAILABLE.value,
            HumanAgent.active_chats < HumanAgent.max_chats
        ).order_by(HumanAgent.active_chats.asc(), HumanAgent.id.asc()).populate_existing().all()

    # ===== CAPACITY =====

    def reserve(self, agent_id: int, tenant_id: Optional[int] = None, commit: bool = True) -> None:
        """Take one unit of the agent's capacity, or fail with CapacityExceeded"""
        conditions = [HumanAgent.id == agent_id, HumanAgent.active_chats < HumanAgent.max_chats]
        if tenant_id is not None:
            conditions.append(HumanAgent.tenant_id == tenant_id)

        result = self.db.execute(
            update(HumanAgent)
            .where(and_(*conditions))
            .values(active_chats=HumanAgent.active_chats + 1)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            if commit:
                self.db.commit()
            logger.debug(f"Reserved a chat slot for agent {agent_id}")
            return

        exists = self._exists(agent_id, tenant_id)
        if commit:
            self.db.rollback()
        if not exists:
            raise AgentNotFound(f"Agent {agent_id} not found", agent_id=agent_id)
        raise CapacityExceeded(f"Agent {agent_id} has no free chat capacity", agent_id=agent_id)

    def release(self, agent_id: int, commit: bool = True) -> None:
        """Return one unit of capacity; never drops below zero"""
        self.db.execute(
            update(HumanAgent)
            .where(HumanAgent.id == agent_id)
            .values(active_chats=case(
                (HumanAgent.active_chats > 0, HumanAgent.active_chats - 1),
                else_=0,
            ))
            .execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        logger.debug(f"Released a chat slot for agent {agent_id}")

    # ===== PRESENCE =====

    def heartbeat(self, agent_id: int, tenant_id: Optional[int] = None) -> datetime:
        """Record that the agent is still connected. Status is left alone."""
        now = utc_now()
        conditions = [HumanAgent.id == agent_id]
        if tenant_id is not None:
            conditions.append(HumanAgent.tenant_id == tenant_id)

        result = self.db.execute(
            update(HumanAgent)
            .where(and_(*conditions))
            .values(last_seen=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            raise AgentNotFound(f"Agent {agent_id} not found", agent_id=agent_id)

        self.db.commit()
        return now

    def set_status(self, agent_id: int, tenant_id: int, status: str) -> HumanAgent:
        try:
            new_status = AgentStatus(status)
        except ValueError:
            raise ValidationError(
                f"Invalid agent status '{status}'",
                allowed=[s.value for s in AgentStatus],
            )

        result = self.db.execute(
            update(HumanAgent)
            .where(HumanAgent.id == agent_id, HumanAgent.tenant_id == tenant_id)
            .values(status=new_status.value, last_seen=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            raise AgentNotFound(f"Agent {agent_id} not found", agent_id=agent_id)

        self.db.commit()
        logger.info(f"Agent {agent_id} status set to '{new_status.value}' for tenant {tenant_id}")
        return self.get(agent_id, tenant_id)

    def mark_stale_offline(self, cutoff: datetime) -> List[HumanAgent]:
        """Move available agents whose last heartbeat predates ``cutoff`` to offline"""
        candidates = self.db.query(HumanAgent).filter(
            HumanAgent.status == AgentStatus.AVAILABLE.value,
            HumanAgent.last_seen.isnot(None),
            HumanAgent.last_seen < cutoff
        ).all()

        updated = []
        for agent in candidates:
            # A heartbeat that lands between the select and here keeps the agent online
            result = self.db.execute(
                update(HumanAgent)
                .where(
                    HumanAgent.id == agent.id,
                    HumanAgent.status == AgentStatus.AVAILABLE.value,
                    HumanAgent.last_seen < cutoff
                )
                .values(status=AgentStatus.OFFLINE.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                updated.append(agent)

        self.db.commit()
        return updated

    def _exists(self, agent_id: int, tenant_id: Optional[int]) -> bool:
        query = self.db.query(HumanAgent.id).filter(HumanAgent.id == agent_id)
        if tenant_id is not None:
            query = query.filter(HumanAgent.tenant_id == tenant_id)
        return query.first() is not None
