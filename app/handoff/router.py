# app/handoff/router.py
"""
Operator console endpoints. Every route acts as the agent named by the
bearer token and only ever sees that agent's tenant.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.handoff.agent_directory import AgentDirectory
from app.handoff.auth_utils import get_current_agent
from app.handoff.coordinator import AssignmentCoordinator
from app.handoff.exceptions import HandoffError
from app.handoff.models import HumanAgent, SenderType
from app.handoff.registry import HandoffRegistry
from app.handoff.relay import MessageRelay
from app.handoff.schemas import (
    AgentOut, AgentStatusRequest, HandoffOut, HeartbeatResponse, MessageOut, MessagePageOut,
    SendMessageRequest
)

logger = logging.getLogger(__name__)
router = APIRouter()


def raise_http_error(e: HandoffError):
    """Translate a handoff core error into the HTTP response the clients expect"""
    raise HTTPException(status_code=e.status_code, detail=e.to_dict())


# ===== AGENTS =====

@router.get("/agents", response_model=List[AgentOut])
def list_agents(current_agent: HumanAgent = Depends(get_current_agent), db: Session = Depends(get_db)):
    try:
        return AgentDirectory(db).list_for_tenant(current_agent.tenant_id)
    except Exception as e:
        logger.error(f"Error listing agents: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list agents")


@router.get("/agents/available", response_model=List[AgentOut])
def list_available_agents(current_agent: HumanAgent = Depends(get_current_agent), db: Session = Depends(get_db)):
    """Agents who can take another chat right now, least loaded first"""
    try:
        return AgentDirectory(db).list_available(current_agent.tenant_id)
    except Exception as e:
        logger.error(f"Error listing available agents: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list available agents")


@router.post("/agents/heartbeat", response_model=HeartbeatResponse)
def agent_heartbeat(current_agent: HumanAgent = Depends(get_current_agent), db: Session = Depends(get_db)):
    try:
        last_seen = AgentDirectory(db).heartbeat(current_agent.id, current_agent.tenant_id)
        return HeartbeatResponse(agent_id=current_agent.id, status=current_agent.status, last_seen=last_seen)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error recording heartbeat for agent {current_agent.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to record heartbeat")


@router.patch("/agents/me/status", response_model=AgentOut)
def update_my_status(request: AgentStatusRequest,
                     current_agent: HumanAgent = Depends(get_current_agent),
                     db: Session = Depends(get_db)):
    """Availability toggle; logging out is a switch to offline"""
    try:
        return AgentDirectory(db).set_status(current_agent.id, current_agent.tenant_id, request.status)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error updating status for agent {current_agent.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update status")


# ===== HANDOFFS =====

@router.get("/handoffs", response_model=List[HandoffOut])
def list_handoffs(current_agent: HumanAgent = Depends(get_current_agent), db: Session = Depends(get_db)):
    try:
        return HandoffRegistry(db).list_for_tenant(current_agent.tenant_id)
    except Exception as e:
        logger.error(f"Error listing handoffs: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list handoffs")


@router.get("/handoffs/pending", response_model=List[HandoffOut])
def list_pending_handoffs(current_agent: HumanAgent = Depends(get_current_agent), db: Session = Depends(get_db)):
    """The queue, oldest request first"""
    try:
        return HandoffRegistry(db).list_pending(current_agent.tenant_id)
    except Exception as e:
        logger.error(f"Error listing pending handoffs: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list pending handoffs")


@router.get("/handoffs/active", response_model=List[HandoffOut])
def list_active_handoffs(current_agent: HumanAgent = Depends(get_current_agent), db: Session = Depends(get_db)):
    try:
        return HandoffRegistry(db).list_active(current_agent.tenant_id)
    except Exception as e:
        logger.error(f"Error listing active handoffs: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list active handoffs")


@router.get("/handoffs/{handoff_id}", response_model=HandoffOut)
def get_handoff(handoff_id: str, current_agent: HumanAgent = Depends(get_current_agent),
                db: Session = Depends(get_db)):
    try:
        return HandoffRegistry(db).get_for_tenant(handoff_id, current_agent.tenant_id)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error loading handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to load handoff")


@router.post("/handoffs/{handoff_id}/pickup", response_model=HandoffOut)
def pickup_handoff(handoff_id: str, current_agent: HumanAgent = Depends(get_current_agent),
                   db: Session = Depends(get_db)):
    """Claim a pending handoff. A 409 means someone else got it first or the agent is full."""
    try:
        return AssignmentCoordinator(db).pickup(handoff_id, current_agent.id, current_agent.tenant_id)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error picking up handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to pick up handoff")


@router.post("/handoffs/{handoff_id}/resolve", response_model=HandoffOut)
def resolve_handoff(handoff_id: str, current_agent: HumanAgent = Depends(get_current_agent),
                    db: Session = Depends(get_db)):
    try:
        return AssignmentCoordinator(db).resolve(handoff_id, current_agent.id, current_agent.tenant_id)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error resolving handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to resolve handoff")


# ===== MESSAGES =====

@router.post("/handoffs/{handoff_id}/messages", response_model=MessageOut)
def send_agent_message(handoff_id: str, request: SendMessageRequest,
                       current_agent: HumanAgent = Depends(get_current_agent),
                       db: Session = Depends(get_db)):
    try:
        return MessageRelay(db).append(
            handoff_id,
            SenderType.AGENT.value,
            current_agent.id,
            request.content,
            tenant_id=current_agent.tenant_id,
        )
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error sending agent message on handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to send message")


@router.get("/handoffs/{handoff_id}/messages", response_model=MessagePageOut)
def get_agent_messages(handoff_id: str,
                       since: Optional[datetime] = Query(None),
                       after_sequence: Optional[int] = Query(None),
                       current_agent: HumanAgent = Depends(get_current_agent),
                       db: Session = Depends(get_db)):
    """Poll for messages after the cursor returned by the previous call"""
    try:
        registry = HandoffRegistry(db)
        registry.get_for_tenant(handoff_id, current_agent.tenant_id)
        page = MessageRelay(db, registry).since(handoff_id, since=since, after_sequence=after_sequence)
        return MessagePageOut.from_page(page)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error fetching messages for handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch messages")
