# app/handoff/widget_router.py
"""
Channel-facing endpoints: the chat widget (or any other channel integration)
escalates a conversation, relays the customer's side of it and polls for the
agent's replies.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.email.resend_service import email_service
from app.handoff.auth_utils import get_channel_tenant
from app.handoff.config import settings as handoff_settings
from app.handoff.coordinator import AssignmentCoordinator
from app.handoff.escalation import EscalationPolicy
from app.handoff.exceptions import HandoffError, ValidationError
from app.handoff.models import HandoffStatus, SenderType
from app.handoff.registry import HandoffRegistry
from app.handoff.relay import MessageRelay
from app.handoff.router import raise_http_error
from app.handoff.schemas import (
    ContactRequest, CreateHandoffRequest, CreateHandoffResponse, HandoffOut, HandoffStatusOut,
    MessageOut, MessagePageOut, SendMessageRequest
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=CreateHandoffResponse)
def create_handoff(request: CreateHandoffRequest, background_tasks: BackgroundTasks,
                   tenant_id: int = Depends(get_channel_tenant), db: Session = Depends(get_db)):
    """Escalate a bot conversation to the human queue"""
    try:
        registry = HandoffRegistry(db)
        handoff = registry.create(tenant_id, request.chat_id, {
            "conversation_history": request.conversation_history,
            "last_user_message": request.last_user_message,
            "metadata": request.metadata,
            "user_email": request.user_email,
            "user_message": request.user_message,
        })

        escalation = EscalationPolicy(db, notifier=email_service, registry=registry)
        agents_available = escalation.agents_available(tenant_id)
        status = "queued"
        if not agents_available:
            # The handoff stays pending; whoever comes online can still pick it up
            status = "after-hours"
            handoff = escalation.on_no_agents_available(tenant_id, handoff, defer=background_tasks.add_task)

        return CreateHandoffResponse(
            handoff=HandoffOut.model_validate(handoff),
            status=status,
            agents_available=agents_available,
            poll_interval_seconds=handoff_settings.poll_interval_seconds,
        )
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error creating handoff for chat {request.chat_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create handoff")


@router.get("/{handoff_id}/status", response_model=HandoffStatusOut)
def get_handoff_status(handoff_id: str, tenant_id: int = Depends(get_channel_tenant),
                       db: Session = Depends(get_db)):
    try:
        handoff = HandoffRegistry(db).get_for_tenant(handoff_id, tenant_id)
        agent_name = None
        if handoff.status == HandoffStatus.ACTIVE.value and handoff.assigned_agent:
            agent_name = handoff.assigned_agent.name

        return HandoffStatusOut(
            handoff_id=handoff.id,
            status=handoff.status,
            agent_name=agent_name,
            requested_at=handoff.requested_at,
            picked_up_at=handoff.picked_up_at,
            resolved_at=handoff.resolved_at,
            poll_interval_seconds=handoff_settings.poll_interval_seconds,
        )
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error loading status of handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to load handoff status")


@router.post("/{handoff_id}/messages", response_model=MessageOut)
def send_customer_message(handoff_id: str, request: SendMessageRequest,
                          tenant_id: int = Depends(get_channel_tenant), db: Session = Depends(get_db)):
    try:
        return MessageRelay(db).append(
            handoff_id,
            SenderType.CUSTOMER.value,
            None,
            request.content,
            tenant_id=tenant_id,
        )
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error sending customer message on handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to send message")


@router.get("/{handoff_id}/messages", response_model=MessagePageOut)
def get_customer_messages(handoff_id: str,
                          since: Optional[datetime] = Query(None),
                          after_sequence: Optional[int] = Query(None),
                          tenant_id: int = Depends(get_channel_tenant),
                          db: Session = Depends(get_db)):
    try:
        registry = HandoffRegistry(db)
        registry.get_for_tenant(handoff_id, tenant_id)
        page = MessageRelay(db, registry).since(handoff_id, since=since, after_sequence=after_sequence)
        return MessagePageOut.from_page(page)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error fetching messages for handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch messages")


@router.post("/{handoff_id}/contact", response_model=HandoffOut)
def leave_contact_details(handoff_id: str, request: ContactRequest, background_tasks: BackgroundTasks,
                          tenant_id: int = Depends(get_channel_tenant), db: Session = Depends(get_db)):
    """After-hours form: the customer leaves an email and a message for the team"""
    try:
        if not (request.email and request.email.strip()) and not (request.message and request.message.strip()):
            raise ValidationError("An email or a message is required")

        registry = HandoffRegistry(db)
        handoff = registry.get_for_tenant(handoff_id, tenant_id)
        escalation = EscalationPolicy(db, notifier=email_service, registry=registry)
        return escalation.on_no_agents_available(
            tenant_id,
            handoff,
            email=request.email,
            message=request.message,
            defer=background_tasks.add_task,
        )
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error recording contact details for handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to record contact details")


@router.post("/{handoff_id}/end", response_model=HandoffOut)
def end_handoff(handoff_id: str, tenant_id: int = Depends(get_channel_tenant), db: Session = Depends(get_db)):
    """The customer closed the chat"""
    try:
        return AssignmentCoordinator(db).end_by_customer(handoff_id, tenant_id)
    except HandoffError as e:
        raise_http_error(e)
    except Exception as e:
        logger.error(f"Error ending handoff {handoff_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to end handoff")
