# app/handoff/auth_utils.py
"""
Request authentication for the handoff endpoints.

Agent identity always comes from a verified bearer token, never from the
request body. Channel integrations authenticate with a service token that
names the tenant they act for.
"""

import logging
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.security import verify_token
from app.database import get_db
from app.handoff.models import HumanAgent

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _payload_for(token: HTTPAuthorizationCredentials, expected_type: str) -> dict:
    if not token or not token.credentials:
        raise HTTPException(status_code=401, detail="Authentication token required")

    payload = verify_token(token.credentials)
    if not payload:
        raise HTTPException(status_code=401, detail="Could not validate credentials")

    if payload.get("type") != expected_type:
        raise HTTPException(
            status_code=403,
            detail=f"Invalid token type - {expected_type} token required"
        )
    return payload


def get_current_agent(token: HTTPAuthorizationCredentials = Security(bearer_scheme),
                      db: Session = Depends(get_db)) -> HumanAgent:
    """Dependency to get the authenticated agent"""
    payload = _payload_for(token, "agent")

    try:
        agent_id = int(payload.get("sub"))
        tenant_id = int(payload.get("tenant_id"))
    except (TypeError, ValueError):
        logger.warning("Agent token without a usable subject or tenant")
        raise HTTPException(status_code=401, detail="Could not validate credentials")

    agent = db.query(HumanAgent).filter(
        HumanAgent.id == agent_id,
        HumanAgent.tenant_id == tenant_id
    ).first()

    if not agent:
        raise HTTPException(status_code=401, detail="Agent not found")

    return agent


def get_channel_tenant(token: HTTPAuthorizationCredentials = Security(bearer_scheme)) -> int:
    """Dependency returning the tenant a channel integration acts for"""
    payload = _payload_for(token, "channel")

    try:
        return int(payload.get("tenant_id"))
    except (TypeError, ValueError):
        logger.warning(f"Channel token for '{payload.get('sub')}' has no tenant")
        raise HTTPException(status_code=401, detail="Could not validate credentials")
