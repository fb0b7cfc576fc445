# app/handoff/registry.py
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.handoff.exceptions import HandoffNotFound, InvalidStateTransition, ValidationError
from app.handoff.models import HandoffRequest, HandoffStatus, utc_now

logger = logging.getLogger(__name__)


LEGAL_TRANSITIONS = {
    (HandoffStatus.PENDING, HandoffStatus.ACTIVE),
    (HandoffStatus.PENDING, HandoffStatus.EXPIRED),
    (HandoffStatus.ACTIVE, HandoffStatus.RESOLVED),
}


class HandoffRegistry:
    """Storage and lifecycle rules for handoff requests"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, tenant_id: int, chat_id: str, context: Optional[Dict[str, Any]] = None) -> HandoffRequest:
        """Open a pending handoff with the conversation snapshot taken at escalation time"""
        if not chat_id or not str(chat_id).strip():
            raise ValidationError("chat_id is required")

        context = context or {}
        history = context.get("conversation_history")
        if history is not None and not isinstance(history, list):
            raise ValidationError("conversation_history must be a list")

        now = utc_now()
        handoff = HandoffRequest(
            tenant_id=tenant_id,
            chat_id=str(chat_id).strip(),
            status=HandoffStatus.PENDING.value,
            requested_at=now,
            last_activity_at=now,
            conversation_history=history,
            last_user_message=context.get("last_user_message"),
            context_metadata=context.get("metadata"),
            user_email=context.get("user_email"),
            user_message=context.get("user_message"),
            message_seq=0,
        )

        try:
            self.db.add(handoff)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(handoff)

        logger.info(f"Handoff {handoff.id} created for chat {handoff.chat_id} (tenant {tenant_id})")
        return handoff

    # ===== LOOKUPS =====

    def get(self, handoff_id: str) -> HandoffRequest:
        handoff = self.db.query(HandoffRequest).filter(
            HandoffRequest.id == handoff_id
        ).populate_existing().first()

        if not handoff:
            raise HandoffNotFound(f"Handoff {handoff_id} not found", handoff_id=handoff_id)
        return handoff

    def get_for_tenant(self, handoff_id: str, tenant_id: int) -> HandoffRequest:
        """Same as get, but another tenant's handoff is reported as missing"""
        handoff = self.get(handoff_id)
        if handoff.tenant_id != tenant_id:
            raise HandoffNotFound(f"Handoff {handoff_id} not found", handoff_id=handoff_id)
        return handoff

    def list_for_tenant(self, tenant_id: int) -> List[HandoffRequest]:
        return self.db.query(HandoffRequest).filter(
            HandoffRequest.tenant_id == tenant_id
        ).order_by(HandoffRequest.requested_at.desc()).all()

    def list_pending(self, tenant_id: int) -> List[HandoffRequest]:
        """Pending handoffs, oldest request first"""
        return self.db.query(HandoffRequest).filter(
            HandoffRequest.tenant_id == tenant_id,
            HandoffRequest.status == HandoffStatus.PENDING.value
        ).order_by(HandoffRequest.requested_at.asc(), HandoffRequest.id.asc()).all()

    def list_active(self, tenant_id: int) -> List[HandoffRequest]:
        return self.db.query(HandoffRequest).filter(
            HandoffRequest.tenant_id == tenant_id,
            HandoffRequest.status == HandoffStatus.ACTIVE.value
        ).order_by(HandoffRequest.picked_up_at.asc(), HandoffRequest.id.asc()).all()

    def list_overdue(self, cutoff) -> List[HandoffRequest]:
        """Pending handoffs of every tenant requested before ``cutoff``"""
        return self.db.query(HandoffRequest).filter(
            HandoffRequest.status == HandoffStatus.PENDING.value,
            HandoffRequest.requested_at < cutoff
        ).order_by(HandoffRequest.requested_at.asc()).all()

    # ===== STATE CHANGES =====

    def transition(self, handoff_id: str, from_status: HandoffStatus, to_status: HandoffStatus,
                   conditions=(), **changes) -> bool:
        """Move a handoff along one legal edge as a single conditional UPDATE.

        Returns False when the row no longer matches ``from_status`` (or the
        extra ``conditions``), which means another writer got there first.
        Does not commit.
        """
        from_status = HandoffStatus(from_status)
        to_status = HandoffStatus(to_status)
        if (from_status, to_status) not in LEGAL_TRANSITIONS:
            raise InvalidStateTransition(
                f"Cannot move handoff from '{from_status.value}' to '{to_status.value}'",
                handoff_id=handoff_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )

        changes.setdefault("last_activity_at", utc_now())
        result = self.db.execute(
            update(HandoffRequest)
            .where(
                HandoffRequest.id == handoff_id,
                HandoffRequest.status == from_status.value,
                *conditions
            )
            .values(status=to_status.value, **changes)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def record_contact(self, handoff_id: str, email: Optional[str], message: Optional[str]) -> bool:
        """Attach after-hours contact details while the handoff is still pending. Does not commit."""
        values = {"last_activity_at": utc_now()}
        if email is not None:
            values["user_email"] = email
        if message is not None:
            values["user_message"] = message

        result = self.db.execute(
            update(HandoffRequest)
            .where(
                HandoffRequest.id == handoff_id,
                HandoffRequest.status == HandoffStatus.PENDING.value
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
