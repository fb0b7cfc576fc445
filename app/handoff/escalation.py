# app/handoff/escalation.py
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from sqlalchemy.orm import Session

from app.handoff.agent_directory import AgentDirectory
from app.handoff.config import HandoffSettings, settings as handoff_settings
from app.handoff.exceptions import HandoffNotFound, ValidationError
from app.handoff.models import HandoffRequest, HandoffStatus, HumanAgent, utc_now
from app.handoff.registry import HandoffRegistry
from app.handoff.relay import MessageRelay

logger = logging.getLogger(__name__)


def run_now(func: Callable, *args, **kwargs) -> None:
    func(*args, **kwargs)


class EscalationPolicy:
    """Edge cases around an empty roster and handoffs nobody picks up.

    The notifier is anything with a ``send_after_hours_notice`` method (the
    Resend email service in production). ``defer`` decides when the notice is
    sent: FastAPI passes ``BackgroundTasks.add_task``, the default sends it
    inline. A failing notifier is logged and never fails the caller.
    """

    def __init__(self, db: Session, notifier=None, config: HandoffSettings = None,
                 registry: HandoffRegistry = None, agents: AgentDirectory = None,
                 relay: MessageRelay = None):
        self.db = db
        self.notifier = notifier
        self.config = config or handoff_settings
        self.registry = registry or HandoffRegistry(db)
        self.agents = agents or AgentDirectory(db)
        self.relay = relay or MessageRelay(db, self.registry)

    # ===== NO AGENTS AVAILABLE =====

    def agents_available(self, tenant_id: int) -> bool:
        return bool(self.agents.list_available(tenant_id))

    def on_no_agents_available(self, tenant_id: int, handoff: HandoffRequest,
                               email: Optional[str] = None, message: Optional[str] = None,
                               defer: Callable[..., Any] = run_now) -> HandoffRequest:
        """Keep the customer's contact details on the (still pending) handoff and alert the team"""
        if handoff.tenant_id != tenant_id:
            raise HandoffNotFound(f"Handoff {handoff.id} not found", handoff_id=handoff.id)

        email = email.strip() if email else None
        message = message.strip() if message else None
        if email and "@" not in email:
            raise ValidationError("A valid contact email is required", field="email")

        if email or message:
            try:
                recorded = self.registry.record_contact(handoff.id, email, message)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            if not recorded:
                logger.info(f"Handoff {handoff.id} left the queue before contact details were recorded")
                return self.registry.get(handoff.id)
            logger.info(f"After-hours contact captured for handoff {handoff.id} (tenant {tenant_id})")

        handoff = self.registry.get(handoff.id)
        if self.notifier is not None and self.config.enable_email_notifications:
            defer(self._notify_quietly, self._notice_payload(handoff))
        return handoff

    def _notice_payload(self, handoff: HandoffRequest) -> dict:
        # Plain values only: the notice may be sent after the request session is closed
        return {
            "handoff_id": handoff.id,
            "tenant_id": handoff.tenant_id,
            "chat_id": handoff.chat_id,
            "user_email": handoff.user_email,
            "user_message": handoff.user_message,
            "last_user_message": handoff.last_user_message,
            "conversation_history": handoff.conversation_history,
        }

    def _notify_quietly(self, payload: dict) -> None:
        try:
            result = self.notifier.send_after_hours_notice(**payload)
            if isinstance(result, dict) and not result.get("success", True):
                logger.warning(f"After-hours notice for handoff {payload['handoff_id']} not delivered: {result.get('error')}")
        except Exception as e:
            logger.error(f"After-hours notifier failed for handoff {payload['handoff_id']}: {str(e)}")

    # ===== PICKUP TIMEOUT =====

    @property
    def pickup_timeout(self) -> Optional[timedelta]:
        if not self.config.pickup_timeout_minutes:
            return None
        return timedelta(minutes=self.config.pickup_timeout_minutes)

    def on_pickup_timeout(self, handoff_id: str, now: Optional[datetime] = None) -> Optional[HandoffRequest]:
        """Expire a handoff that has waited past the SLA without being picked up.

        Returns the expired handoff, or None when there is no SLA, the handoff
        is not due yet, or it has already left the pending state. Agent
        capacity is never touched: nothing was reserved for a pending handoff.
        """
        timeout = self.pickup_timeout
        if timeout is None:
            return None

        now = now or utc_now()
        handoff = self.registry.get(handoff_id)
        if handoff.status != HandoffStatus.PENDING.value:
            return None

        cutoff = now - timeout
        if handoff.requested_at >= cutoff:
            return None

        try:
            expired = self.registry.transition(
                handoff_id,
                HandoffStatus.PENDING,
                HandoffStatus.EXPIRED,
                conditions=(HandoffRequest.requested_at < cutoff,),
                expired_at=now,
            )
            if not expired:
                # Picked up while the sweep was looking at it
                self.db.rollback()
                return None

            self.relay.post_system_message(
                handoff_id,
                "No agent was able to take this conversation in time. The request has expired.",
                commit=False,
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error expiring handoff {handoff_id}: {str(e)}")
            raise

        waited = int((now - handoff.requested_at).total_seconds() // 60)
        logger.info(f"Handoff {handoff_id} expired after waiting {waited} minutes")
        return self.registry.get(handoff_id)

    def expire_overdue(self, now: Optional[datetime] = None) -> List[HandoffRequest]:
        """One sweep pass over every tenant's overdue pending handoffs"""
        timeout = self.pickup_timeout
        if timeout is None:
            return []

        now = now or utc_now()
        overdue_ids = [h.id for h in self.registry.list_overdue(now - timeout)]

        expired = []
        for handoff_id in overdue_ids:
            result = self.on_pickup_timeout(handoff_id, now=now)
            if result is not None:
                expired.append(result)

        if expired:
            logger.info(f"Expired {len(expired)} overdue handoff(s)")
        return expired

    # ===== STALE AGENTS =====

    def mark_stale_agents_offline(self, now: Optional[datetime] = None) -> List[HumanAgent]:
        """Agents whose heartbeat stopped are taken out of the available pool"""
        if not self.config.agent_offline_after_seconds:
            return []

        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.config.agent_offline_after_seconds)
        updated = self.agents.mark_stale_offline(cutoff)

        for agent in updated:
            minutes_ago = round((now - agent.last_seen).total_seconds() / 60)
            logger.info(f"Marked {agent.email} as offline (last seen {minutes_ago} minutes ago)")
        if updated:
            logger.info(f"Updated {len(updated)} agent(s) to offline")
        return updated
