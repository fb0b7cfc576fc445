# app/handoff/relay.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.orm import Session

from app.handoff.config import settings as handoff_settings
from app.handoff.exceptions import HandoffNotFound, InvalidState, Unauthorized, ValidationError
from app.handoff.guard import AuthorizationGuard
from app.handoff.models import (
    HandoffMessage, HandoffRequest, HandoffStatus, SenderType, make_timezone_naive, utc_now
)
from app.handoff.registry import HandoffRegistry

logger = logging.getLogger(__name__)


CUSTOMER_WRITABLE = (HandoffStatus.PENDING.value, HandoffStatus.ACTIVE.value)


@dataclass
class MessageCursor:
    """Position of the last message a poller has seen"""

    timestamp: Optional[datetime] = None
    sequence: Optional[int] = None

    def advance(self, message: HandoffMessage) -> "MessageCursor":
        return MessageCursor(timestamp=message.timestamp, sequence=message.sequence)


@dataclass
class MessagePage:
    messages: List[HandoffMessage] = field(default_factory=list)
    cursor: MessageCursor = field(default_factory=MessageCursor)
    poll_interval_seconds: int = 3


class MessageRelay:
    """Append-only message log per handoff, read incrementally by pollers.

    Messages are ordered by ``(timestamp, sequence)``. The sequence comes from
    a counter on the handoff row that is bumped by a conditional UPDATE in the
    same transaction as the insert, so it is gapless and unique per handoff
    even with concurrent writers.
    """

    def __init__(self, db: Session, registry: HandoffRegistry = None):
        self.db = db
        self.registry = registry or HandoffRegistry(db)

    # ===== WRITES =====

    def append(self, handoff_id: str, sender_kind: str, sender_id: Optional[int], content: str,
               timestamp: Optional[datetime] = None, tenant_id: Optional[int] = None) -> HandoffMessage:
        try:
            kind = SenderType(sender_kind)
        except ValueError:
            raise ValidationError(f"Unknown sender type '{sender_kind}'")

        content = self._clean_content(content)
        handoff = self.registry.get(handoff_id)
        if tenant_id is not None and handoff.tenant_id != tenant_id:
            raise HandoffNotFound(f"Handoff {handoff_id} not found", handoff_id=handoff_id)

        if kind == SenderType.AGENT:
            if handoff.is_terminal:
                raise InvalidState("Handoff is closed", handoff_id=handoff_id, status=handoff.status)
            AuthorizationGuard.require(handoff, sender_id)
            # Pending handoffs pass the guard for browsing, but only the owner of an active one may speak
            if handoff.status != HandoffStatus.ACTIVE.value:
                raise InvalidState("Handoff is not active", handoff_id=handoff_id, status=handoff.status)
            conditions = [
                HandoffRequest.status == HandoffStatus.ACTIVE.value,
                HandoffRequest.assigned_agent_id == sender_id,
            ]
        elif kind == SenderType.CUSTOMER:
            sender_id = None
            conditions = [HandoffRequest.status.in_(CUSTOMER_WRITABLE)]
            if handoff.status not in CUSTOMER_WRITABLE:
                raise InvalidState("Handoff is closed", handoff_id=handoff_id, status=handoff.status)
        else:
            sender_id = None
            conditions = []

        message = self._insert(handoff, kind, sender_id, content, timestamp, conditions)
        logger.info(f"Message #{message.sequence} from {kind.value} appended to handoff {handoff_id}")
        return message

    def post_system_message(self, handoff_id: str, content: str, commit: bool = True) -> HandoffMessage:
        handoff = self.registry.get(handoff_id)
        return self._insert(handoff, SenderType.SYSTEM, None, self._clean_content(content), None, [], commit)

    def _insert(self, handoff: HandoffRequest, kind: SenderType, sender_id: Optional[int], content: str,
                timestamp: Optional[datetime], conditions, commit: bool = True) -> HandoffMessage:
        now = utc_now()
        stamp = make_timezone_naive(timestamp) or now
        try:
            # Sequence and timestamp are issued by the same row update, so a
            # message never sorts before one that was stored ahead of it
            result = self.db.execute(
                update(HandoffRequest)
                .where(HandoffRequest.id == handoff.id, *conditions)
                .values(
                    message_seq=HandoffRequest.message_seq + 1,
                    last_message_at=case(
                        (HandoffRequest.last_message_at > stamp, HandoffRequest.last_message_at),
                        else_=stamp,
                    ),
                    last_activity_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # The handoff changed state since it was read
                raise self._rejection(handoff.id, kind, sender_id)

            sequence, stamped_at = self.db.execute(
                select(HandoffRequest.message_seq, HandoffRequest.last_message_at)
                .where(HandoffRequest.id == handoff.id)
            ).one()

            message = HandoffMessage(
                handoff_id=handoff.id,
                sender_type=kind.value,
                sender_id=sender_id,
                content=content,
                timestamp=stamped_at,
                sequence=sequence,
            )
            self.db.add(message)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except Exception:
            if commit:
                self.db.rollback()
            raise

        if commit:
            self.db.refresh(message)
        return message

    def _rejection(self, handoff_id: str, kind: SenderType, sender_id: Optional[int]):
        current = self.registry.get(handoff_id)
        if kind == SenderType.AGENT and not AuthorizationGuard.can_act(current, sender_id):
            return Unauthorized("This conversation is assigned to another agent", handoff_id=handoff_id)
        return InvalidState("Handoff is no longer open for messages", handoff_id=handoff_id, status=current.status)

    # ===== READS =====

    def since(self, handoff_id: str, since: Optional[datetime] = None,
              after_sequence: Optional[int] = None) -> MessagePage:
        """Messages strictly after the ``(since, after_sequence)`` cursor.

        Without ``after_sequence`` every message stamped later than ``since``
        is returned; with it, messages sharing the ``since`` timestamp but
        carrying a higher sequence are included as well, so a poller that
        echoes back the returned cursor never skips a same-timestamp message.
        """
        self.registry.get(handoff_id)
        since = make_timezone_naive(since)

        query = self.db.query(HandoffMessage).filter(HandoffMessage.handoff_id == handoff_id)
        if since is not None:
            if after_sequence is None:
                query = query.filter(HandoffMessage.timestamp > since)
            else:
                query = query.filter(or_(
                    HandoffMessage.timestamp > since,
                    and_(HandoffMessage.timestamp == since, HandoffMessage.sequence > after_sequence)
                ))
        elif after_sequence is not None:
            query = query.filter(HandoffMessage.sequence > after_sequence)

        messages = query.order_by(HandoffMessage.timestamp.asc(), HandoffMessage.sequence.asc()).all()

        cursor = MessageCursor(timestamp=since, sequence=after_sequence)
        if messages:
            cursor = cursor.advance(messages[-1])

        return MessagePage(
            messages=messages,
            cursor=cursor,
            poll_interval_seconds=handoff_settings.poll_interval_seconds,
        )

    def history(self, handoff_id: str) -> List[HandoffMessage]:
        return self.since(handoff_id).messages

    def _clean_content(self, content: Optional[str]) -> str:
        if content is None or not str(content).strip():
            raise ValidationError("Message content is required")
        content = str(content).strip()
        if len(content) > handoff_settings.max_message_length:
            raise ValidationError(
                f"Message exceeds {handoff_settings.max_message_length} characters",
                max_length=handoff_settings.max_message_length,
            )
        return content
