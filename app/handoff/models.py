# app/handoff/models.py
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from app.database import Base
from app.handoff.config import settings as handoff_settings


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def make_timezone_naive(dt):
    """Convert an aware datetime to naive UTC for database comparison"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _new_id() -> str:
    return str(uuid.uuid4())


class AgentStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class HandoffStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class SenderType(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"



class HumanAgent(Base):
    __tablename__ = "human_agents"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="unique_tenant_agent_email"),
        CheckConstraint("active_chats >= 0", name="ck_agent_active_chats_non_negative"),
        CheckConstraint("active_chats <= max_chats", name="ck_agent_active_chats_within_capacity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)

    name = Column(String, nullable=False)
    email = Column(String, nullable=False)

    status = Column(String, nullable=False, default=AgentStatus.AVAILABLE.value)
    active_chats = Column(Integer, nullable=False, default=0)
    max_chats = Column(Integer, nullable=False, default=lambda: handoff_settings.default_max_chats)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    last_seen = Column(DateTime, nullable=True, default=utc_now)

    handoffs = relationship(
        "HandoffRequest",
        foreign_keys="HandoffRequest.assigned_agent_id",
        back_populates="assigned_agent",
    )

    @property
    def has_capacity(self) -> bool:
        return self.active_chats < self.max_chats

    def __repr__(self):
        return f"<HumanAgent {self.name} ({self.email}) {self.active_chats}/{self.max_chats}>"


class HandoffRequest(Base):
    __tablename__ = "handoff_requests"
    __table_args__ = (
        Index("ix_handoff_tenant_status", "tenant_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(Integer, nullable=False, index=True)
    chat_id = Column(String, nullable=False, index=True)

    # Lifecycle
    status = Column(String, nullable=False, default=HandoffStatus.PENDING.value)
    requested_at = Column(DateTime, nullable=False, default=utc_now)
    picked_up_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=False, default=utc_now)

    # Ownership
    assigned_agent_id = Column(Integer, ForeignKey("human_agents.id"), nullable=True, index=True)
    resolved_by_agent_id = Column(Integer, ForeignKey("human_agents.id"), nullable=True)
    resolved_by = Column(String, nullable=True)  # agent or customer

    # After-hours capture
    user_email = Column(String, nullable=True)
    user_message = Column(Text, nullable=True)

    # Conversation context snapshot
    conversation_history = Column(JSON, nullable=True)
    last_user_message = Column(Text, nullable=True)
    context_metadata = Column("metadata", JSON, nullable=True)

    # Last issued message sequence and its timestamp; both only move forward
    message_seq = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)

    assigned_agent = relationship("HumanAgent", foreign_keys=[assigned_agent_id], back_populates="handoffs")
    messages = relationship(
        "HandoffMessage",
        back_populates="handoff",
        order_by="[HandoffMessage.timestamp, HandoffMessage.sequence]",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (HandoffStatus.RESOLVED.value, HandoffStatus.EXPIRED.value)

    def __repr__(self):
        return f"<HandoffRequest {self.id} {self.status} agent={self.assigned_agent_id}>"


class HandoffMessage(Base):
    __tablename__ = "handoff_messages"
    __table_args__ = (
        UniqueConstraint("handoff_id", "sequence", name="unique_handoff_message_sequence"),
        Index("ix_handoff_message_order", "handoff_id", "timestamp", "sequence"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    handoff_id = Column(String(36), ForeignKey("handoff_requests.id", ondelete="CASCADE"), nullable=False)
    sender_type = Column(String, nullable=False)
    sender_id = Column(Integer, nullable=True)  # human_agents.id for agent messages
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utc_now)
    sequence = Column(Integer, nullable=False)

    handoff = relationship("HandoffRequest", back_populates="messages")

    def __repr__(self):
        return f"<HandoffMessage {self.handoff_id}#{self.sequence} {self.sender_type}>"
