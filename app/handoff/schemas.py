from pydantic import AliasChoices, BaseModel, Field
from typing import List, Dict, Any, Optional
from datetime import datetime


class AgentOut(BaseModel):
    id: int
    tenant_id: int
    name: str
    email: str
    status: str
    active_chats: int
    max_chats: int
    last_seen: Optional[datetime] = None

    class Config:
        from_attributes = True


class HandoffOut(BaseModel):
    id: str
    tenant_id: int
    chat_id: str
    status: str
    requested_at: datetime
    picked_up_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    assigned_agent_id: Optional[int] = None
    resolved_by_agent_id: Optional[int] = None
    resolved_by: Optional[str] = None
    user_email: Optional[str] = None
    user_message: Optional[str] = None
    last_user_message: Optional[str] = None
    conversation_history: Optional[List[Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("context_metadata", "metadata")
    )

    class Config:
        from_attributes = True


class MessageOut(BaseModel):
    id: str
    handoff_id: str
    sender_type: str
    sender_id: Optional[int] = None
    content: str
    timestamp: datetime
    sequence: int

    class Config:
        from_attributes = True


class MessagePageOut(BaseModel):
    messages: List[MessageOut]
    cursor: Optional[datetime] = None
    after_sequence: Optional[int] = None
    poll_interval_seconds: int

    @classmethod
    def from_page(cls, page) -> "MessagePageOut":
        return cls(
            messages=[MessageOut.model_validate(m) for m in page.messages],
            cursor=page.cursor.timestamp,
            after_sequence=page.cursor.sequence,
            poll_interval_seconds=page.poll_interval_seconds,
        )


class SendMessageRequest(BaseModel):
    content: str


class AgentStatusRequest(BaseModel):
    status: str


class HeartbeatResponse(BaseModel):
    agent_id: int
    status: str
    last_seen: datetime


class CreateHandoffRequest(BaseModel):
    chat_id: str
    conversation_history: Optional[List[Any]] = None
    last_user_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    user_email: Optional[str] = None
    user_message: Optional[str] = None


class CreateHandoffResponse(BaseModel):
    handoff: HandoffOut
    status: str  # "queued" or "after-hours"
    agents_available: bool
    poll_interval_seconds: int


class ContactRequest(BaseModel):
    email: Optional[str] = None
    message: Optional[str] = None


class HandoffStatusOut(BaseModel):
    handoff_id: str
    status: str
    agent_name: Optional[str] = None
    requested_at: datetime
    picked_up_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    poll_interval_seconds: int
