"""
Pydantic schemas for the gateway.

This module contains:
- Platform message models (inbound delivery, outbound reply envelope)
- Model backend request/response models
- Response models for the JSON API
"""

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Platform Message Models
# =============================================================================

class MsgType(str, Enum):
    EVENT = "event"
    TEXT = "text"
    UNSUPPORTED = "unsupported"


class EventType(str, Enum):
    SCAN = "SCAN"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    OTHER = "other"


class InboundMessage(BaseModel):
    """
    Decoded platform delivery.

    Validates:
    - msg_type=event requires event
    - msg_type=text requires content that is not blank
    """
    from_user: str = Field(..., min_length=1, description="Sender user id (openid)")
    to_user: str = Field(..., description="Platform account id the message was sent to")
    create_time: int = Field(..., ge=0, description="Platform timestamp in epoch seconds")
    msg_type: MsgType
    event: Optional[EventType] = None
    ticket: Optional[str] = None
    content: Optional[str] = None
    raw_msg_type: Optional[str] = Field(None, description="MsgType as sent by the platform")
    raw_event: Optional[str] = Field(None, description="Event as sent by the platform")

    @model_validator(mode="after")
    def check_type_fields(self) -> "InboundMessage":
        if self.msg_type is MsgType.EVENT and self.event is None:
            raise ValueError("event messages must carry an Event")
        if self.msg_type is MsgType.TEXT and (self.content is None or not self.content.strip()):
            raise ValueError("text messages must carry non-blank Content")
        return self


class OutboundMessage(BaseModel):
    """Text reply envelope sent back to the platform."""
    from_user: str = Field(..., description="Platform account id")
    to_user: str = Field(..., description="Recipient user id")
    create_time: int = Field(default_factory=lambda: int(time.time()))
    msg_type: str = Field(default="text")
    content: str = Field(..., min_length=1)


# =============================================================================
# Model Backend Models
# =============================================================================

class ChatMessage(BaseModel):
    role: str
    content: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    model: str
    messages: list[ChatMessage]


class ChatChoice(BaseModel):
    message: ChatMessage


class ChatCompletionResponse(BaseModel):
    choices: list[ChatChoice] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


# =============================================================================
# JSON API Models
# =============================================================================

class OperatorChatRequest(BaseModel):
    """Request body for the operator chat endpoint."""
    user_id: str = Field(..., min_length=1, description="Conversation owner")
    message: str = Field(..., min_length=1, max_length=4096, description="Question text")


class OperatorChatResponse(BaseModel):
    answer: str = Field(..., description="Text that would be sent to the user")
    outcome: str = Field(..., description="answered, degraded or failed")


class ChatRecordResponse(BaseModel):
    id: int
    user_id: str
    question: str
    answer: str
    created_at: str

    model_config = {"from_attributes": True}


class ChatRecordsListResponse(BaseModel):
    """
    Response model for GET /chat-records with pagination.
    """
    data: list[ChatRecordResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Records matching filters (ignoring limit/offset)")
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
