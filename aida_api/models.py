"""Pydantic models for AIDA engine requests and responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from aida_libs.memory.models import utc_now


class CustomerInfo(BaseModel):
    """Customer details supplied by the channel integration."""

    name: Optional[str] = Field(default=None, description="Display name of the customer")
    phone: Optional[str] = Field(default=None, description="Channel address, e.g. WhatsApp number")
    language: Optional[str] = Field(default=None, description="Preferred language code")


class ResponseRequest(BaseModel):
    """Request for a generated reply to a customer message.

    Identifiers default to empty strings so that missing values are reported
    through the result envelope like any other validation failure.
    """

    message: str = Field(default="", description="Customer message text")
    conversation_id: str = Field(default="", description="Conversation identifier")
    assistant_id: str = Field(default="", description="Assistant answering the message")
    business_id: str = Field(default="", description="Tenant owning the conversation")
    user_id: Optional[str] = Field(default=None, description="End-user identifier")
    customer: Optional[CustomerInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CustomerProfile(BaseModel):
    name: Optional[str] = None
    sentiment: Literal["positive", "neutral", "negative"] = "neutral"
    language: str = "en"


class GeneratedResponse(BaseModel):
    """Reply produced by the pipeline."""

    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    should_escalate: bool = False
    query_type: Optional[str] = None
    sources: List[str] = Field(default_factory=list, description="Knowledge node ids used")
    messages: List[str] = Field(default_factory=list, description="Content split for the channel")
    token_usage: Dict[str, int] = Field(default_factory=dict)
    quality_flags: List[str] = Field(default_factory=list)


class ErrorInfo(BaseModel):
    type: str
    message: str
    retryable: bool = False


class ResponseMetadata(BaseModel):
    request_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    conversation_id: str = ""
    assistant_id: str = ""
    business_id: str = ""
    processing_time_ms: float = 0.0
    fallback_used: bool = False
    context_confidence: Optional[float] = None
    persisted: Optional[bool] = None
    stages_completed: List[str] = Field(default_factory=list)


class ResponseResult(BaseModel):
    """Envelope returned for every request, successful or not."""

    success: bool
    response: Optional[GeneratedResponse] = None
    error: Optional[ErrorInfo] = None
    metadata: ResponseMetadata


class MemoryContextRequest(BaseModel):
    conversation_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    assistant_id: str = Field(min_length=1)
    business_id: Optional[str] = Field(default=None, description="Defaults to the assistant's business")


class HealthResponse(BaseModel):
    """Response model for health check endpoints.

    Attributes:
        status: Health status (healthy/unhealthy/ready/not_ready)
        service: Service name
        version: Service version
        timestamp: Unix timestamp
        details: Optional additional details
    """

    status: Literal["healthy", "unhealthy", "ready", "not_ready"] = Field(description="Health status")
    service: str = Field(description="Service name")
    version: str = Field(description="Service version")
    timestamp: float = Field(description="Unix timestamp")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional details")
