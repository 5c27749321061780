"""
Request/response schemas for the ingestion and management endpoints.
"""
import uuid
from typing import Any, Optional
from pydantic import BaseModel, Field

from hookrelay.schemas.webhook_config import (
    FilterConfig,
    ForwardingConfig,
    ForwardingRule,
    HttpMethod,
    NotificationConfig,
    RetentionConfig,
    SecurityConfig,
    TransformationConfig,
)


class ReceiveResponse(BaseModel):
    success: bool = True
    message: str = "Webhook received"
    requestId: str


class WebhookCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    project_id: Optional[uuid.UUID] = None
    forwarding: ForwardingConfig = Field(default_factory=ForwardingConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    rules: list[ForwardingRule] = Field(default_factory=list)
    transformation: TransformationConfig = Field(default_factory=TransformationConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    expires_in: Optional[int] = Field(default=None, ge=1)  # seconds from now


class WebhookUpdateRequest(BaseModel):
    """
    Partial update. Nested sections are raw dicts merged over the stored
    section and re-validated, so callers can send just the keys they change.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = Field(default=None, pattern="^(active|paused)$")
    forwarding: Optional[dict] = None
    security: Optional[dict] = None
    filters: Optional[dict] = None
    rules: Optional[list[ForwardingRule]] = None
    transformation: Optional[dict] = None
    notifications: Optional[dict] = None
    retention: Optional[dict] = None
    expires_in: Optional[int] = Field(default=None, ge=1)


class ResendRequest(BaseModel):
    """Overrides for a resend. Omitted fields keep the original's values."""
    method: Optional[HttpMethod] = None
    headers: Optional[dict[str, str]] = None
    body: Any = None


class SignatureTestRequest(BaseModel):
    body: str = ""


class SignatureTestResponse(BaseModel):
    header_name: str
    algorithm: str
    encoding: str
    signature: str
    header_value: str
