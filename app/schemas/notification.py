from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Dict, Any, Optional, List, Literal

Priority = Literal["low", "normal", "high", "urgent"]

class NotificationCreate(BaseModel):
    type_name: str
    recipient_id: UUID
    title: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    priority: Priority = "normal"
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    expires_at: Optional[datetime] = None

class NotificationResponse(BaseModel):
    id: UUID
    type_id: Optional[UUID]
    title: str
    message: str
    data: Optional[Dict[str, Any]]
    priority: str
    status: str
    recipient_id: UUID
    sender_id: Optional[UUID]
    related_entity_type: Optional[str]
    related_entity_id: Optional[str]
    expires_at: Optional[datetime]
    created_at: datetime
    read_at: Optional[datetime]

    class Config:
        from_attributes = True

class ChannelOutcomeResponse(BaseModel):
    channel: str
    status: str
    detail: Optional[str] = None

    class Config:
        from_attributes = True

class NotificationCreatedResponse(BaseModel):
    notification: NotificationResponse
    channels: List[ChannelOutcomeResponse]
    degraded: bool

class TypeSummary(BaseModel):
    """Empty placeholder when the notification's type row is gone."""
    id: Optional[UUID] = None
    name: str = ""
    category: str = ""

class SenderSummary(BaseModel):
    id: UUID
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

class NotificationWithDetails(BaseModel):
    id: UUID
    title: str
    message: str
    priority: str
    status: str
    created_at: datetime
    read_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    data: Optional[Dict[str, Any]] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    type: TypeSummary = Field(default_factory=TypeSummary)
    sender: Optional[SenderSummary] = None

class UnreadCountResponse(BaseModel):
    count: int

class MarkAllReadResponse(BaseModel):
    updated: int

class NotificationTypeResponse(BaseModel):
    id: UUID
    name: str
    display_name: str
    category: str
    description: Optional[str]
    is_active: bool

    class Config:
        from_attributes = True

class PreferenceUpdate(BaseModel):
    enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    in_app_enabled: Optional[bool] = None

class PreferenceResponse(BaseModel):
    user_id: UUID
    type_id: UUID
    enabled: bool
    email_enabled: bool
    sms_enabled: bool
    push_enabled: bool
    in_app_enabled: bool
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True

class PreferenceWithType(BaseModel):
    preference: PreferenceResponse
    type: Optional[NotificationTypeResponse]

class QueuedMessageResponse(BaseModel):
    id: UUID
    destination: str
    body: str
    message_kind: Optional[str]
    status: str
    attempts: int
    max_attempts: int
    last_attempt_at: Optional[datetime]
    error_message: Optional[str]
    context: Optional[Dict[str, Any]]
    created_at: datetime
    sent_at: Optional[datetime]

    class Config:
        from_attributes = True

class QueueStatsResponse(BaseModel):
    pending: int
    sent: int
    failed: int
    cancelled: int
    total: int

TemplateLanguage = Literal["english", "amharic"]

class SmsTestRequest(BaseModel):
    phone: Optional[str] = None

class SmsTestResponse(BaseModel):
    success: bool
    destination: str
    provider: str

class SmsTemplatesUpdate(BaseModel):
    device_registration: Optional[str] = None
    status_update: Optional[str] = None
    ready_for_pickup: Optional[str] = None
    delivered: Optional[str] = None
    language: Optional[TemplateLanguage] = None

class SmsTemplatesReset(BaseModel):
    language: TemplateLanguage = "english"

class SmsTemplatesResponse(BaseModel):
    language: str
    templates: Dict[str, str]
