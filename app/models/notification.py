from sqlalchemy import Column, String, Text, TIMESTAMP, Boolean, ForeignKey, JSON, Uuid, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from app.utils.time import utcnow
import uuid

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


class NotificationPriority:
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    ALL = (LOW, NORMAL, HIGH, URGENT)


class NotificationStatus:
    UNREAD = "unread"
    READ = "read"
    ARCHIVED = "archived"
    ALL = (UNREAD, READ, ARCHIVED)


# Defaults applied when a (user, type) pair has no preference row yet
PREFERENCE_DEFAULTS = {
    "enabled": True,
    "email_enabled": True,
    "sms_enabled": False,
    "push_enabled": True,
    "in_app_enabled": True,
}


class NotificationType(Base):
    __tablename__ = "notification_types"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False, unique=True)
    display_name = Column(String(200), nullable=False)
    category = Column(String(50), nullable=False, default="general")
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP, default=utcnow)

    def __repr__(self):
        return f"<NotificationType(name='{self.name}', category='{self.category}')>"


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type_id = Column(Uuid, ForeignKey("notification_types.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    email_subject = Column(String(255), nullable=True)
    email_body = Column(Text, nullable=True)
    sms_message = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP, default=utcnow)

    @property
    def has_email(self) -> bool:
        return bool(self.email_subject and self.email_body)

    @property
    def has_sms(self) -> bool:
        return bool(self.sms_message)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type_id = Column(Uuid, ForeignKey("notification_types.id"), nullable=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONType, nullable=True)
    priority = Column(String(10), nullable=False, default=NotificationPriority.NORMAL)
    status = Column(String(10), nullable=False, default=NotificationStatus.UNREAD)
    recipient_id = Column(Uuid, nullable=False)
    sender_id = Column(Uuid, nullable=True)
    # Lookup-only back-reference to whatever triggered the notification
    related_entity_type = Column(String(50), nullable=True)
    related_entity_id = Column(String(64), nullable=True)
    expires_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    read_at = Column(TIMESTAMP, nullable=True)

    __table_args__ = (
        Index("ix_notifications_recipient_status", "recipient_id", "status"),
    )

    def __repr__(self):
        return f"<Notification(id='{self.id}', recipient_id='{self.recipient_id}', status='{self.status}')>"


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id = Column(Uuid, primary_key=True)
    type_id = Column(Uuid, ForeignKey("notification_types.id"), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=True)
    email_enabled = Column(Boolean, nullable=False, default=True)
    sms_enabled = Column(Boolean, nullable=False, default=False)
    push_enabled = Column(Boolean, nullable=False, default=True)
    in_app_enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)
