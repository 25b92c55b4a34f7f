from sqlalchemy import Column, String, Text, TIMESTAMP, Integer, Uuid, Index
from app.models.notification import Base, JSONType
from app.utils.time import utcnow
import uuid


class MessageStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ALL = (PENDING, SENT, FAILED, CANCELLED)
    TERMINAL = (SENT, FAILED, CANCELLED)


class MessageKind:
    DEVICE_REGISTRATION = "device_registration"
    STATUS_UPDATE = "status_update"
    READY_FOR_PICKUP = "ready_for_pickup"
    DELIVERED = "delivered"
    NOTIFICATION = "notification"


DEFAULT_MAX_ATTEMPTS = 3


class QueuedMessage(Base):
    __tablename__ = "sms_queue"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    destination = Column(String(20), nullable=False)
    body = Column(Text, nullable=False)
    message_kind = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    last_attempt_at = Column(TIMESTAMP, nullable=True)
    error_message = Column(Text, nullable=True)
    # device id, receipt number, customer id, notification id...
    context = Column(JSONType, nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    sent_at = Column(TIMESTAMP, nullable=True)

    __table_args__ = (
        Index("ix_sms_queue_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in MessageStatus.TERMINAL

    def __repr__(self):
        return f"<QueuedMessage(id='{self.id}', kind='{self.message_kind}', status='{self.status}', attempts={self.attempts})>"
