"""In-app notifications and their fan-out to email, SMS and push."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any
from uuid import UUID

from app.core.exceptions import NotFoundError
from app.core.logging import logger
from app.models.message_queue import MessageKind
from app.models.notification import (
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationStatus,
    NotificationTemplate,
    NotificationType,
    PREFERENCE_DEFAULTS,
)
from app.models.shop import User
from app.repositories.message_queue import MessageQueueStore
from app.repositories.notifications import NotificationStore, NotificationRow
from app.schemas.notification import (
    NotificationWithDetails,
    TypeSummary,
    SenderSummary,
    PreferenceResponse,
    PreferenceWithType,
    NotificationTypeResponse,
)
from app.services.email import EmailChannel
from app.services.sms import SmsChannel, normalize_phone_number
from app.services.sms_templates import render_template, format_currency
from app.utils.time import utcnow, to_naive_utc

DEFAULT_TITLE = "Notification"
DEFAULT_MESSAGE = "You have a new notification"


class Channel:
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    ALL = (EMAIL, SMS, PUSH)


class DispatchStatus:
    SENT = "sent"
    QUEUED = "queued"
    SKIPPED = "skipped"
    DISABLED = "disabled"
    NOT_IMPLEMENTED = "not_implemented"
    FAILED = "failed"


@dataclass
class ChannelOutcome:
    channel: str
    status: str
    detail: Optional[str] = None


@dataclass
class DispatchReport:
    """What happened on each external channel for one notification."""
    outcomes: List[ChannelOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def record(self, channel: str, status: str, detail: Optional[str] = None) -> None:
        self.outcomes.append(ChannelOutcome(channel, status, detail))

    def get(self, channel: str) -> Optional[ChannelOutcome]:
        for outcome in self.outcomes:
            if outcome.channel == channel:
                return outcome
        return None

    @property
    def degraded(self) -> bool:
        return self.error is not None or any(o.status == DispatchStatus.FAILED for o in self.outcomes)


@dataclass
class NotificationResult:
    notification: Notification
    dispatch: DispatchReport

    @property
    def degraded(self) -> bool:
        return self.dispatch.degraded


def _with_details(row: NotificationRow) -> NotificationWithDetails:
    notification, notification_type, sender = row
    type_summary = TypeSummary()
    if notification_type is not None:
        type_summary = TypeSummary(
            id=notification_type.id, name=notification_type.name, category=notification_type.category
        )
    sender_summary = None
    if sender is not None:
        sender_summary = SenderSummary(
            id=sender.id, username=sender.username, first_name=sender.first_name, last_name=sender.last_name
        )
    return NotificationWithDetails(
        id=notification.id,
        title=notification.title,
        message=notification.message,
        priority=notification.priority,
        status=notification.status,
        created_at=notification.created_at,
        read_at=notification.read_at,
        expires_at=notification.expires_at,
        data=notification.data,
        related_entity_type=notification.related_entity_type,
        related_entity_id=notification.related_entity_id,
        type=type_summary,
        sender=sender_summary,
    )


class NotificationService:
    def __init__(self, store: NotificationStore, queue_store: Optional[MessageQueueStore] = None,
                 email_channel: Optional[EmailChannel] = None, sms_channel: Optional[SmsChannel] = None):
        self.store = store
        self.queue_store = queue_store
        self.email_channel = email_channel
        self.sms_channel = sms_channel

    async def create_notification(
        self,
        type_name: str,
        recipient_id: UUID,
        title: Optional[str] = None,
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        priority: str = NotificationPriority.NORMAL,
        sender_id: Optional[UUID] = None,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> NotificationResult:
        """Persist an in-app notification and push it out on the recipient's channels.

        Raises ``NotFoundError`` for an unknown type name; nothing is written
        in that case. Delivery problems on external channels never raise and
        are reported in ``NotificationResult.dispatch`` instead.
        """
        if priority not in NotificationPriority.ALL:
            raise ValueError(f"Invalid priority: {priority}")

        notification_type = await self.store.get_type_by_name(type_name)
        if notification_type is None:
            raise NotFoundError("Notification type", type_name)

        template = await self.store.get_active_template(notification_type.id)
        notification = await self.store.add_notification(
            type_id=notification_type.id,
            title=title or (template.title if template else None) or DEFAULT_TITLE,
            message=message or (template.message if template else None) or DEFAULT_MESSAGE,
            data=data or {},
            priority=priority,
            status=NotificationStatus.UNREAD,
            recipient_id=recipient_id,
            sender_id=sender_id,
            related_entity_type=related_entity_type,
            related_entity_id=str(related_entity_id) if related_entity_id is not None else None,
            expires_at=to_naive_utc(expires_at),
        )
        logger.info(
            "Notification created",
            notification_id=str(notification.id),
            type=type_name,
            recipient_id=str(recipient_id),
            priority=priority,
        )

        dispatch = await self._send_external_notifications(notification, notification_type, template)
        return NotificationResult(notification=notification, dispatch=dispatch)

    async def _send_external_notifications(self, notification: Notification, notification_type: NotificationType,
                                           template: Optional[NotificationTemplate]) -> DispatchReport:
        report = DispatchReport()
        try:
            preference = await self.store.upsert_preference(notification.recipient_id, notification_type.id, {})
            if not preference.enabled:
                for channel in Channel.ALL:
                    report.record(channel, DispatchStatus.DISABLED, "notifications disabled for this type")
                return report

            wants_email = preference.email_enabled and template is not None and template.has_email
            wants_sms = preference.sms_enabled and template is not None and template.has_sms
            recipient = None
            if wants_email or wants_sms:
                recipient = await self.store.get_user(notification.recipient_id)

            context = {**(notification.data or {}), "title": notification.title, "message": notification.message}

            if not preference.email_enabled:
                report.record(Channel.EMAIL, DispatchStatus.DISABLED)
            elif not wants_email:
                report.record(Channel.EMAIL, DispatchStatus.SKIPPED, "template has no email content")
            else:
                await self._send_email(report, notification, template, recipient, context)

            if not preference.sms_enabled:
                report.record(Channel.SMS, DispatchStatus.DISABLED)
            elif not wants_sms:
                report.record(Channel.SMS, DispatchStatus.SKIPPED, "template has no SMS content")
            else:
                await self._queue_sms(report, notification, notification_type, template, recipient, context)

            if preference.push_enabled:
                logger.debug("Push notifications not implemented", notification_id=str(notification.id))
                report.record(Channel.PUSH, DispatchStatus.NOT_IMPLEMENTED)
            else:
                report.record(Channel.PUSH, DispatchStatus.DISABLED)
        except Exception as e:
            report.error = str(e)
            logger.error(
                "Error sending external notifications",
                notification_id=str(notification.id),
                error=str(e),
                exc_info=True,
            )
        return report

    async def _send_email(self, report: DispatchReport, notification: Notification, template: NotificationTemplate,
                          recipient: Optional[User], context: Dict[str, Any]) -> None:
        if self.email_channel is None or not self.email_channel.is_enabled():
            report.record(Channel.EMAIL, DispatchStatus.SKIPPED, "email channel not configured")
            return
        if recipient is None or not recipient.email:
            report.record(Channel.EMAIL, DispatchStatus.SKIPPED, "recipient has no email address")
            return
        try:
            message_id = await self.email_channel.send(
                recipient.email,
                render_template(template.email_subject, context),
                render_template(template.email_body, context),
            )
        except Exception as e:
            logger.error("Notification email failed", notification_id=str(notification.id), error=str(e))
            report.record(Channel.EMAIL, DispatchStatus.FAILED, str(e))
            return
        report.record(Channel.EMAIL, DispatchStatus.SENT, message_id)

    async def _queue_sms(self, report: DispatchReport, notification: Notification, notification_type: NotificationType,
                         template: NotificationTemplate, recipient: Optional[User], context: Dict[str, Any]) -> None:
        if self.queue_store is None:
            report.record(Channel.SMS, DispatchStatus.SKIPPED, "SMS queue not configured")
            return
        if recipient is None or not recipient.phone:
            report.record(Channel.SMS, DispatchStatus.SKIPPED, "recipient has no phone number")
            return

        destination = self.sms_channel.normalize(recipient.phone) if self.sms_channel else normalize_phone_number(recipient.phone)
        try:
            queued = await self.queue_store.enqueue(
                destination=destination,
                body=render_template(template.sms_message, context),
                message_kind=MessageKind.NOTIFICATION,
                context={
                    "notification_id": str(notification.id),
                    "type": notification_type.name,
                    "recipient_id": str(notification.recipient_id),
                },
            )
        except Exception as e:
            logger.error("Could not queue notification SMS", notification_id=str(notification.id), error=str(e))
            report.record(Channel.SMS, DispatchStatus.FAILED, str(e))
            return
        logger.info("Notification SMS queued", notification_id=str(notification.id), sms_id=str(queued.id))
        report.record(Channel.SMS, DispatchStatus.QUEUED, str(queued.id))

    async def get_user_notifications(self, user_id: UUID, status: str = "all", limit: int = 50, offset: int = 0,
                                     include_expired: bool = False) -> List[NotificationWithDetails]:
        if status != "all" and status not in NotificationStatus.ALL:
            raise ValueError(f"Invalid status filter: {status}")
        rows = await self.store.list_for_user(
            user_id,
            status=None if status == "all" else status,
            limit=limit,
            offset=offset,
            include_expired=include_expired,
            now=utcnow(),
        )
        return [_with_details(row) for row in rows]

    async def mark_as_read(self, notification_id: UUID, user_id: UUID) -> Optional[Notification]:
        return await self.store.update_owned(
            notification_id, user_id, status=NotificationStatus.READ, read_at=utcnow()
        )

    async def mark_all_as_read(self, user_id: UUID) -> int:
        updated = await self.store.mark_all_read(user_id, utcnow())
        logger.info("Notifications marked as read", user_id=str(user_id), count=updated)
        return updated

    async def archive_notification(self, notification_id: UUID, user_id: UUID) -> Optional[Notification]:
        return await self.store.update_owned(notification_id, user_id, status=NotificationStatus.ARCHIVED)

    async def get_unread_count(self, user_id: UUID) -> int:
        try:
            return await self.store.count_unread(user_id, utcnow())
        except Exception as e:
            logger.error("Error counting unread notifications", user_id=str(user_id), error=str(e))
            return 0

    async def cleanup_expired_notifications(self) -> int:
        deleted = await self.store.delete_expired(utcnow())
        if deleted:
            logger.info("Expired notifications removed", count=deleted)
        return deleted

    # Domain helpers

    async def create_device_notification(self, type_name: str, device_id: UUID, recipient_id: UUID,
                                         additional_data: Optional[Dict[str, Any]] = None) -> NotificationResult:
        details = await self.store.get_device_details(device_id)
        if details is None:
            raise NotFoundError("Device", device_id)

        device = details.device
        data = {
            "device_id": str(device_id),
            "receipt_number": device.receipt_number or "",
            "customer_name": details.customer.name if details.customer else "Unknown Customer",
            "device_type": details.device_type.name if details.device_type else "Unknown Device",
            "brand": details.brand.name if details.brand else "Unknown Brand",
            "model": details.model.name if details.model else "Not Specified",
            "service_type": details.service_type.name if details.service_type else "Unknown Service",
            "problem_description": device.problem_description or "No description",
            "status": device.status,
            "total_cost": format_currency(device.total_cost) if device.total_cost else "TBD",
            **(additional_data or {}),
        }
        return await self.create_notification(
            type_name,
            recipient_id,
            data=data,
            related_entity_type="device",
            related_entity_id=str(device_id),
        )

    async def create_inventory_notification(self, type_name: str, item_id: str, recipient_id: UUID,
                                            additional_data: Optional[Dict[str, Any]] = None) -> NotificationResult:
        return await self.create_notification(
            type_name,
            recipient_id,
            data={"item_id": str(item_id), **(additional_data or {})},
            related_entity_type="inventory",
            related_entity_id=str(item_id),
        )

    async def create_customer_feedback_notification(self, feedback_id: str, recipient_id: UUID, customer_name: str,
                                                    customer_email: str, service_type: str, rating: Optional[int] = None,
                                                    comment: Optional[str] = None) -> NotificationResult:
        return await self.create_notification(
            "customer_feedback",
            recipient_id,
            data={
                "feedback_id": str(feedback_id),
                "customer_name": customer_name,
                "customer_email": customer_email,
                "service_type": service_type,
                "rating": rating or 0,
                "comment": comment or "",
            },
            related_entity_type="customer_feedback",
            related_entity_id=str(feedback_id),
        )

    # Preferences

    async def get_user_preferences(self, user_id: UUID) -> List[PreferenceWithType]:
        rows = await self.store.list_preferences(user_id)
        return [
            PreferenceWithType(
                preference=PreferenceResponse.model_validate(preference),
                type=NotificationTypeResponse.model_validate(notification_type) if notification_type else None,
            )
            for preference, notification_type in rows
        ]

    async def update_preferences(self, user_id: UUID, type_id: UUID, enabled: Optional[bool] = None,
                                 email_enabled: Optional[bool] = None, sms_enabled: Optional[bool] = None,
                                 push_enabled: Optional[bool] = None,
                                 in_app_enabled: Optional[bool] = None) -> NotificationPreference:
        """Set the given flags; ``None`` keeps the stored value (or the default on first write)."""
        flags = dict(
            enabled=enabled,
            email_enabled=email_enabled,
            sms_enabled=sms_enabled,
            push_enabled=push_enabled,
            in_app_enabled=in_app_enabled,
        )
        overrides = {key: value for key, value in flags.items() if value is not None and key in PREFERENCE_DEFAULTS}
        preference = await self.store.upsert_preference(user_id, type_id, overrides)
        logger.info("Notification preferences updated", user_id=str(user_id), type_id=str(type_id), **overrides)
        return preference

    async def list_notification_types(self) -> List[NotificationType]:
        return await self.store.list_types(active_only=True)
