"""Default notification types and templates, inserted at startup when missing."""
from typing import List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.logging import logger
from app.models.notification import NotificationType, NotificationTemplate

DEFAULT_CATALOG: List[Dict[str, Any]] = [
    {
        "name": "system_alert",
        "display_name": "System Alert",
        "category": "system",
        "description": "System-wide notifications and alerts",
        "template": {
            "title": "System Notification",
            "message": "You have a new system notification",
        },
    },
    {
        "name": "device_registered",
        "display_name": "Device Registered",
        "category": "devices",
        "description": "Notifications when devices are registered",
        "template": {
            "title": "Device Registered",
            "message": "A new device has been registered in the system",
            "email_subject": "Device registered: {receipt_number}",
            "email_body": (
                "{customer_name}'s {device_type} {brand} {model} was registered for {service_type}.\n"
                "Problem: {problem_description}"
            ),
            "sms_message": "New device for {customer_name}: {device_type} {brand} {model} ({receipt_number}).",
        },
    },
    {
        "name": "device_status_change",
        "display_name": "Device Status Change",
        "category": "devices",
        "description": "Notifications when device status changes",
        "template": {
            "title": "Device Status Updated",
            "message": "The status of a device has been updated",
            "email_subject": "Device {receipt_number} is now {status}",
            "email_body": (
                "The {device_type} {brand} {model} of {customer_name} moved to {status}.\n"
                "Total cost: {total_cost}"
            ),
            "sms_message": "{customer_name}'s {device_type} ({receipt_number}) is now {status}.",
        },
    },
    {
        "name": "low_stock_alert",
        "display_name": "Low Stock Alert",
        "category": "inventory",
        "description": "Notifications for low inventory items",
        "template": {
            "title": "Low Stock Alert",
            "message": "An inventory item is running low on stock",
            "email_subject": "Low stock: {item_name}",
            "email_body": "{item_name} is down to {quantity} units.",
        },
    },
    {
        "name": "customer_feedback",
        "display_name": "Customer Feedback",
        "category": "customers",
        "description": "Notifications for customer feedback",
        "template": {
            "title": "Customer Feedback",
            "message": "You have received new customer feedback",
            "email_subject": "New feedback from {customer_name}",
            "email_body": "{customer_name} rated {service_type} {rating}/5.\n{comment}",
        },
    },
    {
        "name": "maintenance_reminder",
        "display_name": "Maintenance Reminder",
        "category": "system",
        "description": "System maintenance reminders",
        "template": {
            "title": "Maintenance Reminder",
            "message": "System maintenance is scheduled",
        },
    },
    {
        "name": "security_alert",
        "display_name": "Security Alert",
        "category": "security",
        "description": "Security-related notifications",
        "template": {
            "title": "Security Alert",
            "message": "A security-related event has occurred",
        },
    },
]


async def ensure_default_catalog(session_factory: async_sessionmaker, catalog: List[Dict[str, Any]] = None) -> int:
    """Insert every missing type, and a template for types that have none. Returns the number of types created."""
    created = 0
    async with session_factory() as session:
        for entry in catalog or DEFAULT_CATALOG:
            fields = {k: v for k, v in entry.items() if k != "template"}
            result = await session.execute(select(NotificationType).where(NotificationType.name == fields["name"]))
            notification_type = result.scalar_one_or_none()
            if notification_type is None:
                notification_type = NotificationType(**fields)
                session.add(notification_type)
                await session.flush()
                created += 1
                logger.info("Created notification type", name=fields["name"])

            existing_template = await session.execute(
                select(NotificationTemplate.id).where(NotificationTemplate.type_id == notification_type.id).limit(1)
            )
            if existing_template.scalar_one_or_none() is None:
                session.add(NotificationTemplate(type_id=notification_type.id, **entry["template"]))
        await session.commit()
    return created
