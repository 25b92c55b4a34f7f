"""Storage for notification types, templates, in-app notifications and preferences."""
from datetime import datetime
from typing import Protocol, Optional, List, Dict, Any, Tuple, NamedTuple
from uuid import UUID, uuid4

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.database import dialect_insert
from app.models.notification import (
    Notification,
    NotificationType,
    NotificationTemplate,
    NotificationPreference,
    NotificationStatus,
    PREFERENCE_DEFAULTS,
)
from app.models.shop import User, Customer, Device, DeviceType, Brand, DeviceModel, ServiceType
from app.utils.time import utcnow


class DeviceDetails(NamedTuple):
    device: Device
    customer: Optional[Customer]
    device_type: Optional[DeviceType]
    brand: Optional[Brand]
    model: Optional[DeviceModel]
    service_type: Optional[ServiceType]


NotificationRow = Tuple[Notification, Optional[NotificationType], Optional[User]]
PreferenceRow = Tuple[NotificationPreference, Optional[NotificationType]]


class NotificationStore(Protocol):
    async def get_type_by_name(self, name: str) -> Optional[NotificationType]: ...

    async def list_types(self, active_only: bool = True) -> List[NotificationType]: ...

    async def get_active_template(self, type_id: UUID) -> Optional[NotificationTemplate]: ...

    async def add_notification(self, **fields: Any) -> Notification: ...

    async def list_for_user(self, user_id: UUID, status: Optional[str], limit: int, offset: int,
                            include_expired: bool, now: datetime) -> List[NotificationRow]: ...

    async def update_owned(self, notification_id: UUID, user_id: UUID, **values: Any) -> Optional[Notification]: ...

    async def mark_all_read(self, user_id: UUID, now: datetime) -> int: ...

    async def count_unread(self, user_id: UUID, now: datetime) -> int: ...

    async def delete_expired(self, now: datetime) -> int: ...

    async def upsert_preference(self, user_id: UUID, type_id: UUID, overrides: Dict[str, bool]) -> NotificationPreference: ...

    async def list_preferences(self, user_id: UUID) -> List[PreferenceRow]: ...

    async def get_user(self, user_id: UUID) -> Optional[User]: ...

    async def get_device_details(self, device_id: UUID) -> Optional[DeviceDetails]: ...


class SqlNotificationStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    # Types and templates

    async def get_type_by_name(self, name: str) -> Optional[NotificationType]:
        async with self._session_factory() as session:
            result = await session.execute(select(NotificationType).where(NotificationType.name == name).limit(1))
            return result.scalar_one_or_none()

    async def list_types(self, active_only: bool = True) -> List[NotificationType]:
        stmt = select(NotificationType).order_by(NotificationType.category, NotificationType.name)
        if active_only:
            stmt = stmt.where(NotificationType.is_active.is_(True))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_active_template(self, type_id: UUID) -> Optional[NotificationTemplate]:
        stmt = (
            select(NotificationTemplate)
            .where(NotificationTemplate.type_id == type_id, NotificationTemplate.is_active.is_(True))
            .order_by(NotificationTemplate.created_at.asc())
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    # In-app notifications

    async def add_notification(self, **fields: Any) -> Notification:
        fields.setdefault("id", uuid4())
        fields.setdefault("created_at", utcnow())
        notification = Notification(**fields)
        async with self._session_factory() as session:
            session.add(notification)
            await session.commit()
            await session.refresh(notification)
        return notification

    @staticmethod
    def _not_expired(now: datetime):
        return or_(Notification.expires_at.is_(None), Notification.expires_at > now)

    async def list_for_user(self, user_id: UUID, status: Optional[str], limit: int, offset: int,
                            include_expired: bool, now: datetime) -> List[NotificationRow]:
        stmt = (
            select(Notification, NotificationType, User)
            .outerjoin(NotificationType, Notification.type_id == NotificationType.id)
            .outerjoin(User, Notification.sender_id == User.id)
            .where(Notification.recipient_id == user_id)
        )
        if status:
            stmt = stmt.where(Notification.status == status)
        if not include_expired:
            stmt = stmt.where(self._not_expired(now))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit).offset(offset)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [tuple(row) for row in result.all()]

    async def update_owned(self, notification_id: UUID, user_id: UUID, **values: Any) -> Optional[Notification]:
        """Update a notification only when ``user_id`` is its recipient."""
        ownership = (Notification.id == notification_id, Notification.recipient_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(update(Notification).where(*ownership).values(**values))
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            refreshed = await session.execute(select(Notification).where(*ownership))
            return refreshed.scalar_one_or_none()

    async def mark_all_read(self, user_id: UUID, now: datetime) -> int:
        stmt = (
            update(Notification)
            .where(Notification.recipient_id == user_id, Notification.status == NotificationStatus.UNREAD)
            .values(status=NotificationStatus.READ, read_at=now)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount

    async def count_unread(self, user_id: UUID, now: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(Notification)
            .where(
                Notification.recipient_id == user_id,
                Notification.status == NotificationStatus.UNREAD,
                self._not_expired(now),
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def delete_expired(self, now: datetime) -> int:
        stmt = delete(Notification).where(Notification.expires_at.is_not(None), Notification.expires_at < now)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount

    # Preferences

    async def upsert_preference(self, user_id: UUID, type_id: UUID, overrides: Dict[str, bool]) -> NotificationPreference:
        """Insert the (user, type) row with defaults, or update the given flags if it exists.

        With no overrides an existing row is left untouched.
        """
        now = utcnow()
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = insert(NotificationPreference).values(
                user_id=user_id, type_id=type_id, updated_at=now, **{**PREFERENCE_DEFAULTS, **overrides}
            )
            if overrides:
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "type_id"],
                    set_={**overrides, "updated_at": now},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "type_id"])
            await session.execute(stmt)

            result = await session.execute(
                select(NotificationPreference)
                .where(NotificationPreference.user_id == user_id, NotificationPreference.type_id == type_id)
                .execution_options(populate_existing=True)
            )
            preference = result.scalar_one()
            await session.commit()
        return preference

    async def list_preferences(self, user_id: UUID) -> List[PreferenceRow]:
        stmt = (
            select(NotificationPreference, NotificationType)
            .outerjoin(NotificationType, NotificationPreference.type_id == NotificationType.id)
            .where(NotificationPreference.user_id == user_id)
            .order_by(NotificationType.name)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [tuple(row) for row in result.all()]

    # Host lookups

    async def get_user(self, user_id: UUID) -> Optional[User]:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def get_device_details(self, device_id: UUID) -> Optional[DeviceDetails]:
        stmt = (
            select(Device, Customer, DeviceType, Brand, DeviceModel, ServiceType)
            .outerjoin(Customer, Device.customer_id == Customer.id)
            .outerjoin(DeviceType, Device.device_type_id == DeviceType.id)
            .outerjoin(Brand, Device.brand_id == Brand.id)
            .outerjoin(DeviceModel, Device.model_id == DeviceModel.id)
            .outerjoin(ServiceType, Device.service_type_id == ServiceType.id)
            .where(Device.id == device_id)
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.first()
        return DeviceDetails(*row) if row else None
