from fastapi import APIRouter, Depends, HTTPException, status, Query
from uuid import UUID
from typing import List
from app.core.exceptions import NotFoundError
from app.schemas.notification import (
    NotificationCreate,
    NotificationResponse,
    NotificationCreatedResponse,
    ChannelOutcomeResponse,
    NotificationWithDetails,
    UnreadCountResponse,
    MarkAllReadResponse,
    NotificationTypeResponse,
    PreferenceUpdate,
    PreferenceResponse,
    PreferenceWithType,
)
from app.services.notification import NotificationService
from app.dependencies.auth import get_current_user, get_admin_or_internal_user
from app.dependencies.services import get_notification_service
from app.core.logging import logger

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

@router.get("", response_model=List[NotificationWithDetails])
async def list_notifications(
    status_filter: str = Query("all", alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    include_expired: bool = Query(False),
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    """The caller's notifications, newest first."""
    try:
        return await service.get_user_notifications(
            current_user["user_id"], status=status_filter, limit=limit, offset=offset, include_expired=include_expired
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.post("", response_model=NotificationCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_notification_endpoint(
    notification: NotificationCreate,
    current_user: dict = Depends(get_admin_or_internal_user),
    service: NotificationService = Depends(get_notification_service),
):
    """Create a notification for a user and fan it out to their enabled channels."""
    try:
        result = await service.create_notification(
            notification.type_name,
            notification.recipient_id,
            title=notification.title,
            message=notification.message,
            data=notification.data,
            priority=notification.priority,
            sender_id=current_user["user_id"],
            related_entity_type=notification.related_entity_type,
            related_entity_id=notification.related_entity_id,
            expires_at=notification.expires_at,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if result.degraded:
        logger.warning("Notification created with delivery problems", notification_id=str(result.notification.id))
    return NotificationCreatedResponse(
        notification=NotificationResponse.model_validate(result.notification),
        channels=[ChannelOutcomeResponse.model_validate(o) for o in result.dispatch.outcomes],
        degraded=result.degraded,
    )

@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return UnreadCountResponse(count=await service.get_unread_count(current_user["user_id"]))

@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return MarkAllReadResponse(updated=await service.mark_all_as_read(current_user["user_id"]))

@router.post("/{id}/read", response_model=NotificationResponse)
async def mark_read(
    id: UUID,
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    notification = await service.mark_as_read(id, current_user["user_id"])
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return NotificationResponse.model_validate(notification)

@router.post("/{id}/archive", response_model=NotificationResponse)
async def archive(
    id: UUID,
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    notification = await service.archive_notification(id, current_user["user_id"])
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return NotificationResponse.model_validate(notification)

@router.get("/types", response_model=List[NotificationTypeResponse])
async def list_types(
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    types = await service.list_notification_types()
    return [NotificationTypeResponse.model_validate(t) for t in types]

@router.get("/preferences", response_model=List[PreferenceWithType])
async def get_preferences(
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return await service.get_user_preferences(current_user["user_id"])

@router.put("/preferences/{type_id}", response_model=PreferenceResponse)
async def update_preferences(
    type_id: UUID,
    update: PreferenceUpdate,
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    """Change channel flags for one notification type; omitted flags are left as they are."""
    preference = await service.update_preferences(current_user["user_id"], type_id, **update.model_dump())
    return PreferenceResponse.model_validate(preference)
