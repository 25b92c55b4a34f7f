from fastapi import APIRouter, Depends, HTTPException, status, Query, Request, Response
from uuid import UUID
from typing import List, Optional
from fastapi_limiter.depends import RateLimiter
from app.core.exceptions import NotFoundError, ConfigurationError, SmsDeliveryError
from app.core.logging import logger
from app.dependencies.auth import get_admin_user
from app.dependencies.services import get_queue_processor, get_settings_store
from app.models.message_queue import MessageStatus
from app.repositories.app_settings import SettingsStore
from app.schemas.notification import (
    QueuedMessageResponse,
    QueueStatsResponse,
    SmsTestRequest,
    SmsTestResponse,
    SmsTemplatesUpdate,
    SmsTemplatesReset,
    SmsTemplatesResponse,
)
from app.services.queue_processor import QueueProcessor
from app.services.sms import load_sms_templates, save_sms_templates, reset_sms_templates, send_test_sms

router = APIRouter(prefix="/api/v1/sms", tags=["sms"])

MAX_LIST_LIMIT = 500

async def rate_limit_callback(request: Request, response: Response, pexpire: int):
    """Custom callback for rate limit exceeded."""
    client_ip = request.client.host if request.client else "unknown"
    logger.warning("Rate limit exceeded", ip=client_ip, path=request.url.path, retry_after_ms=pexpire)
    raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too Many Requests")

# Shared by the endpoints that call the SMS gateway directly
gateway_rate_limiter = RateLimiter(times=10, seconds=60, callback=rate_limit_callback)

@router.get("/queue", response_model=List[QueuedMessageResponse])
async def list_queue(
    status_filter: str = Query(MessageStatus.PENDING, alias="status"),
    limit: int = Query(100, ge=1),
    current_user: dict = Depends(get_admin_user),
    processor: QueueProcessor = Depends(get_queue_processor),
):
    """Queued messages in one status, newest first."""
    try:
        messages = await processor.list_messages(status_filter, min(limit, MAX_LIST_LIMIT))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return [QueuedMessageResponse.model_validate(m) for m in messages]

@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(
    current_user: dict = Depends(get_admin_user),
    processor: QueueProcessor = Depends(get_queue_processor),
):
    return QueueStatsResponse(**await processor.get_queue_stats())

@router.post("/queue/{id}/retry", dependencies=[Depends(gateway_rate_limiter)])
async def retry_message(
    id: UUID,
    current_user: dict = Depends(get_admin_user),
    processor: QueueProcessor = Depends(get_queue_processor),
):
    """Reset a message and attempt delivery immediately."""
    try:
        delivered = await processor.retry(id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"id": str(id), "delivered": delivered}

@router.delete("/queue/{id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_message(
    id: UUID,
    current_user: dict = Depends(get_admin_user),
    processor: QueueProcessor = Depends(get_queue_processor),
):
    try:
        cancelled = await processor.cancel(id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if not cancelled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only pending messages can be cancelled")
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.post("/test", response_model=SmsTestResponse, dependencies=[Depends(gateway_rate_limiter)])
async def send_test_message(
    payload: Optional[SmsTestRequest] = None,
    current_user: dict = Depends(get_admin_user),
    processor: QueueProcessor = Depends(get_queue_processor),
    settings_store: SettingsStore = Depends(get_settings_store),
):
    """Send a sample registration text now, bypassing the queue."""
    channel = processor.channel
    if channel is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="SMS service is not configured")
    templates = await load_sms_templates(settings_store)
    try:
        destination = await send_test_sms(channel, payload.phone if payload else None, templates)
    except (ValueError, ConfigurationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SmsDeliveryError as e:
        logger.error("Test SMS failed", error=str(e), provider=channel.provider)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return SmsTestResponse(success=True, destination=destination, provider=channel.provider)

@router.get("/templates", response_model=SmsTemplatesResponse)
async def get_templates(
    current_user: dict = Depends(get_admin_user),
    settings_store: SettingsStore = Depends(get_settings_store),
):
    template_set = await load_sms_templates(settings_store)
    return SmsTemplatesResponse(language=template_set.language, templates=template_set.templates)

@router.put("/templates", response_model=SmsTemplatesResponse)
async def update_templates(
    payload: SmsTemplatesUpdate,
    current_user: dict = Depends(get_admin_user),
    settings_store: SettingsStore = Depends(get_settings_store),
):
    """Replace some or all of the device texts; omitted ones keep their current value."""
    updates = payload.model_dump(exclude_none=True)
    language = updates.pop("language", None)
    try:
        template_set = await save_sms_templates(settings_store, updates, language)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return SmsTemplatesResponse(language=template_set.language, templates=template_set.templates)

@router.post("/templates/reset", response_model=SmsTemplatesResponse)
async def reset_templates(
    payload: Optional[SmsTemplatesReset] = None,
    current_user: dict = Depends(get_admin_user),
    settings_store: SettingsStore = Depends(get_settings_store),
):
    language = payload.language if payload else "english"
    template_set = await reset_sms_templates(settings_store, language)
    return SmsTemplatesResponse(language=template_set.language, templates=template_set.templates)
