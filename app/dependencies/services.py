from fastapi import Request

from app.repositories.app_settings import SettingsStore
from app.services.notification import NotificationService
from app.services.queue_processor import QueueProcessor


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


def get_queue_processor(request: Request) -> QueueProcessor:
    return request.app.state.queue_processor


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.settings_store
