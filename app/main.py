from fastapi import FastAPI
from contextlib import asynccontextmanager
from app.config import settings
from app.core.logging import configure_logging, logger
from app.database import build_engine, build_session_factory, init_db
from app.repositories.app_settings import SqlSettingsStore
from app.repositories.message_queue import SqlMessageQueueStore
from app.repositories.notifications import SqlNotificationStore
from app.routers import notifications, sms_queue
from app.services.catalog import ensure_default_catalog
from app.services.email import EmailChannel
from app.services.notification import NotificationService
from app.services.queue_processor import QueueProcessor
from app.services.sms import SmsChannel, load_sms_config
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi_limiter import FastAPILimiter
from redis.asyncio import Redis

CLEANUP_JOB_ID = "cleanup_expired_notifications"

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Notification service starting up...")

    engine = build_engine()
    session_factory = build_session_factory(engine)
    await init_db(engine)
    created = await ensure_default_catalog(session_factory)
    logger.info("Default notification catalog ensured", created=created)

    redis = Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT, db=0)
    await FastAPILimiter.init(redis)
    logger.info("FastAPI-Limiter initialized.")

    sms_channel = SmsChannel(await load_sms_config(session_factory))
    email_channel = EmailChannel()
    queue_store = SqlMessageQueueStore(session_factory, default_max_attempts=settings.SMS_MAX_ATTEMPTS)
    notification_service = NotificationService(
        SqlNotificationStore(session_factory),
        queue_store=queue_store,
        email_channel=email_channel,
        sms_channel=sms_channel,
    )

    scheduler = AsyncIOScheduler()
    processor = QueueProcessor(queue_store, scheduler, batch_size=settings.SMS_QUEUE_BATCH_SIZE)
    processor.attach_channel(sms_channel)
    scheduler.add_job(
        notification_service.cleanup_expired_notifications,
        IntervalTrigger(minutes=settings.NOTIFICATION_CLEANUP_INTERVAL_MINUTES),
        id=CLEANUP_JOB_ID,
        name="Remove expired notifications",
        misfire_grace_time=60,  # seconds
    )
    processor.start(interval_ms=settings.SMS_QUEUE_INTERVAL_SECONDS * 1000)
    logger.info("Scheduler started.")

    app.state.session_factory = session_factory
    app.state.settings_store = SqlSettingsStore(session_factory)
    app.state.notification_service = notification_service
    app.state.queue_processor = processor

    yield

    logger.info("Notification service shutting down...")
    processor.stop()
    # The asyncio executor cancels running jobs on shutdown
    if not await processor.wait_idle(timeout=settings.SMS_TIMEOUT_SECONDS):
        logger.warning("SMS processor tick still running at shutdown")
    scheduler.shutdown(wait=False)
    logger.info("Scheduler shut down.")

    await FastAPILimiter.close()
    logger.info("FastAPI-Limiter closed.")

    await engine.dispose()

def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(lifespan=lifespan, title="Repair Shop Notification Service", version="1.0.0")
    app.include_router(notifications.router)
    app.include_router(sms_queue.router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    return app

app = create_app()
