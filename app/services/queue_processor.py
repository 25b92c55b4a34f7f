"""Background delivery of queued SMS messages.

Each tick takes the oldest eligible messages and sends them one after the
other. A failed send costs one attempt; the message stays ``pending`` until
``max_attempts`` is reached and then becomes ``failed``. Success leaves the
attempt counter alone.
"""
import asyncio
from datetime import datetime, timezone
from typing import Optional, Dict, List
from uuid import UUID

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.exceptions import NotFoundError, SmsDeliveryError
from app.core.logging import logger
from app.models.message_queue import QueuedMessage, MessageStatus
from app.repositories.message_queue import MessageQueueStore
from app.services.sms import SmsChannel

DEFAULT_INTERVAL_MS = 30000
DEFAULT_BATCH_SIZE = 10


class QueueProcessor:
    JOB_ID = "sms_queue_processor"

    def __init__(self, store: MessageQueueStore, scheduler: AsyncIOScheduler,
                 channel: Optional[SmsChannel] = None, batch_size: int = DEFAULT_BATCH_SIZE):
        self.store = store
        self.scheduler = scheduler
        self.batch_size = batch_size
        self._channel = channel
        self._is_processing = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def channel(self) -> Optional[SmsChannel]:
        return self._channel

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def attach_channel(self, channel: SmsChannel) -> None:
        """Ticks are skipped until a channel is attached."""
        self._channel = channel
        logger.info("SMS channel attached to processor", enabled=channel.is_enabled())

    def start(self, interval_ms: int = DEFAULT_INTERVAL_MS) -> None:
        logger.info("Starting SMS processor", interval_ms=interval_ms, batch_size=self.batch_size)
        self.scheduler.add_job(
            self.process_pending,
            IntervalTrigger(seconds=interval_ms / 1000),
            id=self.JOB_ID,
            name="Process SMS queue",
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),  # first tick right away
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

    def stop(self) -> None:
        """Cancel future ticks. A tick already running is left to finish."""
        try:
            self.scheduler.remove_job(self.JOB_ID)
        except JobLookupError:
            return
        logger.info("SMS processor stopped")

    async def process_pending(self) -> int:
        """Run one tick and return how many messages were attempted. Never raises."""
        if self._is_processing:
            logger.debug("SMS processor already running, skipping")
            return 0
        if self._channel is None:
            logger.debug("SMS channel not initialized yet, skipping")
            return 0

        self._is_processing = True
        self._idle.clear()
        attempted = 0
        try:
            messages = await self.store.select_eligible(self.batch_size)
            if messages:
                logger.info("Processing pending SMS messages", count=len(messages))
            for message in messages:
                attempted += 1
                try:
                    await self._deliver(message)
                except Exception as e:
                    # Outcome could not be recorded; the row is still pending and will be picked up again
                    logger.error("Could not record SMS outcome", sms_id=str(message.id), error=str(e))
        except Exception as e:
            logger.error("Error in SMS processor", error=str(e), exc_info=True)
        finally:
            self._is_processing = False
            self._idle.set()
        return attempted

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for a running tick to finish. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _deliver(self, message: QueuedMessage) -> bool:
        try:
            if self._channel is None:
                raise SmsDeliveryError("SMS channel not available")
            delivered = await self._channel.send(message.destination, message.body)
            if not delivered:
                raise SmsDeliveryError("SMS gateway reported failure")
        except Exception as e:
            await self._record_failure(message, e)
            return False

        await self.store.mark_sent(message.id)
        logger.info(
            "SMS sent successfully",
            sms_id=str(message.id),
            destination=message.destination,
            kind=message.message_kind,
            attempt=message.attempts + 1,
        )
        return True

    async def _record_failure(self, message: QueuedMessage, error: Exception) -> None:
        attempts = message.attempts + 1
        error_message = str(error) or type(error).__name__
        is_terminal = attempts >= message.max_attempts

        await self.store.mark_attempt_failed(message.id, error_message, attempts, is_terminal)

        context = dict(
            sms_id=str(message.id),
            destination=message.destination,
            kind=message.message_kind,
            attempts=attempts,
            max_attempts=message.max_attempts,
            error=error_message,
        )
        if is_terminal:
            logger.error("SMS delivery failed - max attempts reached", **context)
        else:
            logger.warning("SMS send failed, will retry", **context)

    async def retry(self, message_id: UUID) -> bool:
        """Operator override: reset a message and try to deliver it right now."""
        message = await self.store.get(message_id)
        if message is None:
            raise NotFoundError("SMS message", message_id)

        await self.store.reset_for_retry(message_id)
        logger.info(
            "Manual SMS retry initiated",
            sms_id=str(message_id),
            destination=message.destination,
            previous_status=message.status,
            previous_attempts=message.attempts,
        )

        message = await self.store.get(message_id)
        if message is None:
            raise NotFoundError("SMS message", message_id)
        return await self._deliver(message)

    async def cancel(self, message_id: UUID) -> bool:
        """Withdraw a pending message. Returns False when it is no longer pending."""
        message = await self.store.get(message_id)
        if message is None:
            raise NotFoundError("SMS message", message_id)
        cancelled = await self.store.cancel(message_id)
        if cancelled:
            logger.info("SMS message cancelled", sms_id=str(message_id))
        return cancelled

    async def list_messages(self, status: str, limit: int = 100) -> List[QueuedMessage]:
        if status not in MessageStatus.ALL:
            raise ValueError(f"Invalid message status: {status}")
        return await self.store.list_by_status(status, limit)

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self.store.counts_by_status()
