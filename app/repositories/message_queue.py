"""Durable SMS queue storage.

All state transitions of a queued message go through ``mark_sent``,
``mark_attempt_failed``, ``reset_for_retry`` and ``cancel``; each is a single
UPDATE in its own transaction so ``attempts`` and ``status`` never drift apart.
"""
from typing import Protocol, Optional, List, Dict, Any
from uuid import UUID, uuid4

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.message_queue import QueuedMessage, MessageStatus, DEFAULT_MAX_ATTEMPTS
from app.utils.time import utcnow


class MessageQueueStore(Protocol):
    async def enqueue(self, destination: str, body: str, message_kind: Optional[str] = None,
                      max_attempts: Optional[int] = None, context: Optional[Dict[str, Any]] = None) -> QueuedMessage: ...

    async def select_eligible(self, limit: int) -> List[QueuedMessage]: ...

    async def get(self, message_id: UUID) -> Optional[QueuedMessage]: ...

    async def mark_sent(self, message_id: UUID) -> bool: ...

    async def mark_attempt_failed(self, message_id: UUID, error_message: str, new_attempts: int, is_terminal: bool) -> bool: ...

    async def reset_for_retry(self, message_id: UUID) -> bool: ...

    async def cancel(self, message_id: UUID) -> bool: ...

    async def counts_by_status(self) -> Dict[str, int]: ...

    async def list_by_status(self, status: str, limit: int = 100) -> List[QueuedMessage]: ...


class SqlMessageQueueStore:
    def __init__(self, session_factory: async_sessionmaker, default_max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self._session_factory = session_factory
        self.default_max_attempts = default_max_attempts

    async def enqueue(self, destination: str, body: str, message_kind: Optional[str] = None,
                      max_attempts: Optional[int] = None, context: Optional[Dict[str, Any]] = None) -> QueuedMessage:
        message = QueuedMessage(
            id=uuid4(),
            destination=destination,
            body=body,
            message_kind=message_kind,
            status=MessageStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts or self.default_max_attempts,
            context=context,
            created_at=utcnow(),
        )
        async with self._session_factory() as session:
            session.add(message)
            await session.commit()
            await session.refresh(message)
        return message

    async def select_eligible(self, limit: int) -> List[QueuedMessage]:
        stmt = (
            select(QueuedMessage)
            .where(
                QueuedMessage.status == MessageStatus.PENDING,
                QueuedMessage.attempts < QueuedMessage.max_attempts,
            )
            .order_by(QueuedMessage.created_at.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, message_id: UUID) -> Optional[QueuedMessage]:
        async with self._session_factory() as session:
            result = await session.execute(select(QueuedMessage).where(QueuedMessage.id == message_id))
            return result.scalar_one_or_none()

    async def _update(self, message_id: UUID, *criteria, **values) -> bool:
        stmt = update(QueuedMessage).where(QueuedMessage.id == message_id, *criteria).values(**values)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    async def mark_sent(self, message_id: UUID) -> bool:
        now = utcnow()
        return await self._update(message_id, status=MessageStatus.SENT, sent_at=now, last_attempt_at=now)

    async def mark_attempt_failed(self, message_id: UUID, error_message: str, new_attempts: int, is_terminal: bool) -> bool:
        return await self._update(
            message_id,
            attempts=new_attempts,
            last_attempt_at=utcnow(),
            error_message=error_message,
            status=MessageStatus.FAILED if is_terminal else MessageStatus.PENDING,
        )

    async def reset_for_retry(self, message_id: UUID) -> bool:
        return await self._update(message_id, attempts=0, status=MessageStatus.PENDING, error_message=None)

    async def cancel(self, message_id: UUID) -> bool:
        # Only messages still waiting for delivery can be cancelled
        return await self._update(
            message_id,
            QueuedMessage.status == MessageStatus.PENDING,
            status=MessageStatus.CANCELLED,
        )

    async def counts_by_status(self) -> Dict[str, int]:
        stmt = select(QueuedMessage.status, func.count()).group_by(QueuedMessage.status)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        counts = {status: 0 for status in MessageStatus.ALL}
        total = 0
        for status, count in rows:
            if status in counts:
                counts[status] = count
            total += count
        counts["total"] = total
        return counts

    async def list_by_status(self, status: str, limit: int = 100) -> List[QueuedMessage]:
        stmt = (
            select(QueuedMessage)
            .where(QueuedMessage.status == status)
            .order_by(QueuedMessage.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
