from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy import insert, or_, and_, select, update
from sqlalchemy.exc import IntegrityError

from viraloop.services.db import Database
from viraloop.utils.logger import logger
from .tables import webhook_events, utcnow

PROCESSING_TIMEOUT = timedelta(minutes=5)
MAX_ERROR_LENGTH = 2000


class WebhookLock:
    """Per-event processing journal keyed by the Stripe event id.

    Claiming is write-first: a fresh event is claimed by inserting its row,
    a known event only by a conditional update that succeeds when the
    previous attempt failed or has been stuck in ``processing`` for longer
    than PROCESSING_TIMEOUT.
    """

    def __init__(self, db: Database):
        self.db = db

    async def check_and_mark_webhook_processing(self, event_id: str, event_type: str) -> Tuple[bool, Optional[str]]:
        now = utcnow()
        try:
            async with self.db.transaction() as session:
                await session.execute(
                    insert(webhook_events).values(
                        event_id=event_id,
                        event_type=event_type,
                        status="processing",
                        processing_started_at=now,
                    )
                )
            logger.info(f"[WEBHOOK] Started processing new event {event_id}")
            return True, None
        except IntegrityError:
            pass

        async with self.db.transaction() as session:
            result = await session.execute(
                update(webhook_events)
                .where(
                    webhook_events.c.event_id == event_id,
                    or_(
                        webhook_events.c.status == "failed",
                        and_(
                            webhook_events.c.status == "processing",
                            webhook_events.c.processing_started_at < now - PROCESSING_TIMEOUT,
                        ),
                    ),
                )
                .values(
                    status="processing",
                    processing_started_at=now,
                    retry_count=webhook_events.c.retry_count + 1,
                    error_message=None,
                )
                .returning(webhook_events.c.retry_count)
            )
            retry_count = result.scalar_one_or_none()

        if retry_count is not None:
            logger.info(f"[WEBHOOK] Retrying event {event_id} (attempt {retry_count + 1})")
            return True, None

        async with self.db.session() as session:
            result = await session.execute(
                select(webhook_events.c.status).where(webhook_events.c.event_id == event_id)
            )
            status = result.scalar_one_or_none()

        if status == "completed":
            logger.info(f"[WEBHOOK] Event {event_id} already completed")
            return False, "already_completed"

        logger.warning(f"[WEBHOOK] Event {event_id} is currently being processed")
        return False, "in_progress"

    async def mark_webhook_completed(self, event_id: str) -> None:
        async with self.db.transaction() as session:
            await session.execute(
                update(webhook_events)
                .where(webhook_events.c.event_id == event_id)
                .values(status="completed", processed_at=utcnow())
            )
        logger.info(f"[WEBHOOK] Marked event {event_id} as completed")

    async def mark_webhook_failed(self, event_id: str, error_message: str) -> None:
        safe_error_message = str(error_message)[:MAX_ERROR_LENGTH].replace("\x00", "")
        try:
            async with self.db.transaction() as session:
                await session.execute(
                    update(webhook_events)
                    .where(webhook_events.c.event_id == event_id)
                    .values(status="failed", error_message=safe_error_message, processed_at=utcnow())
                )
            logger.error(f"[WEBHOOK] Marked event {event_id} as failed: {safe_error_message}")
        except Exception as db_error:
            logger.error(f"[WEBHOOK] Failed to mark event {event_id} as failed in database: {db_error}")
            logger.error(f"[WEBHOOK] Original error was: {safe_error_message}")

    async def get_status(self, event_id: str) -> Optional[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(webhook_events.c.status).where(webhook_events.c.event_id == event_id)
            )
            return result.scalar_one_or_none()
