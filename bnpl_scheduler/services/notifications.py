"""Outbox dispatcher: delivers pending notification rows to the webhook"""

import logging
from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from bnpl_scheduler.config import Settings, settings as default_settings
from bnpl_scheduler.domain.clock import Clock, SystemClock
from bnpl_scheduler.infrastructure.clients.notifications import NotificationClient
from bnpl_scheduler.infrastructure.database.repositories import NotificationRepository

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    pending: int = 0


class NotificationDispatcher:
    """Each call is one delivery round; rows give up after notification_max_retries rounds"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: NotificationClient,
        clock: Clock | None = None,
        config: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.clock = clock or SystemClock()
        self.config = config or default_settings

    async def dispatch_pending(self, limit: int = 100) -> DispatchResult:
        db = self.session_factory()
        try:
            pending = [(row.id, row.target_url, row.payload) for row in NotificationRepository(db).list_pending(limit)]
        finally:
            db.close()

        result = DispatchResult()
        for notification_id, target_url, payload in pending:
            try:
                await self.client.send_event(target_url, payload)
                delivered = True
            except httpx.HTTPError as e:
                logger.warning(
                    "Notification delivery failed",
                    extra={"notification_id": str(notification_id), "error": str(e)},
                )
                delivered = False

            status = self._mark(notification_id, delivered)
            if status == "sent":
                result.sent += 1
            elif status == "failed":
                result.failed += 1
                logger.error("Notification abandoned", extra={"notification_id": str(notification_id)})
            else:
                result.pending += 1

        return result

    def _mark(self, notification_id, delivered: bool) -> str:
        db = self.session_factory()
        try:
            status = NotificationRepository(db).mark_delivery(
                notification_id, delivered, self.clock.now(), self.config.notification_max_retries
            )
            db.commit()
            return status
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
