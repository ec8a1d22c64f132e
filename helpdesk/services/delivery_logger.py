from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

import aiohttp

from core.config import AlertConfig
from core.errors import DeliveryUnavailableError
from database.base import Database
from database.models import TicketRecord, WebhookLogRecord, WebhookRecord
from database.repositories import WebhookLogRepository, WebhookRepository
from services.cache import CacheBackend
from utils.constants import (
    REASON_BAD_SECRET,
    REASON_UNKNOWN_OR_INACTIVE,
    WEBHOOK_LOG_ERROR,
    WEBHOOK_LOG_SUCCESS,
)
from utils.rate_limit import DistributedRateLimiter
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

ALERTS_PER_WINDOW = 5
ALERT_WINDOW_SECONDS = 300


def token_hint(token: str | None) -> str | None:
    if not token:
        return None
    return token[:8]


class DeliveryLogger:
    """Writes exactly one WebhookLog row per inbound call and bumps counters.

    A failure to persist the row is the one condition that is fatal to the
    call; it surfaces as ``DeliveryUnavailableError``.
    """

    def __init__(
        self,
        config: AlertConfig,
        db: Database,
        webhook_repo: WebhookRepository,
        log_repo: WebhookLogRepository,
        cache: CacheBackend,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.db = db
        self.webhook_repo = webhook_repo
        self.log_repo = log_repo
        self.rate_limiter = DistributedRateLimiter(cache)
        self.clock = clock

    def _build_log(
        self,
        webhook: WebhookRecord | None,
        token: str | None,
        status: str,
        payload: str | None,
        response_code: int,
        reason: str | None = None,
        error_message: str | None = None,
        ticket_id: str | None = None,
    ) -> WebhookLogRecord:
        return WebhookLogRecord(
            id=str(uuid4()),
            webhook_id=webhook.id if webhook else None,
            token_hint=None if webhook else token_hint(token),
            status=status,
            reason=reason,
            response_code=response_code,
            error_message=error_message,
            payload=payload,
            ticket_id=ticket_id,
            created_at=to_iso(self.clock()),
        )

    async def record_success(self, webhook: WebhookRecord, payload: str, ticket: TicketRecord) -> WebhookLogRecord:
        """Log a delivery that created ``ticket``.

        Meant to run inside the transaction that created the ticket.
        """
        log = self._build_log(webhook, None, WEBHOOK_LOG_SUCCESS, payload, 201, ticket_id=ticket.id)
        try:
            await self.log_repo.insert(log)
            await self.webhook_repo.record_call(webhook.id, success=True)
        except Exception as exc:
            LOGGER.exception("Failed to write webhook delivery log", extra={"webhook_id": webhook.id})
            raise DeliveryUnavailableError() from exc
        return log

    async def record_failure(
        self,
        webhook: WebhookRecord | None,
        token: str | None,
        reason: str,
        payload: str | None,
        response_code: int,
        error_message: str | None = None,
    ) -> WebhookLogRecord:
        log = self._build_log(
            webhook,
            token,
            WEBHOOK_LOG_ERROR,
            payload,
            response_code,
            reason=reason,
            error_message=error_message,
        )
        try:
            async with self.db.transaction():
                await self.log_repo.insert(log)
                if webhook is not None:
                    await self.webhook_repo.record_call(webhook.id, success=False)
        except Exception as exc:
            LOGGER.exception(
                "Failed to write webhook delivery log",
                extra={"webhook_id": log.webhook_id, "reason": reason},
            )
            raise DeliveryUnavailableError() from exc

        LOGGER.warning(
            "Webhook delivery rejected: %s",
            error_message or reason,
            extra={"webhook_id": log.webhook_id, "reason": reason},
        )
        if reason == REASON_BAD_SECRET or (
            reason == REASON_UNKNOWN_OR_INACTIVE and self.config.alert_on_unknown_token
        ):
            await self.send_alert(webhook, log)
        return log

    async def send_alert(self, webhook: WebhookRecord | None, log: WebhookLogRecord) -> None:
        if not self.config.enabled or not self.config.url:
            return
        scope = webhook.id if webhook else f"token:{log.token_hint}"
        throttle = await self.rate_limiter.hit(
            f"helpdesk:alerts:{scope}",
            limit=ALERTS_PER_WINDOW,
            window_seconds=ALERT_WINDOW_SECONDS,
        )
        if not throttle.allowed:
            return
        details: dict[str, Any] = {
            "webhook_id": log.webhook_id,
            "webhook_name": webhook.name if webhook else None,
            "token_hint": log.token_hint,
            "reason": log.reason,
            "log_id": log.id,
        }
        try:
            async with aiohttp.ClientSession() as session:
                await session.post(
                    self.config.url,
                    json={
                        "title": f"Webhook security alert: {log.reason}",
                        "description": f"```json\n{json.dumps(details, indent=2)[:3500]}\n```",
                        "timestamp": log.created_at,
                    },
                    timeout=aiohttp.ClientTimeout(total=10),
                )
        except Exception:
            LOGGER.exception("Failed to send webhook security alert", extra={"webhook_id": log.webhook_id})
