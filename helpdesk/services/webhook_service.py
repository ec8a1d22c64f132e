from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

from core.config import WebhookConfig
from core.errors import ValidationError, WebhookNotFoundError
from database.models import WebhookLogRecord, WebhookRecord
from database.repositories import WebhookLogRepository, WebhookRepository
from utils.constants import DEFAULT_PRIORITY, PRIORITY_LEVELS, WEBHOOK_LOG_ERROR, WEBHOOK_LOG_SUCCESS
from utils.identifiers import generate_webhook_secret, generate_webhook_token
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

_EDITABLE_FIELDS = frozenset(
    {"name", "description", "active", "priority", "category_id", "assigned_to", "needs_approval", "secret_key"}
)


class WebhookService:
    """Catalog of inbound webhook endpoints and their routing defaults.

    Call counters are never written here; they move only through
    ``WebhookRepository.record_call`` when a delivery is logged.
    """

    def __init__(
        self,
        config: WebhookConfig,
        webhook_repo: WebhookRepository,
        log_repo: WebhookLogRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.webhook_repo = webhook_repo
        self.log_repo = log_repo
        self.clock = clock

    @staticmethod
    def _clean_name(name: Any) -> str:
        cleaned = str(name or "").strip()
        if not cleaned:
            raise ValidationError("Webhook name is required.")
        return cleaned[:120]

    @staticmethod
    def _clean_priority(priority: Any) -> str:
        value = str(priority or DEFAULT_PRIORITY).strip().lower()
        if value not in PRIORITY_LEVELS:
            raise ValidationError(f"Priority must be one of: {', '.join(PRIORITY_LEVELS)}.")
        return value

    @staticmethod
    def _optional(value: Any) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    async def create(
        self,
        name: str,
        created_by: str,
        description: str | None = None,
        priority: str | None = None,
        category_id: str | None = None,
        assigned_to: str | None = None,
        needs_approval: bool = False,
        active: bool = True,
        with_secret: bool | None = None,
        secret_key: str | None = None,
    ) -> WebhookRecord:
        created_by = (created_by or "").strip()
        if not created_by:
            raise ValidationError("Webhook owner is required.")
        if secret_key is None and (self.config.generate_secret if with_secret is None else with_secret):
            secret_key = generate_webhook_secret()

        now_iso = to_iso(self.clock())
        webhook = WebhookRecord(
            id=str(uuid4()),
            name=self._clean_name(name),
            token=generate_webhook_token(),
            created_by=created_by,
            description=self._optional(description),
            secret_key=self._optional(secret_key),
            active=active,
            priority=self._clean_priority(priority),
            category_id=self._optional(category_id),
            assigned_to=self._optional(assigned_to),
            needs_approval=needs_approval,
            created_at=now_iso,
            updated_at=now_iso,
        )
        await self.webhook_repo.create(webhook)
        LOGGER.info("Webhook created: %s", webhook.name, extra={"webhook_id": webhook.id, "actor_id": created_by})
        return webhook

    async def get(self, webhook_id: str) -> WebhookRecord:
        webhook = await self.webhook_repo.get_by_id(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError()
        return webhook

    async def get_by_token(self, token: str) -> WebhookRecord | None:
        if not token:
            return None
        return await self.webhook_repo.get_by_token(token)

    async def list_webhooks(self, created_by: str | None = None) -> list[WebhookRecord]:
        return await self.webhook_repo.list_webhooks(created_by=created_by)

    async def update(self, webhook_id: str, **changes: Any) -> WebhookRecord:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown webhook fields: {', '.join(sorted(unknown))}")
        await self.get(webhook_id)
        if not changes:
            return await self.get(webhook_id)

        cleaned: dict[str, Any] = {}
        for key, value in changes.items():
            if key == "name":
                cleaned[key] = self._clean_name(value)
            elif key == "priority":
                cleaned[key] = self._clean_priority(value)
            elif key in ("active", "needs_approval"):
                cleaned[key] = bool(value)
            else:
                cleaned[key] = self._optional(value)
        cleaned["updated_at"] = to_iso(self.clock())

        if not await self.webhook_repo.update(webhook_id, cleaned):
            raise WebhookNotFoundError()
        LOGGER.info("Webhook updated: %s", ", ".join(sorted(changes)), extra={"webhook_id": webhook_id})
        return await self.get(webhook_id)

    async def rotate_secret(self, webhook_id: str) -> WebhookRecord:
        return await self.update(webhook_id, secret_key=generate_webhook_secret())

    async def delete(self, webhook_id: str) -> None:
        if not await self.webhook_repo.delete(webhook_id):
            raise WebhookNotFoundError()
        LOGGER.info("Webhook deleted", extra={"webhook_id": webhook_id})

    async def list_logs(self, webhook_id: str, limit: int = 50) -> list[WebhookLogRecord]:
        await self.get(webhook_id)
        return await self.log_repo.list_for_webhook(webhook_id, limit=max(1, min(limit, 500)))

    async def list_unmatched_logs(self, limit: int = 50) -> list[WebhookLogRecord]:
        """Deliveries whose token matched no webhook, newest first."""
        return await self.log_repo.list_unmatched(limit=max(1, min(limit, 500)))

    async def stats(self, webhook_id: str) -> dict[str, Any]:
        webhook = await self.get(webhook_id)
        logged = await self.log_repo.status_counts(webhook_id)
        success_rate = webhook.success_calls / webhook.total_calls if webhook.total_calls else None
        return {
            "webhook_id": webhook.id,
            "total_calls": webhook.total_calls,
            "success_calls": webhook.success_calls,
            "error_calls": webhook.error_calls,
            "success_rate": success_rate,
            "logged_success": logged.get(WEBHOOK_LOG_SUCCESS, 0),
            "logged_error": logged.get(WEBHOOK_LOG_ERROR, 0),
        }
