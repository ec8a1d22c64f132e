from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from core.config import AppConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import (
    MessageRepository,
    PauseRepository,
    TicketCounterRepository,
    TicketRepository,
    WebhookLogRepository,
    WebhookRepository,
)
from services.approval_service import ApprovalService
from services.cache import CacheBackend, MemoryCache, build_cache
from services.delivery_logger import DeliveryLogger
from services.message_service import AttachmentStore, MessageService
from services.pause_service import PauseService
from services.scheduling_service import SchedulingService
from services.ticket_service import TicketService, TicketServiceDeps
from services.webhook_receiver import WebhookReceiver
from services.webhook_service import WebhookService
from utils.time import utc_now

LOGGER = logging.getLogger(__name__)


class HelpdeskApp:
    """Owns the database, cache and every service wired on top of them."""

    def __init__(self, config: AppConfig, clock: Callable[[], datetime] = utc_now) -> None:
        self.config = config
        self.clock = clock
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend = MemoryCache()
        self._sweep_task: asyncio.Task[None] | None = None

        # Repositories and services are initialized during start.
        self.counter_repo: TicketCounterRepository
        self.ticket_repo: TicketRepository
        self.pause_repo: PauseRepository
        self.message_repo: MessageRepository
        self.webhook_repo: WebhookRepository
        self.webhook_log_repo: WebhookLogRepository

        self.attachments: AttachmentStore
        self.message_service: MessageService
        self.approval_service: ApprovalService
        self.ticket_service: TicketService
        self.pause_service: PauseService
        self.scheduling_service: SchedulingService
        self.webhook_service: WebhookService
        self.delivery_logger: DeliveryLogger
        self.webhook_receiver: WebhookReceiver

    async def start(self, run_sweeper: bool = False) -> None:
        await self.database.connect()
        applied = await run_migrations(self.database)
        if applied:
            LOGGER.info("Applied %s migration(s)", len(applied))
        self.cache = await build_cache(self.config.redis)
        self._wire()
        if run_sweeper and self.config.scheduling.enabled:
            self._sweep_task = asyncio.create_task(self.scheduling_service.run_forever())

    def _wire(self) -> None:
        db = self.database
        clock = self.clock

        self.counter_repo = TicketCounterRepository(db)
        self.ticket_repo = TicketRepository(db)
        self.pause_repo = PauseRepository(db)
        self.message_repo = MessageRepository(db)
        self.webhook_repo = WebhookRepository(db)
        self.webhook_log_repo = WebhookLogRepository(db)

        self.attachments = AttachmentStore(self.config.attachments)
        self.message_service = MessageService(db, self.ticket_repo, self.message_repo, self.attachments, clock)
        self.approval_service = ApprovalService(db, self.ticket_repo, self.message_service, clock)
        self.ticket_service = TicketService(
            self.config,
            db,
            TicketServiceDeps(
                counter_repo=self.counter_repo,
                ticket_repo=self.ticket_repo,
                pause_repo=self.pause_repo,
                message_repo=self.message_repo,
                messages=self.message_service,
                approvals=self.approval_service,
                attachments=self.attachments,
            ),
            clock,
        )
        self.pause_service = PauseService(db, self.ticket_repo, self.pause_repo, self.message_service, clock)
        self.scheduling_service = SchedulingService(
            self.config.scheduling, db, self.ticket_repo, self.message_service, self.cache, clock
        )
        self.webhook_service = WebhookService(self.config.webhooks, self.webhook_repo, self.webhook_log_repo, clock)
        self.delivery_logger = DeliveryLogger(
            self.config.alerts, db, self.webhook_repo, self.webhook_log_repo, self.cache, clock
        )
        self.webhook_receiver = WebhookReceiver(
            self.config, db, self.webhook_service, self.ticket_service, self.delivery_logger
        )

    async def close(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.cache.close()
        await self.database.close()
        LOGGER.info("Helpdesk stopped")
