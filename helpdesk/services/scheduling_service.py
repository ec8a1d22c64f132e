from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from core.config import SchedulingConfig
from core.errors import InvalidScheduleError, NotScheduledError, TicketNotFoundError, ValidationError
from database.base import Database
from database.models import ChangeEvent, TicketRecord
from database.repositories import TicketRepository
from services.cache import CacheBackend
from services.message_service import MessageService
from utils.constants import (
    EVENT_FIELD_CHANGED,
    EVENT_SCHEDULED,
    EVENT_UNSCHEDULED,
    SYSTEM_AUTHOR_ID,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_OPEN,
    TICKET_STATUS_PENDING_APPROVAL,
    TICKET_STATUS_SCHEDULED,
)
from utils.rate_limit import LeaderLock
from utils.time import parse_iso, parse_relative_duration, to_iso, utc_now

LOGGER = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "helpdesk:scheduling:sweep"

_SCHEDULABLE = frozenset({TICKET_STATUS_OPEN, TICKET_STATUS_SCHEDULED, TICKET_STATUS_PENDING_APPROVAL})


class SchedulingService:
    def __init__(
        self,
        config: SchedulingConfig,
        db: Database,
        ticket_repo: TicketRepository,
        messages: MessageService,
        cache: CacheBackend,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.db = db
        self.ticket_repo = ticket_repo
        self.messages = messages
        self.cache = cache
        self.clock = clock

    async def _get(self, ticket_id: str) -> TicketRecord:
        ticket = await self.ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError()
        return ticket

    @staticmethod
    def _resolve_when(when: datetime | str, now: datetime) -> datetime:
        """Accept an ISO-8601 timestamp or a relative offset such as ``30m`` or ``2h``."""
        if isinstance(when, str):
            text = when.strip()
            if text[:-1].removeprefix("-").isdigit() and text[-1:].lower() in ("s", "m", "h", "d"):
                return now + parse_relative_duration(text)
        try:
            when_dt = parse_iso(when)
        except ValueError as exc:
            raise ValidationError("The scheduled time must be an ISO-8601 timestamp or an offset like 2h.") from exc
        assert when_dt is not None
        return when_dt

    async def schedule(self, ticket_id: str, when: datetime | str, actor_id: str) -> TicketRecord:
        now = self.clock()
        when_dt = self._resolve_when(when, now)
        if when_dt <= now:
            raise InvalidScheduleError("The scheduled time must be in the future.")

        ticket = await self._get(ticket_id)
        if ticket.status not in _SCHEDULABLE:
            raise InvalidScheduleError(f"A {ticket.status} ticket cannot be scheduled.")

        now_iso = to_iso(now)
        when_iso = to_iso(when_dt)
        changes: dict[str, object] = {"scheduled_at": when_iso, "updated_at": now_iso}
        # An unapproved ticket keeps waiting; approval lands it on scheduled.
        new_status = ticket.status
        if ticket.status != TICKET_STATUS_PENDING_APPROVAL:
            new_status = TICKET_STATUS_SCHEDULED
            changes["status"] = new_status

        async with self.db.transaction():
            won = await self.ticket_repo.conditional_update(
                ticket_id,
                {"status": ticket.status, "scheduled_at": ticket.scheduled_at},
                changes,
            )
            if not won:
                raise InvalidScheduleError("The ticket changed while it was being scheduled.")
            await self.messages.post_system(
                ticket_id,
                ChangeEvent(
                    kind=EVENT_SCHEDULED,
                    field_name="scheduled_at",
                    old=ticket.scheduled_at,
                    new=when_iso,
                    actor_id=actor_id,
                    details={"status": new_status},
                ),
            )
        LOGGER.info("Ticket scheduled for %s", when_iso, extra={"ticket_id": ticket_id, "actor_id": actor_id})
        return await self._get(ticket_id)

    async def unschedule(self, ticket_id: str, actor_id: str) -> TicketRecord:
        ticket = await self._get(ticket_id)
        if not ticket.scheduled_at or ticket.status not in _SCHEDULABLE:
            raise NotScheduledError()

        now_iso = to_iso(self.clock())
        changes: dict[str, object] = {"scheduled_at": None, "updated_at": now_iso}
        new_status = ticket.status
        if ticket.status == TICKET_STATUS_SCHEDULED:
            new_status = TICKET_STATUS_OPEN
            changes["status"] = new_status

        async with self.db.transaction():
            won = await self.ticket_repo.conditional_update(
                ticket_id,
                {"status": ticket.status, "scheduled_at": ticket.scheduled_at},
                changes,
            )
            if not won:
                raise NotScheduledError()
            await self.messages.post_system(
                ticket_id,
                ChangeEvent(
                    kind=EVENT_UNSCHEDULED,
                    field_name="scheduled_at",
                    old=ticket.scheduled_at,
                    new=None,
                    actor_id=actor_id,
                    details={"status": new_status},
                ),
            )
        LOGGER.info("Ticket unscheduled", extra={"ticket_id": ticket_id, "actor_id": actor_id})
        return await self._get(ticket_id)

    async def promote_due(self, now: datetime | None = None) -> list[TicketRecord]:
        """Activate every scheduled ticket whose time has come.

        Each promotion is a conditional update on ``status = 'scheduled'``; a
        sweeper that loses the race for a ticket skips it silently.
        """
        now_iso = to_iso(now or self.clock())
        assert now_iso is not None
        target = TICKET_STATUS_IN_PROGRESS if self.config.auto_start else TICKET_STATUS_OPEN
        promoted: list[TicketRecord] = []
        for ticket in await self.ticket_repo.list_due_scheduled(now_iso):
            async with self.db.transaction():
                if not await self.ticket_repo.promote_scheduled(ticket.id, target, now_iso):
                    continue
                await self.messages.post_system(
                    ticket.id,
                    ChangeEvent(
                        kind=EVENT_FIELD_CHANGED,
                        field_name="status",
                        old=TICKET_STATUS_SCHEDULED,
                        new=target,
                        actor_id=SYSTEM_AUTHOR_ID,
                        details={"trigger": "schedule", "scheduled_at": ticket.scheduled_at},
                    ),
                )
            ticket.status = target
            ticket.scheduled_at = None
            ticket.updated_at = now_iso
            promoted.append(ticket)
        if promoted:
            LOGGER.info("Promoted %s scheduled ticket(s) to %s", len(promoted), target)
        return promoted

    async def sweep_once(self, lock: LeaderLock) -> list[TicketRecord]:
        if not await lock.acquire():
            return []
        return await self.promote_due()

    async def run_forever(self, interval_seconds: int | None = None) -> None:
        interval = interval_seconds or self.config.sweep_interval_seconds
        # Lease slightly shorter than the interval so the next tick can take it.
        lock = LeaderLock(self.cache, SWEEP_LOCK_KEY, ttl_seconds=max(1, interval - 1))
        LOGGER.info("Scheduling sweep started (every %ss)", interval)
        try:
            while True:
                try:
                    await self.sweep_once(lock)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOGGER.exception("Scheduling sweep failed")
                await asyncio.sleep(interval)
        finally:
            # Hand the lease back so another instance can sweep right away.
            await lock.release()
            LOGGER.info("Scheduling sweep stopped")
