from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from core.errors import InvalidPauseStateError, NotPausedError, TicketNotFoundError
from database.base import Database
from database.models import ChangeEvent, TicketPause, TicketRecord
from database.repositories import PauseRepository, TicketRepository
from services.message_service import MessageService
from utils.constants import EVENT_PAUSED, EVENT_RESUMED, TICKET_STATUS_IN_PROGRESS
from utils.time import parse_iso, to_iso, utc_now

LOGGER = logging.getLogger(__name__)


def elapsed_seconds(ticket: TicketRecord, now: datetime) -> float:
    """Active SLA time: wall clock since creation minus every paused interval.

    The clock stops at ``closed_at`` when the ticket has one. An interval still
    open is counted up to that same end point.
    """
    created = parse_iso(ticket.created_at)
    if created is None:
        return 0.0
    end = parse_iso(ticket.closed_at) or now
    total = (end - created).total_seconds() - ticket.paused_seconds
    if ticket.is_paused:
        paused_at = parse_iso(ticket.paused_at)
        if paused_at is not None and paused_at < end:
            total -= (end - paused_at).total_seconds()
    return max(0.0, total)


class PauseService:
    def __init__(
        self,
        db: Database,
        ticket_repo: TicketRepository,
        pause_repo: PauseRepository,
        messages: MessageService,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.ticket_repo = ticket_repo
        self.pause_repo = pause_repo
        self.messages = messages
        self.clock = clock

    async def _get(self, ticket_id: str) -> TicketRecord:
        ticket = await self.ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError()
        return ticket

    async def pause(self, ticket_id: str, actor_id: str) -> TicketRecord:
        ticket = await self._get(ticket_id)
        if not ticket.can_pause:
            raise InvalidPauseStateError()

        now_iso = to_iso(self.clock())
        async with self.db.transaction():
            won = await self.ticket_repo.conditional_update(
                ticket_id,
                {"status": TICKET_STATUS_IN_PROGRESS, "is_paused": False},
                {"is_paused": True, "paused_at": now_iso, "updated_at": now_iso},
            )
            if not won:
                raise InvalidPauseStateError()
            await self.pause_repo.open(str(uuid4()), ticket_id, now_iso)
            await self.messages.post_system(
                ticket_id,
                ChangeEvent(kind=EVENT_PAUSED, actor_id=actor_id, details={"paused_at": now_iso}),
            )
        LOGGER.info("Ticket paused", extra={"ticket_id": ticket_id, "actor_id": actor_id})
        return await self._get(ticket_id)

    async def resume(self, ticket_id: str, actor_id: str) -> TicketRecord:
        ticket = await self._get(ticket_id)
        if not ticket.is_paused or ticket.paused_at is None:
            raise NotPausedError()

        now = self.clock()
        now_iso = to_iso(now)
        paused_at = parse_iso(ticket.paused_at)
        assert paused_at is not None
        duration = max(0.0, (now - paused_at).total_seconds())

        async with self.db.transaction():
            # Keyed on paused_at so a racing resume cannot add the same interval twice.
            if not await self.ticket_repo.resume(ticket_id, ticket.paused_at, duration, now_iso):
                raise NotPausedError()
            await self.pause_repo.close_open(ticket_id, now_iso, duration)
            await self.messages.post_system(
                ticket_id,
                ChangeEvent(kind=EVENT_RESUMED, actor_id=actor_id, details={"paused_seconds": duration}),
            )
        LOGGER.info(
            "Ticket resumed after %.3fs",
            duration,
            extra={"ticket_id": ticket_id, "actor_id": actor_id},
        )
        return await self._get(ticket_id)

    def elapsed(self, ticket: TicketRecord, now: datetime | None = None) -> float:
        return elapsed_seconds(ticket, now or self.clock())

    async def history(self, ticket_id: str) -> list[TicketPause]:
        await self._get(ticket_id)
        return await self.pause_repo.list_for_ticket(ticket_id)
