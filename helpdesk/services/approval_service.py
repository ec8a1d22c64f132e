from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from core.errors import NotPendingApprovalError, TicketNotFoundError
from database.base import Database
from database.models import ChangeEvent, TicketOrigin, TicketRecord
from database.repositories import TicketRepository
from services.message_service import MessageService
from utils.constants import (
    EVENT_FIELD_CHANGED,
    TICKET_STATUS_OPEN,
    TICKET_STATUS_PENDING_APPROVAL,
    TICKET_STATUS_REJECTED,
    TICKET_STATUS_SCHEDULED,
)
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)


class ApprovalService:
    """Holds tickets from approval-gated origins until someone signs off."""

    def __init__(
        self,
        db: Database,
        ticket_repo: TicketRepository,
        messages: MessageService,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.ticket_repo = ticket_repo
        self.messages = messages
        self.clock = clock

    @staticmethod
    def needs_approval(origin: TicketOrigin | None) -> bool:
        return bool(origin and origin.needs_approval)

    async def _decide(
        self,
        ticket_id: str,
        actor_id: str,
        target_for: Callable[[TicketRecord], str],
        decision: str,
        reason: str | None = None,
    ) -> TicketRecord:
        ticket = await self.ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError()
        if ticket.status != TICKET_STATUS_PENDING_APPROVAL:
            raise NotPendingApprovalError()

        target = target_for(ticket)
        now_iso = to_iso(self.clock())
        changes: dict[str, object] = {"status": target, "updated_at": now_iso}
        if target == TICKET_STATUS_REJECTED:
            changes["closed_at"] = now_iso

        details: dict[str, object] = {"decision": decision}
        if reason:
            details["reason"] = reason

        async with self.db.transaction():
            won = await self.ticket_repo.conditional_update(
                ticket_id,
                {"status": TICKET_STATUS_PENDING_APPROVAL, "scheduled_at": ticket.scheduled_at},
                changes,
            )
            if not won:
                # Someone else decided first.
                raise NotPendingApprovalError()
            await self.messages.post_system(
                ticket_id,
                ChangeEvent(
                    kind=EVENT_FIELD_CHANGED,
                    field_name="status",
                    old=TICKET_STATUS_PENDING_APPROVAL,
                    new=target,
                    actor_id=actor_id,
                    details=details,
                ),
            )

        LOGGER.info(
            "Ticket %s -> %s",
            decision,
            target,
            extra={"ticket_id": ticket_id, "actor_id": actor_id},
        )
        updated = await self.ticket_repo.get_by_id(ticket_id)
        assert updated is not None
        return updated

    async def approve(self, ticket_id: str, actor_id: str) -> TicketRecord:
        return await self._decide(
            ticket_id,
            actor_id,
            lambda ticket: TICKET_STATUS_SCHEDULED if ticket.scheduled_at else TICKET_STATUS_OPEN,
            "approved",
        )

    async def reject(self, ticket_id: str, actor_id: str, reason: str | None = None) -> TicketRecord:
        return await self._decide(
            ticket_id,
            actor_id,
            lambda _ticket: TICKET_STATUS_REJECTED,
            "rejected",
            reason=reason,
        )

    async def list_pending(self, limit: int = 100) -> list[TicketRecord]:
        return await self.ticket_repo.list_tickets(status=TICKET_STATUS_PENDING_APPROVAL, limit=limit)
