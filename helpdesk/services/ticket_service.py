from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from core.config import AppConfig
from core.errors import InvalidScheduleError, InvalidTransitionError, TicketNotFoundError, ValidationError
from database.base import Database
from database.models import ChangeEvent, TicketInput, TicketOrigin, TicketRecord
from database.repositories import MessageRepository, PauseRepository, TicketCounterRepository, TicketRepository
from services.approval_service import ApprovalService
from services.message_service import AttachmentStore, MessageService
from utils.constants import (
    ALLOWED_TRANSITIONS,
    CLOCK_STOP_STATUSES,
    EVENT_CREATED,
    EVENT_FIELD_CHANGED,
    PRIORITY_LEVELS,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_OPEN,
    TICKET_STATUS_PENDING_APPROVAL,
    TICKET_STATUS_RESOLVED,
    TICKET_STATUS_SCHEDULED,
    TICKET_STATUSES,
    UPDATABLE_FIELDS,
)
from utils.identifiers import ticket_day
from utils.time import parse_iso, to_iso, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TicketServiceDeps:
    counter_repo: TicketCounterRepository
    ticket_repo: TicketRepository
    pause_repo: PauseRepository
    message_repo: MessageRepository
    messages: MessageService
    approvals: ApprovalService
    attachments: AttachmentStore


def truncate_title(title: str, max_length: int) -> str:
    if len(title) <= max_length:
        return title
    return title[: max_length - 3] + "..."


class TicketService:
    def __init__(
        self,
        config: AppConfig,
        db: Database,
        deps: TicketServiceDeps,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.db = db
        self.deps = deps
        self.clock = clock

    def _normalize_priority(self, priority: str | None) -> str:
        value = (priority or self.config.tickets.default_priority).strip().lower()
        if value not in PRIORITY_LEVELS:
            raise ValidationError(f"Priority must be one of: {', '.join(PRIORITY_LEVELS)}.")
        return value

    async def create(self, data: TicketInput, origin: TicketOrigin | None = None) -> TicketRecord:
        """Create a ticket and record its ``created`` event.

        Runs inside the caller's open transaction when there is one, so a
        webhook delivery can commit the ticket and its log row together.
        """
        origin = origin or TicketOrigin()
        title = (data.title or "").strip()
        requester_id = (data.requester_id or "").strip()
        if not title:
            raise ValidationError("Ticket title is required.")
        if not requester_id:
            raise ValidationError("Ticket requester is required.")
        title = truncate_title(title, self.config.tickets.title_max_length)
        priority = self._normalize_priority(data.priority)

        now = self.clock()
        scheduled_at: str | None = None
        if data.scheduled_at:
            try:
                when = parse_iso(data.scheduled_at)
            except ValueError as exc:
                raise ValidationError("scheduled_at must be an ISO-8601 timestamp.") from exc
            assert when is not None
            if when <= now:
                raise InvalidScheduleError("The scheduled time must be in the future.")
            scheduled_at = to_iso(when)

        if self.deps.approvals.needs_approval(origin):
            status = TICKET_STATUS_PENDING_APPROVAL
        elif scheduled_at:
            status = TICKET_STATUS_SCHEDULED
        else:
            status = TICKET_STATUS_OPEN

        assigned_to = (data.assigned_to or "").strip() or None
        now_iso = to_iso(now)
        assert now_iso is not None
        day = ticket_day(now, self.config.tickets.timezone)

        async with self.db.transaction():
            number = await self.deps.counter_repo.next_ticket_number(day)
            record = TicketRecord(
                id=str(uuid4()),
                ticket_number=number,
                ticket_day=day,
                title=title,
                description=data.description or "",
                status=status,
                priority=priority,
                requester_id=requester_id,
                category_id=data.category_id,
                assigned_to=assigned_to,
                assigned_at=now_iso if assigned_to else None,
                form_submission_id=origin.form_submission_id,
                webhook_id=origin.webhook_id,
                needs_approval=status == TICKET_STATUS_PENDING_APPROVAL,
                scheduled_at=scheduled_at,
                created_at=now_iso,
                updated_at=now_iso,
            )
            await self.deps.ticket_repo.create(record)
            await self.deps.messages.post_system(
                record.id,
                ChangeEvent(
                    kind=EVENT_CREATED,
                    actor_id=requester_id,
                    details={"status": status, "origin": origin.kind},
                ),
            )

        LOGGER.info(
            "Ticket created %s status=%s origin=%s",
            record.display_id,
            status,
            origin.kind,
            extra={"ticket_id": record.id, "webhook_id": origin.webhook_id},
        )
        return record

    async def get(self, ticket_id: str) -> TicketRecord:
        ticket = await self.deps.ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError()
        return ticket

    async def list_tickets(self, status: str | None = None, limit: int = 100) -> list[TicketRecord]:
        if status and status not in TICKET_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        return await self.deps.ticket_repo.list_tickets(status=status, limit=max(1, min(limit, 500)))

    async def update_field(self, ticket_id: str, field: str, value: Any, actor_id: str) -> TicketRecord:
        if field not in UPDATABLE_FIELDS:
            raise ValidationError(f"Field {field!r} cannot be updated. Use one of: {', '.join(UPDATABLE_FIELDS)}.")
        ticket = await self.get(ticket_id)
        if field == "status":
            return await self._change_status(ticket, str(value or "").strip().lower(), actor_id)

        if field == "priority":
            if value is None or not str(value).strip():
                raise ValidationError("Priority cannot be blank.")
            new_value: str | None = self._normalize_priority(str(value))
        else:
            new_value = str(value).strip() if value is not None else None
            new_value = new_value or None

        old_value = getattr(ticket, field)
        if new_value == old_value:
            raise ValidationError(f"{field} is already {old_value!r}.")

        now_iso = to_iso(self.clock())
        changes: dict[str, Any] = {field: new_value, "updated_at": now_iso}
        if field == "assigned_to" and new_value:
            changes["assigned_at"] = now_iso

        async with self.db.transaction():
            won = await self.deps.ticket_repo.conditional_update(ticket.id, {field: old_value}, changes)
            if not won:
                raise ValidationError(f"{field} was changed by someone else; reload and try again.")
            await self.deps.messages.post_system(
                ticket.id,
                ChangeEvent(
                    kind=EVENT_FIELD_CHANGED,
                    field_name=field,
                    old=old_value,
                    new=new_value,
                    actor_id=actor_id,
                ),
            )
        LOGGER.info(
            "Ticket %s changed",
            field,
            extra={"ticket_id": ticket.id, "actor_id": actor_id},
        )
        return await self.get(ticket.id)

    async def _change_status(self, ticket: TicketRecord, new_status: str, actor_id: str) -> TicketRecord:
        if new_status not in TICKET_STATUSES:
            raise ValidationError(f"Unknown status: {new_status}")
        if new_status == ticket.status:
            raise ValidationError(f"The ticket is already {new_status}.")
        if new_status == TICKET_STATUS_SCHEDULED:
            # The time and the status are set together by SchedulingService.schedule.
            raise InvalidScheduleError("Use schedule with a time to schedule a ticket.")
        if new_status not in ALLOWED_TRANSITIONS.get(ticket.status, frozenset()):
            raise InvalidTransitionError(f"Cannot move a ticket from {ticket.status} to {new_status}.")

        now = self.clock()
        now_iso = to_iso(now)
        expected: dict[str, Any] = {"status": ticket.status, "is_paused": ticket.is_paused}
        changes: dict[str, Any] = {"status": new_status, "updated_at": now_iso}
        details: dict[str, Any] = {}
        if new_status in CLOCK_STOP_STATUSES and ticket.closed_at is None:
            changes["closed_at"] = now_iso
        if ticket.status == TICKET_STATUS_SCHEDULED:
            changes["scheduled_at"] = None

        # A pause cannot outlive in_progress: fold the open interval into the total.
        pause_seconds: float | None = None
        if ticket.is_paused and new_status != TICKET_STATUS_IN_PROGRESS:
            paused_at = parse_iso(ticket.paused_at)
            pause_seconds = max(0.0, (now - paused_at).total_seconds()) if paused_at else 0.0
            expected["paused_at"] = ticket.paused_at
            changes.update(
                {
                    "is_paused": False,
                    "paused_at": None,
                    "paused_seconds": ticket.paused_seconds + pause_seconds,
                }
            )
            details["pause_closed_seconds"] = pause_seconds

        async with self.db.transaction():
            won = await self.deps.ticket_repo.conditional_update(ticket.id, expected, changes)
            if not won:
                raise InvalidTransitionError("The ticket changed while the status update was in flight.")
            if pause_seconds is not None:
                await self.deps.pause_repo.close_open(ticket.id, now_iso, pause_seconds)
            await self.deps.messages.post_system(
                ticket.id,
                ChangeEvent(
                    kind=EVENT_FIELD_CHANGED,
                    field_name="status",
                    old=ticket.status,
                    new=new_status,
                    actor_id=actor_id,
                    details=details,
                ),
            )
        LOGGER.info(
            "Ticket status %s -> %s",
            ticket.status,
            new_status,
            extra={"ticket_id": ticket.id, "actor_id": actor_id},
        )
        return await self.get(ticket.id)

    async def resolve(self, ticket_id: str, actor_id: str) -> TicketRecord:
        return await self.update_field(ticket_id, "status", TICKET_STATUS_RESOLVED, actor_id)

    async def close(self, ticket_id: str, actor_id: str) -> TicketRecord:
        return await self.update_field(ticket_id, "status", TICKET_STATUS_CLOSED, actor_id)

    async def start(self, ticket_id: str, actor_id: str) -> TicketRecord:
        return await self.update_field(ticket_id, "status", TICKET_STATUS_IN_PROGRESS, actor_id)

    async def delete(self, ticket_id: str, actor_id: str) -> None:
        ticket = await self.get(ticket_id)
        paths = await self.deps.message_repo.list_attachment_paths_for_ticket(ticket.id)
        if not await self.deps.ticket_repo.delete(ticket.id):
            raise TicketNotFoundError()
        await self.deps.attachments.remove(paths)
        LOGGER.info(
            "Ticket deleted %s",
            ticket.display_id,
            extra={"ticket_id": ticket.id, "actor_id": actor_id},
        )
