from __future__ import annotations

from pathlib import Path

import pytest

from core.errors import InvalidScheduleError, InvalidTransitionError, TicketNotFoundError, ValidationError
from database.models import TicketOrigin
from factories import make_in_progress, make_ticket
from services.message_service import AttachmentUpload


@pytest.mark.asyncio
async def test_create_ticket_defaults(helpdesk, clock) -> None:
    ticket = await make_ticket(helpdesk)

    assert ticket.status == "open"
    assert ticket.priority == "medium"
    assert ticket.ticket_number == 1
    assert ticket.display_id == "2025/03/10/001"
    assert ticket.routing_id == "20250310001"
    assert ticket.created_at == ticket.updated_at

    stored = await helpdesk.ticket_service.get(ticket.id)
    assert stored.title == "Printer on fire"

    messages = await helpdesk.message_service.list_messages(ticket.id)
    assert len(messages) == 1
    assert messages[0].is_system
    assert messages[0].author_id == "system"
    assert messages[0].event["kind"] == "created"


@pytest.mark.asyncio
async def test_ticket_numbers_restart_each_local_day(helpdesk, clock) -> None:
    first = await make_ticket(helpdesk)
    second = await make_ticket(helpdesk)
    # 23:30 in São Paulo is still the same calendar day.
    clock.advance(hours=11, minutes=30)
    third = await make_ticket(helpdesk)
    clock.advance(hours=1)
    fourth = await make_ticket(helpdesk)

    assert [first.ticket_number, second.ticket_number, third.ticket_number] == [1, 2, 3]
    assert fourth.ticket_number == 1
    assert fourth.display_id == "2025/03/11/001"


@pytest.mark.asyncio
@pytest.mark.parametrize("title,requester", [("", "user-1"), ("   ", "user-1"), ("Title", ""), ("Title", "  ")])
async def test_create_requires_title_and_requester(helpdesk, title, requester) -> None:
    with pytest.raises(ValidationError):
        await make_ticket(helpdesk, title=title, requester_id=requester)
    assert await helpdesk.ticket_service.list_tickets() == []


@pytest.mark.asyncio
async def test_create_rejects_unknown_priority(helpdesk) -> None:
    with pytest.raises(ValidationError):
        await make_ticket(helpdesk, priority="critical")


@pytest.mark.asyncio
async def test_long_title_is_truncated(helpdesk) -> None:
    ticket = await make_ticket(helpdesk, title="x" * 300)
    assert len(ticket.title) == 255
    assert ticket.title.endswith("...")


@pytest.mark.asyncio
async def test_create_with_approval_origin_is_pending(helpdesk) -> None:
    ticket = await make_ticket(helpdesk, origin=TicketOrigin(kind="form", needs_approval=True))
    assert ticket.status == "pending_approval"
    assert ticket.needs_approval is True


@pytest.mark.asyncio
async def test_create_with_future_schedule(helpdesk, clock) -> None:
    ticket = await make_ticket(helpdesk, scheduled_at="2025-03-11T09:00:00Z")
    assert ticket.status == "scheduled"
    assert ticket.scheduled_at == "2025-03-11T09:00:00.000000+00:00"

    with pytest.raises(InvalidScheduleError):
        await make_ticket(helpdesk, scheduled_at="2025-03-10T14:00:00Z")


@pytest.mark.asyncio
async def test_status_change_emits_exactly_one_event(helpdesk, clock) -> None:
    ticket = await make_ticket(helpdesk)
    clock.advance(minutes=5)
    updated = await helpdesk.ticket_service.update_field(ticket.id, "status", "in_progress", "agent-1")

    assert updated.status == "in_progress"
    assert updated.updated_at != ticket.updated_at
    events = [m.event for m in await helpdesk.message_service.list_messages(ticket.id) if m.is_system]
    assert events[-1] == {
        "kind": "field_changed",
        "field": "status",
        "old": "open",
        "new": "in_progress",
        "actor_id": "agent-1",
    }
    assert len(events) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path,target",
    [
        (["resolved"], "open"),
        ([], "resolved"),
        (["closed"], "open"),
        (["closed"], "resolved"),
        ([], "pending_approval"),
        ([], "rejected"),
    ],
)
async def test_disallowed_transitions(helpdesk, path, target) -> None:
    ticket = await make_in_progress(helpdesk) if path == ["resolved"] else await make_ticket(helpdesk)
    for status in path:
        await helpdesk.ticket_service.update_field(ticket.id, "status", status, "agent-1")
    before = await helpdesk.message_service.list_messages(ticket.id)

    with pytest.raises(InvalidTransitionError):
        await helpdesk.ticket_service.update_field(ticket.id, "status", target, "agent-1")

    after = await helpdesk.message_service.list_messages(ticket.id)
    assert len(after) == len(before)


@pytest.mark.asyncio
async def test_resolve_then_close_stamps_closed_at_once(helpdesk, clock) -> None:
    ticket = await make_in_progress(helpdesk)
    clock.advance(hours=1)
    resolved = await helpdesk.ticket_service.resolve(ticket.id, "agent-1")
    assert resolved.closed_at == "2025-03-10T16:00:00.000000+00:00"

    clock.advance(hours=1)
    closed = await helpdesk.ticket_service.close(ticket.id, "agent-1")
    assert closed.status == "closed"
    assert closed.closed_at == resolved.closed_at


@pytest.mark.asyncio
async def test_update_priority_and_assignee(helpdesk) -> None:
    ticket = await make_ticket(helpdesk)
    updated = await helpdesk.ticket_service.update_field(ticket.id, "priority", "URGENT", "agent-1")
    assert updated.priority == "urgent"

    assigned = await helpdesk.ticket_service.update_field(ticket.id, "assigned_to", "agent-2", "agent-1")
    assert assigned.assigned_to == "agent-2"
    assert assigned.assigned_at is not None

    with pytest.raises(ValidationError):
        await helpdesk.ticket_service.update_field(ticket.id, "priority", "urgent", "agent-1")
    with pytest.raises(ValidationError):
        await helpdesk.ticket_service.update_field(ticket.id, "title", "new", "agent-1")


@pytest.mark.asyncio
@pytest.mark.parametrize("blank", [None, "", "   "])
async def test_blank_priority_is_rejected(helpdesk, blank) -> None:
    ticket = await make_ticket(helpdesk, priority="high")
    with pytest.raises(ValidationError):
        await helpdesk.ticket_service.update_field(ticket.id, "priority", blank, "agent-1")
    assert (await helpdesk.ticket_service.get(ticket.id)).priority == "high"


@pytest.mark.asyncio
async def test_status_field_cannot_schedule_without_time(helpdesk, clock) -> None:
    ticket = await make_ticket(helpdesk)
    before = await helpdesk.message_service.list_messages(ticket.id)

    with pytest.raises(InvalidScheduleError):
        await helpdesk.ticket_service.update_field(ticket.id, "status", "scheduled", "agent-1")

    stored = await helpdesk.ticket_service.get(ticket.id)
    assert stored.status == "open"
    assert stored.scheduled_at is None
    assert len(await helpdesk.message_service.list_messages(ticket.id)) == len(before)

    clock.advance(days=30)
    assert await helpdesk.scheduling_service.promote_due() == []


@pytest.mark.asyncio
async def test_resolving_paused_ticket_folds_pause(helpdesk, clock) -> None:
    ticket = await make_in_progress(helpdesk)
    clock.advance(minutes=10)
    await helpdesk.pause_service.pause(ticket.id, "agent-1")
    clock.advance(minutes=20)

    resolved = await helpdesk.ticket_service.resolve(ticket.id, "agent-1")
    assert resolved.status == "resolved"
    assert resolved.is_paused is False
    assert resolved.paused_at is None
    assert resolved.paused_seconds == pytest.approx(1200.0)

    # The clock stopped at resolve: ten active minutes.
    clock.advance(hours=5)
    assert helpdesk.pause_service.elapsed(resolved) == pytest.approx(600.0)

    pauses = await helpdesk.pause_service.history(ticket.id)
    assert len(pauses) == 1
    assert pauses[0].resumed_at is not None


@pytest.mark.asyncio
async def test_delete_ticket_removes_messages_and_files(helpdesk) -> None:
    ticket = await make_ticket(helpdesk)
    message = await helpdesk.message_service.post(
        ticket.id, "user-1", "log attached", [AttachmentUpload("log.txt", b"boom")]
    )
    path = message.attachments[0].file_path

    await helpdesk.ticket_service.delete(ticket.id, "admin-1")

    with pytest.raises(TicketNotFoundError):
        await helpdesk.ticket_service.get(ticket.id)
    assert await helpdesk.message_repo.get(message.id) is None
    assert not Path(path).exists()
