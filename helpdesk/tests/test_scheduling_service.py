from __future__ import annotations

import asyncio

import pytest

from core.errors import InvalidScheduleError, NotScheduledError, ValidationError
from factories import make_in_progress, make_ticket
from services.cache import MemoryCache
from services.scheduling_service import SWEEP_LOCK_KEY
from utils.rate_limit import LeaderLock


@pytest.mark.asyncio
async def test_schedule_and_unschedule(helpdesk) -> None:
    ticket = await make_ticket(helpdesk)
    scheduled = await helpdesk.scheduling_service.schedule(ticket.id, "2025-03-10T18:00:00-03:00", "agent-1")
    assert scheduled.status == "scheduled"
    assert scheduled.scheduled_at == "2025-03-10T21:00:00.000000+00:00"

    rescheduled = await helpdesk.scheduling_service.schedule(ticket.id, "2025-03-11T10:00:00Z", "agent-1")
    assert rescheduled.scheduled_at == "2025-03-11T10:00:00.000000+00:00"

    opened = await helpdesk.scheduling_service.unschedule(ticket.id, "agent-1")
    assert opened.status == "open"
    assert opened.scheduled_at is None

    with pytest.raises(NotScheduledError):
        await helpdesk.scheduling_service.unschedule(ticket.id, "agent-1")


@pytest.mark.asyncio
async def test_schedule_requires_future_time(helpdesk, clock) -> None:
    ticket = await make_ticket(helpdesk)
    with pytest.raises(InvalidScheduleError):
        await helpdesk.scheduling_service.schedule(ticket.id, clock.now, "agent-1")
    with pytest.raises(InvalidScheduleError):
        await helpdesk.scheduling_service.schedule(ticket.id, "2025-03-10T14:59:59Z", "agent-1")
    with pytest.raises(ValidationError):
        await helpdesk.scheduling_service.schedule(ticket.id, "tomorrow", "agent-1")


@pytest.mark.asyncio
async def test_schedule_accepts_relative_offset(helpdesk) -> None:
    ticket = await make_ticket(helpdesk)
    scheduled = await helpdesk.scheduling_service.schedule(ticket.id, "2h", "agent-1")
    assert scheduled.scheduled_at == "2025-03-10T17:00:00.000000+00:00"
    with pytest.raises(InvalidScheduleError):
        await helpdesk.scheduling_service.schedule(ticket.id, "0m", "agent-1")
    with pytest.raises(InvalidScheduleError):
        await helpdesk.scheduling_service.schedule(ticket.id, "-5m", "agent-1")
    with pytest.raises(ValidationError):
        await helpdesk.scheduling_service.schedule(ticket.id, "--5m", "agent-1")


@pytest.mark.asyncio
async def test_schedule_refuses_terminal_and_active_tickets(helpdesk) -> None:
    closed = await make_ticket(helpdesk)
    await helpdesk.ticket_service.close(closed.id, "agent-1")
    with pytest.raises(InvalidScheduleError):
        await helpdesk.scheduling_service.schedule(closed.id, "2025-03-11T10:00:00Z", "agent-1")

    working = await make_in_progress(helpdesk)
    with pytest.raises(InvalidScheduleError):
        await helpdesk.scheduling_service.schedule(working.id, "2025-03-11T10:00:00Z", "agent-1")


@pytest.mark.asyncio
async def test_sweep_promotes_due_tickets(helpdesk, clock) -> None:
    due = await make_ticket(helpdesk, scheduled_at="2025-03-10T16:00:00Z")
    later = await make_ticket(helpdesk, scheduled_at="2025-03-12T16:00:00Z")

    assert await helpdesk.scheduling_service.promote_due() == []

    clock.advance(hours=2)
    promoted = await helpdesk.scheduling_service.promote_due()
    assert [t.id for t in promoted] == [due.id]
    assert (await helpdesk.ticket_service.get(due.id)).status == "open"
    assert (await helpdesk.ticket_service.get(later.id)).status == "scheduled"

    event = (await helpdesk.message_service.list_messages(due.id))[-1]
    assert event.author_id == "system"
    assert event.event["new"] == "open"


@pytest.mark.asyncio
async def test_sweep_auto_start(helpdesk, clock) -> None:
    helpdesk.config.scheduling.auto_start = True
    ticket = await make_ticket(helpdesk, scheduled_at="2025-03-10T16:00:00Z")
    clock.advance(hours=2)
    await helpdesk.scheduling_service.promote_due()
    assert (await helpdesk.ticket_service.get(ticket.id)).status == "in_progress"


@pytest.mark.asyncio
async def test_concurrent_sweeps_promote_once(helpdesk, clock) -> None:
    tickets = [await make_ticket(helpdesk, scheduled_at="2025-03-10T16:00:00Z") for _ in range(3)]
    clock.advance(hours=2)

    first, second = await asyncio.gather(
        helpdesk.scheduling_service.promote_due(),
        helpdesk.scheduling_service.promote_due(),
    )
    promoted_ids = sorted(t.id for t in first + second)
    assert promoted_ids == sorted(t.id for t in tickets)

    for ticket in tickets:
        messages = await helpdesk.message_service.list_messages(ticket.id)
        promotions = [m for m in messages if m.event.get("details", {}).get("trigger") == "schedule"]
        assert len(promotions) == 1


@pytest.mark.asyncio
async def test_sweep_once_respects_leader_lock(helpdesk, clock) -> None:
    await make_ticket(helpdesk, scheduled_at="2025-03-10T16:00:00Z")
    clock.advance(hours=2)
    cache = MemoryCache()
    holder = LeaderLock(cache, "sweep", ttl_seconds=60)
    other = LeaderLock(cache, "sweep", ttl_seconds=60)

    assert len(await helpdesk.scheduling_service.sweep_once(holder)) == 1
    assert await helpdesk.scheduling_service.sweep_once(other) == []


@pytest.mark.asyncio
async def test_stopping_the_sweep_releases_its_lease(helpdesk) -> None:
    task = asyncio.create_task(helpdesk.scheduling_service.run_forever(interval_seconds=60))
    for _ in range(200):
        if await helpdesk.cache.get(SWEEP_LOCK_KEY) is not None:
            break
        await asyncio.sleep(0.01)
    assert await helpdesk.cache.get(SWEEP_LOCK_KEY) is not None

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert await helpdesk.cache.get(SWEEP_LOCK_KEY) is None
