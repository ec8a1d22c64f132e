from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from core.errors import InvalidPauseStateError, NotPausedError
from factories import make_in_progress, make_ticket
from services.pause_service import elapsed_seconds


@pytest.mark.asyncio
async def test_pause_requires_in_progress(helpdesk) -> None:
    ticket = await make_ticket(helpdesk)
    with pytest.raises(InvalidPauseStateError):
        await helpdesk.pause_service.pause(ticket.id, "agent-1")
    with pytest.raises(NotPausedError):
        await helpdesk.pause_service.resume(ticket.id, "agent-1")


@pytest.mark.asyncio
async def test_pause_twice_fails(helpdesk) -> None:
    ticket = await make_in_progress(helpdesk)
    paused = await helpdesk.pause_service.pause(ticket.id, "agent-1")
    assert paused.is_paused is True
    assert paused.paused_at is not None
    with pytest.raises(InvalidPauseStateError):
        await helpdesk.pause_service.pause(ticket.id, "agent-1")


@pytest.mark.asyncio
async def test_paused_interval_is_excluded_from_elapsed(helpdesk, clock) -> None:
    ticket = await make_in_progress(helpdesk)
    clock.advance(minutes=30)
    before_pause = helpdesk.pause_service.elapsed(await helpdesk.ticket_service.get(ticket.id))
    assert before_pause == pytest.approx(1800.0)

    await helpdesk.pause_service.pause(ticket.id, "agent-1")
    clock.advance(minutes=45)
    # While paused the clock does not move.
    paused = await helpdesk.ticket_service.get(ticket.id)
    assert helpdesk.pause_service.elapsed(paused) == pytest.approx(before_pause)

    resumed = await helpdesk.pause_service.resume(ticket.id, "agent-1")
    assert resumed.is_paused is False
    assert resumed.paused_at is None
    assert resumed.paused_seconds == pytest.approx(2700.0)
    assert helpdesk.pause_service.elapsed(resumed) == pytest.approx(before_pause)

    clock.advance(minutes=10)
    assert helpdesk.pause_service.elapsed(resumed) == pytest.approx(before_pause + 600)


@pytest.mark.asyncio
async def test_immediate_resume_adds_bounded_duration(helpdesk, clock) -> None:
    ticket = await make_in_progress(helpdesk)
    await helpdesk.pause_service.pause(ticket.id, "agent-1")
    clock.advance(microseconds=250)
    resumed = await helpdesk.pause_service.resume(ticket.id, "agent-1")
    assert 0 <= resumed.paused_seconds <= 0.00025


@pytest.mark.asyncio
async def test_concurrent_resume_accumulates_once(helpdesk, clock) -> None:
    ticket = await make_in_progress(helpdesk)
    await helpdesk.pause_service.pause(ticket.id, "agent-1")
    clock.advance(seconds=90)

    results = await asyncio.gather(
        helpdesk.pause_service.resume(ticket.id, "agent-1"),
        helpdesk.pause_service.resume(ticket.id, "agent-2"),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], NotPausedError)

    stored = await helpdesk.ticket_service.get(ticket.id)
    assert stored.paused_seconds == pytest.approx(90.0)


@pytest.mark.asyncio
async def test_concurrent_pause_has_one_winner(helpdesk) -> None:
    ticket = await make_in_progress(helpdesk)
    results = await asyncio.gather(
        helpdesk.pause_service.pause(ticket.id, "agent-1"),
        helpdesk.pause_service.pause(ticket.id, "agent-2"),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidPauseStateError)
    assert len(await helpdesk.pause_service.history(ticket.id)) == 1


@pytest.mark.asyncio
async def test_pause_history_records_intervals(helpdesk, clock) -> None:
    ticket = await make_in_progress(helpdesk)
    for minutes in (5, 15):
        await helpdesk.pause_service.pause(ticket.id, "agent-1")
        clock.advance(minutes=minutes)
        await helpdesk.pause_service.resume(ticket.id, "agent-1")
        clock.advance(minutes=1)

    pauses = await helpdesk.pause_service.history(ticket.id)
    assert [p.duration_seconds for p in pauses] == [pytest.approx(300.0), pytest.approx(900.0)]
    stored = await helpdesk.ticket_service.get(ticket.id)
    assert stored.paused_seconds == pytest.approx(1200.0)


@pytest.mark.asyncio
async def test_elapsed_clips_open_pause_at_closed_at(helpdesk, clock) -> None:
    ticket = await make_in_progress(helpdesk)
    stored = await helpdesk.ticket_service.get(ticket.id)
    # A record paused at +10 min and closed at +30 min, still flagged as paused.
    stored.paused_at = (clock.now + timedelta(minutes=10)).isoformat()
    stored.is_paused = True
    stored.closed_at = (clock.now + timedelta(minutes=30)).isoformat()

    assert elapsed_seconds(stored, clock.now + timedelta(hours=8)) == pytest.approx(600.0)
