"""Human-facing ticket identifiers.

Both forms are pure functions of ``(ticket_number, created_at)``: the calendar
date is taken in the Brasília timezone, so a ticket created at 01:00 UTC still
belongs to the previous local day.
"""

from __future__ import annotations

from datetime import datetime
from secrets import token_hex, token_urlsafe

from utils.constants import BRASILIA_TIMEZONE
from utils.time import local_date, parse_iso


def ticket_day(created_at: datetime | str, timezone: str = BRASILIA_TIMEZONE) -> str:
    parsed = parse_iso(created_at)
    assert parsed is not None
    return local_date(parsed, timezone).isoformat()


def display_id(ticket_number: int, created_at: datetime | str, timezone: str = BRASILIA_TIMEZONE) -> str:
    day = ticket_day(created_at, timezone)
    year, month, dom = day.split("-")
    return f"{year}/{month}/{dom}/{ticket_number:03d}"


def routing_id(ticket_number: int, created_at: datetime | str, timezone: str = BRASILIA_TIMEZONE) -> str:
    return display_id(ticket_number, created_at, timezone).replace("/", "")


def generate_webhook_token() -> str:
    return token_hex(32)


def generate_webhook_secret() -> str:
    return token_urlsafe(24)
