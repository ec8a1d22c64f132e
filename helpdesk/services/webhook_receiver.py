from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from core.config import AppConfig
from core.errors import (
    AuthenticationError,
    DeliveryUnavailableError,
    MalformedPayloadError,
    TicketCreationFailedError,
)
from database.base import Database
from database.models import TicketInput, TicketOrigin, TicketRecord, WebhookLogRecord, WebhookRecord
from services.delivery_logger import DeliveryLogger
from services.ticket_service import TicketService, truncate_title
from services.webhook_service import WebhookService
from utils.constants import (
    REASON_BAD_SECRET,
    REASON_MALFORMED_PAYLOAD,
    REASON_TICKET_CREATION_FAILED,
    REASON_UNKNOWN_OR_INACTIVE,
)
from utils.payload import PayloadKind, PayloadParseError, StructuredValue, cap_payload, parse_payload

LOGGER = logging.getLogger(__name__)

_HIGH_WORDS = ("high", "critical", "urgent", "disaster")
_MEDIUM_WORDS = ("medium", "warning", "average")


@dataclass(slots=True)
class ReceiveResult:
    webhook: WebhookRecord
    ticket: TicketRecord
    log: WebhookLogRecord


@dataclass(slots=True)
class DryRunResult:
    webhook: WebhookRecord
    payload: StructuredValue
    ticket_input: TicketInput


@dataclass(slots=True)
class ExtractedFields:
    title: str
    description: str
    priority: str


def severity_to_priority(value: Any, default: str) -> str:
    if value is None or value == "":
        return default
    word = str(value).strip().lower()
    if any(marker in word for marker in _HIGH_WORDS):
        return "high"
    if any(marker in word for marker in _MEDIUM_WORDS):
        return "medium"
    return "low"


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_fields(webhook: WebhookRecord, payload: StructuredValue) -> ExtractedFields:
    """Pick a title, description and priority out of well-known payload shapes.

    Recognizes Zabbix-style ``alert`` objects, generic ``event`` objects and flat
    ``title``/``message``/``subject``/``name`` keys. Anything else keeps the
    webhook name as title and the rendered payload as description.
    """
    title = f"Webhook: {webhook.name}"
    description = payload.render()
    priority = webhook.priority

    if payload.kind is not PayloadKind.OBJECT:
        return ExtractedFields(title, description, priority)

    alert = payload.get("alert")
    event = payload.get("event")
    if isinstance(alert, dict) and _text(alert.get("name")):
        title = _text(alert.get("name")) or title
        description = _text(alert.get("message")) or description
        severity = str(alert.get("severity") or "")
        if severity in ("High", "Disaster"):
            priority = "high"
        elif severity == "Average":
            priority = "medium"
        else:
            priority = "low"
    elif isinstance(event, dict) and _text(event.get("name")):
        title = _text(event.get("name")) or title
        description = _text(event.get("description")) or _text(event.get("message")) or description
        priority = severity_to_priority(event.get("priority") or event.get("severity"), priority)
    elif _text(payload.get("title")):
        title = _text(payload.get("title")) or title
        description = (
            _text(payload.get("description"))
            or _text(payload.get("message"))
            or _text(payload.get("body"))
            or description
        )
        priority = severity_to_priority(payload.get("priority"), priority)
    elif _text(payload.get("message")):
        title = (_text(payload.get("message")) or title)[:100]
    elif _text(payload.get("subject")):
        title = _text(payload.get("subject")) or title
        description = (
            _text(payload.get("body"))
            or _text(payload.get("content"))
            or _text(payload.get("text"))
            or description
        )
    elif _text(payload.get("name")):
        title = _text(payload.get("name")) or title
        description = _text(payload.get("description")) or _text(payload.get("details")) or description
    elif payload.get("raw_content") is not None:
        title = f"Webhook received: {webhook.name}"
        content_type = payload.get("content_type") or "unknown"
        description = f"Type: {content_type}\n\nContent:\n{payload.get('raw_content')}"

    return ExtractedFields(title, description, priority)


class WebhookReceiver:
    def __init__(
        self,
        config: AppConfig,
        db: Database,
        registry: WebhookService,
        tickets: TicketService,
        delivery: DeliveryLogger,
    ) -> None:
        self.config = config
        self.db = db
        self.registry = registry
        self.tickets = tickets
        self.delivery = delivery

    def _secret_matches(self, webhook: WebhookRecord, headers: Mapping[str, str]) -> bool:
        header_name = self.config.webhooks.secret_header.lower()
        supplied = None
        for key, value in headers.items():
            if key.lower() == header_name:
                supplied = value
                break
        if not supplied or not webhook.secret_key:
            return False
        return hmac.compare_digest(supplied.encode("utf-8"), webhook.secret_key.encode("utf-8"))

    def build_ticket_input(self, webhook: WebhookRecord, payload: StructuredValue) -> tuple[TicketInput, TicketOrigin]:
        fields = extract_fields(webhook, payload)
        data = TicketInput(
            title=truncate_title(fields.title, self.config.tickets.title_max_length),
            requester_id=webhook.created_by,
            description=fields.description,
            priority=fields.priority,
            category_id=webhook.category_id,
            assigned_to=webhook.assigned_to,
        )
        origin = TicketOrigin(kind="webhook", needs_approval=webhook.needs_approval, webhook_id=webhook.id)
        return data, origin

    async def _authenticate(
        self,
        token: str,
        headers: Mapping[str, str],
        stored_payload: str,
    ) -> WebhookRecord:
        webhook = await self.registry.get_by_token(token)
        if webhook is None or not webhook.active:
            await self.delivery.record_failure(
                webhook,
                token,
                REASON_UNKNOWN_OR_INACTIVE,
                stored_payload,
                401,
                "Unknown or inactive webhook token",
            )
            raise AuthenticationError("Unknown or inactive webhook.")

        if webhook.requires_secret and not self._secret_matches(webhook, headers):
            await self.delivery.record_failure(
                webhook,
                token,
                REASON_BAD_SECRET,
                stored_payload,
                401,
                "Missing or invalid webhook secret",
            )
            raise AuthenticationError("Invalid webhook secret.")
        return webhook

    async def _parse(
        self,
        webhook: WebhookRecord,
        token: str,
        raw_payload: bytes,
        content_type: str | None,
        stored_payload: str,
    ) -> StructuredValue:
        try:
            return parse_payload(raw_payload, content_type)
        except PayloadParseError as exc:
            await self.delivery.record_failure(
                webhook,
                token,
                REASON_MALFORMED_PAYLOAD,
                stored_payload,
                400,
                str(exc),
            )
            raise MalformedPayloadError(f"The webhook payload could not be parsed: {exc}") from exc

    async def receive(
        self,
        token: str,
        headers: Mapping[str, str],
        raw_payload: bytes,
        content_type: str | None = None,
    ) -> ReceiveResult:
        stored_payload = cap_payload(raw_payload, self.config.webhooks.max_payload_bytes)
        webhook = await self._authenticate(token, headers, stored_payload)
        payload = await self._parse(webhook, token, raw_payload, content_type, stored_payload)
        data, origin = self.build_ticket_input(webhook, payload)

        try:
            async with self.db.transaction():
                ticket = await self.tickets.create(data, origin)
                log = await self.delivery.record_success(webhook, stored_payload, ticket)
        except DeliveryUnavailableError:
            raise
        except Exception as exc:
            LOGGER.warning(
                "Ticket creation from webhook failed: %s",
                exc,
                extra={"webhook_id": webhook.id, "reason": REASON_TICKET_CREATION_FAILED},
            )
            await self.delivery.record_failure(
                webhook,
                token,
                REASON_TICKET_CREATION_FAILED,
                stored_payload,
                500,
                str(exc)[:500] or exc.__class__.__name__,
            )
            raise TicketCreationFailedError() from exc

        LOGGER.info(
            "Webhook delivery created ticket %s",
            ticket.display_id,
            extra={"webhook_id": webhook.id, "ticket_id": ticket.id},
        )
        return ReceiveResult(webhook=webhook, ticket=ticket, log=log)

    async def test(
        self,
        token: str,
        headers: Mapping[str, str],
        raw_payload: bytes,
        content_type: str | None = None,
    ) -> DryRunResult:
        """Dry run: authenticate and parse without creating or logging anything."""
        webhook = await self.registry.get_by_token(token)
        if webhook is None or not webhook.active:
            raise AuthenticationError("Unknown or inactive webhook.")
        if webhook.requires_secret and not self._secret_matches(webhook, headers):
            raise AuthenticationError("Invalid webhook secret.")
        try:
            payload = parse_payload(raw_payload, content_type)
        except PayloadParseError as exc:
            raise MalformedPayloadError(f"The webhook payload could not be parsed: {exc}") from exc
        data, _origin = self.build_ticket_input(webhook, payload)
        return DryRunResult(webhook=webhook, payload=payload, ticket_input=data)
