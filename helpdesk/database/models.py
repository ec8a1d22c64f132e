from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from utils.constants import PRIVILEGED_ROLES, TICKET_STATUS_IN_PROGRESS
from utils.identifiers import display_id, routing_id


@dataclass(slots=True)
class TicketRecord:
    id: str
    ticket_number: int
    ticket_day: str
    title: str
    description: str
    status: str
    priority: str
    requester_id: str
    category_id: str | None = None
    assigned_to: str | None = None
    assigned_at: str | None = None
    form_submission_id: str | None = None
    webhook_id: str | None = None
    needs_approval: bool = False
    scheduled_at: str | None = None
    is_paused: bool = False
    paused_at: str | None = None
    paused_seconds: float = 0.0
    closed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def display_id(self) -> str:
        assert self.created_at is not None
        return display_id(self.ticket_number, self.created_at)

    @property
    def routing_id(self) -> str:
        assert self.created_at is not None
        return routing_id(self.ticket_number, self.created_at)

    @property
    def can_pause(self) -> bool:
        return self.status == TICKET_STATUS_IN_PROGRESS and not self.is_paused

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_id": self.display_id,
            "routing_id": self.routing_id,
            "ticket_number": self.ticket_number,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "category_id": self.category_id,
            "requester_id": self.requester_id,
            "assigned_to": self.assigned_to,
            "assigned_at": self.assigned_at,
            "form_submission_id": self.form_submission_id,
            "webhook_id": self.webhook_id,
            "needs_approval": self.needs_approval,
            "scheduled_at": self.scheduled_at,
            "is_paused": self.is_paused,
            "paused_at": self.paused_at,
            "paused_seconds": self.paused_seconds,
            "closed_at": self.closed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class TicketPause:
    id: str
    ticket_id: str
    paused_at: str
    resumed_at: str | None = None
    duration_seconds: float | None = None


@dataclass(slots=True)
class Attachment:
    id: str
    message_id: str
    file_name: str
    file_path: str
    file_size: int
    mime_type: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class TicketMessage:
    id: str
    ticket_id: str
    author_id: str
    body: str
    is_system: bool = False
    event: dict[str, Any] | None = None
    attachments: list[Attachment] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def edited(self) -> bool:
        return self.updated_at != self.created_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "author_id": self.author_id,
            "body": self.body,
            "is_system": self.is_system,
            "event": self.event,
            "attachments": [attachment.to_dict() for attachment in self.attachments],
            "edited": self.edited,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class WebhookRecord:
    id: str
    name: str
    token: str
    created_by: str
    description: str | None = None
    secret_key: str | None = None
    active: bool = True
    priority: str = "medium"
    category_id: str | None = None
    assigned_to: str | None = None
    needs_approval: bool = False
    total_calls: int = 0
    success_calls: int = 0
    error_calls: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def requires_secret(self) -> bool:
        return bool(self.secret_key)

    def to_dict(self, include_secret: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "token": self.token,
            "receive_path": f"/api/webhooks/receive/{self.token}",
            "requires_secret": self.requires_secret,
            "active": self.active,
            "priority": self.priority,
            "category_id": self.category_id,
            "assigned_to": self.assigned_to,
            "needs_approval": self.needs_approval,
            "created_by": self.created_by,
            "total_calls": self.total_calls,
            "success_calls": self.success_calls,
            "error_calls": self.error_calls,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_secret:
            payload["secret_key"] = self.secret_key
        return payload


@dataclass(slots=True)
class WebhookLogRecord:
    id: str
    webhook_id: str | None
    status: str
    token_hint: str | None = None
    reason: str | None = None
    response_code: int | None = None
    error_message: str | None = None
    payload: str | None = None
    ticket_id: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "token_hint": self.token_hint,
            "status": self.status,
            "reason": self.reason,
            "response_code": self.response_code,
            "error_message": self.error_message,
            "payload": self.payload,
            "ticket_id": self.ticket_id,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class ChangeEvent:
    kind: str
    field_name: str | None = None
    old: Any = None
    new: Any = None
    actor_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind}
        if self.field_name is not None:
            payload.update({"field": self.field_name, "old": self.old, "new": self.new})
        if self.actor_id is not None:
            payload["actor_id"] = self.actor_id
        if self.details:
            payload["details"] = self.details
        return payload

    def describe(self) -> str:
        if self.field_name is not None:
            return f"{self.field_name} changed from {self.old!r} to {self.new!r}"
        return self.kind.replace("_", " ")


@dataclass(slots=True)
class TicketOrigin:
    """Where a ticket came from; consumed by the approval gate at creation."""

    kind: str = "manual"
    needs_approval: bool = False
    webhook_id: str | None = None
    form_submission_id: str | None = None


@dataclass(slots=True)
class TicketInput:
    title: str
    requester_id: str
    description: str = ""
    priority: str | None = None
    category_id: str | None = None
    assigned_to: str | None = None
    scheduled_at: str | None = None


@dataclass(slots=True)
class Actor:
    """Caller identity as resolved by the authorization layer."""

    id: str
    role: str | None = None

    @property
    def is_privileged(self) -> bool:
        return (self.role or "").lower() in PRIVILEGED_ROLES
