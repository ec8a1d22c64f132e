from __future__ import annotations

import base64
import binascii
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from core.app import HelpdeskApp
from core.errors import ValidationError, register_error_handlers
from database.models import Actor, TicketInput, TicketOrigin
from services.message_service import AttachmentUpload


class TicketCreateBody(BaseModel):
    title: str
    description: str = ""
    requester_id: str | None = None
    priority: str | None = None
    category_id: str | None = None
    assigned_to: str | None = None
    scheduled_at: str | None = None
    needs_approval: bool = False
    form_submission_id: str | None = None


class TicketFieldBody(BaseModel):
    field: str
    value: Any = None


class RejectBody(BaseModel):
    reason: str | None = None


class ScheduleBody(BaseModel):
    scheduled_at: str


class AttachmentBody(BaseModel):
    file_name: str
    content_base64: str
    mime_type: str | None = None


class MessageCreateBody(BaseModel):
    body: str = ""
    attachments: list[AttachmentBody] = Field(default_factory=list)


class MessageEditBody(BaseModel):
    body: str


class WebhookCreateBody(BaseModel):
    name: str
    description: str | None = None
    priority: str | None = None
    category_id: str | None = None
    assigned_to: str | None = None
    needs_approval: bool = False
    active: bool = True
    with_secret: bool | None = None


class WebhookUpdateBody(BaseModel):
    name: str | None = None
    description: str | None = None
    priority: str | None = None
    category_id: str | None = None
    assigned_to: str | None = None
    needs_approval: bool | None = None
    active: bool | None = None


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    if not x_actor_id or not x_actor_id.strip():
        raise ValidationError("The x-actor-id header is required.")
    return Actor(id=x_actor_id.strip(), role=x_actor_role)


def _decode_attachments(items: list[AttachmentBody]) -> list[AttachmentUpload]:
    uploads: list[AttachmentUpload] = []
    for item in items:
        try:
            content = base64.b64decode(item.content_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError(f"Attachment {item.file_name!r} is not valid base64.") from exc
        uploads.append(AttachmentUpload(file_name=item.file_name, content=content, mime_type=item.mime_type))
    return uploads


def create_api_app(helpdesk: HelpdeskApp) -> FastAPI:
    app = FastAPI(title="Helpdesk API", version="1.0.0")
    register_error_handlers(app)

    def require_admin(x_api_key: str | None = Header(default=None)) -> None:
        _auth(x_api_key, helpdesk.config.api.api_key)

    admin = [Depends(require_admin)]

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # Inbound deliveries authenticate with the webhook token and secret, not the admin key.
    @app.post("/api/webhooks/receive/{token}", status_code=201)
    async def receive_webhook(token: str, request: Request) -> dict[str, object]:
        body = await request.body()
        result = await helpdesk.webhook_receiver.receive(
            token,
            request.headers,
            body,
            request.headers.get("content-type"),
        )
        return {
            "success": True,
            "ticket_id": result.ticket.id,
            "display_id": result.ticket.display_id,
            "routing_id": result.ticket.routing_id,
            "status": result.ticket.status,
            "log_id": result.log.id,
        }

    @app.post("/api/webhooks/test/{token}")
    async def test_webhook(token: str, request: Request) -> dict[str, object]:
        body = await request.body()
        result = await helpdesk.webhook_receiver.test(
            token,
            request.headers,
            body,
            request.headers.get("content-type"),
        )
        return {
            "success": True,
            "webhook_id": result.webhook.id,
            "payload_kind": result.payload.kind.value,
            "title": result.ticket_input.title,
            "priority": result.ticket_input.priority,
            "description": result.ticket_input.description,
        }

    @app.get("/api/webhooks", dependencies=admin)
    async def list_webhooks(created_by: str | None = None) -> dict[str, object]:
        rows = await helpdesk.webhook_service.list_webhooks(created_by=created_by)
        return {"items": [row.to_dict() for row in rows]}

    @app.post("/api/webhooks", status_code=201, dependencies=admin)
    async def create_webhook(body: WebhookCreateBody, actor: Actor = Depends(_actor)) -> dict[str, object]:
        webhook = await helpdesk.webhook_service.create(created_by=actor.id, **body.model_dump())
        return webhook.to_dict(include_secret=True)

    @app.get("/api/webhooks/unmatched-logs", dependencies=admin)
    async def unmatched_webhook_logs(limit: int = 50) -> dict[str, object]:
        rows = await helpdesk.webhook_service.list_unmatched_logs(limit=limit)
        return {"items": [row.to_dict() for row in rows]}

    @app.get("/api/webhooks/{webhook_id}", dependencies=admin)
    async def get_webhook(webhook_id: str) -> dict[str, object]:
        webhook = await helpdesk.webhook_service.get(webhook_id)
        payload = webhook.to_dict()
        payload["stats"] = await helpdesk.webhook_service.stats(webhook_id)
        return payload

    @app.patch("/api/webhooks/{webhook_id}", dependencies=admin)
    async def update_webhook(webhook_id: str, body: WebhookUpdateBody) -> dict[str, object]:
        webhook = await helpdesk.webhook_service.update(webhook_id, **body.model_dump(exclude_unset=True))
        return webhook.to_dict()

    @app.delete("/api/webhooks/{webhook_id}", dependencies=admin)
    async def delete_webhook(webhook_id: str) -> dict[str, object]:
        await helpdesk.webhook_service.delete(webhook_id)
        return {"success": True}

    @app.post("/api/webhooks/{webhook_id}/rotate-secret", dependencies=admin)
    async def rotate_webhook_secret(webhook_id: str) -> dict[str, object]:
        webhook = await helpdesk.webhook_service.rotate_secret(webhook_id)
        return webhook.to_dict(include_secret=True)

    @app.get("/api/webhooks/{webhook_id}/logs", dependencies=admin)
    async def webhook_logs(webhook_id: str, limit: int = 50) -> dict[str, object]:
        rows = await helpdesk.webhook_service.list_logs(webhook_id, limit=limit)
        return {"items": [row.to_dict() for row in rows]}

    @app.get("/api/tickets", dependencies=admin)
    async def list_tickets(status: str | None = None, limit: int = 100) -> dict[str, object]:
        rows = await helpdesk.ticket_service.list_tickets(status=status, limit=limit)
        return {"items": [row.to_dict() for row in rows]}

    @app.post("/api/tickets", status_code=201, dependencies=admin)
    async def create_ticket(body: TicketCreateBody, actor: Actor = Depends(_actor)) -> dict[str, object]:
        origin = TicketOrigin(
            kind="form" if body.form_submission_id else "manual",
            needs_approval=body.needs_approval,
            form_submission_id=body.form_submission_id,
        )
        ticket = await helpdesk.ticket_service.create(
            TicketInput(
                title=body.title,
                requester_id=body.requester_id or actor.id,
                description=body.description,
                priority=body.priority,
                category_id=body.category_id,
                assigned_to=body.assigned_to,
                scheduled_at=body.scheduled_at,
            ),
            origin,
        )
        return ticket.to_dict()

    @app.get("/api/tickets/{ticket_id}", dependencies=admin)
    async def get_ticket(ticket_id: str) -> dict[str, object]:
        ticket = await helpdesk.ticket_service.get(ticket_id)
        payload = ticket.to_dict()
        payload["elapsed_seconds"] = helpdesk.pause_service.elapsed(ticket)
        return payload

    @app.patch("/api/tickets/{ticket_id}", dependencies=admin)
    async def update_ticket(
        ticket_id: str, body: TicketFieldBody, actor: Actor = Depends(_actor)
    ) -> dict[str, object]:
        ticket = await helpdesk.ticket_service.update_field(ticket_id, body.field, body.value, actor.id)
        return ticket.to_dict()

    @app.delete("/api/tickets/{ticket_id}", dependencies=admin)
    async def delete_ticket(ticket_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        await helpdesk.ticket_service.delete(ticket_id, actor.id)
        return {"success": True}

    @app.post("/api/tickets/{ticket_id}/resolve", dependencies=admin)
    async def resolve_ticket(ticket_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        return (await helpdesk.ticket_service.resolve(ticket_id, actor.id)).to_dict()

    @app.post("/api/tickets/{ticket_id}/close", dependencies=admin)
    async def close_ticket(ticket_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        return (await helpdesk.ticket_service.close(ticket_id, actor.id)).to_dict()

    @app.post("/api/tickets/{ticket_id}/approve", dependencies=admin)
    async def approve_ticket(ticket_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        return (await helpdesk.approval_service.approve(ticket_id, actor.id)).to_dict()

    @app.post("/api/tickets/{ticket_id}/reject", dependencies=admin)
    async def reject_ticket(
        ticket_id: str, body: RejectBody | None = None, actor: Actor = Depends(_actor)
    ) -> dict[str, object]:
        reason = body.reason if body else None
        return (await helpdesk.approval_service.reject(ticket_id, actor.id, reason=reason)).to_dict()

    @app.post("/api/tickets/{ticket_id}/schedule", dependencies=admin)
    async def schedule_ticket(
        ticket_id: str, body: ScheduleBody, actor: Actor = Depends(_actor)
    ) -> dict[str, object]:
        return (await helpdesk.scheduling_service.schedule(ticket_id, body.scheduled_at, actor.id)).to_dict()

    @app.post("/api/tickets/{ticket_id}/unschedule", dependencies=admin)
    async def unschedule_ticket(ticket_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        return (await helpdesk.scheduling_service.unschedule(ticket_id, actor.id)).to_dict()

    @app.post("/api/tickets/{ticket_id}/pause", dependencies=admin)
    async def pause_ticket(ticket_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        return (await helpdesk.pause_service.pause(ticket_id, actor.id)).to_dict()

    @app.post("/api/tickets/{ticket_id}/resume", dependencies=admin)
    async def resume_ticket(ticket_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        return (await helpdesk.pause_service.resume(ticket_id, actor.id)).to_dict()

    @app.get("/api/tickets/{ticket_id}/elapsed", dependencies=admin)
    async def ticket_elapsed(ticket_id: str) -> dict[str, object]:
        ticket = await helpdesk.ticket_service.get(ticket_id)
        pauses = await helpdesk.pause_service.history(ticket_id)
        return {
            "ticket_id": ticket.id,
            "elapsed_seconds": helpdesk.pause_service.elapsed(ticket),
            "paused_seconds": ticket.paused_seconds,
            "is_paused": ticket.is_paused,
            "pauses": [
                {
                    "paused_at": pause.paused_at,
                    "resumed_at": pause.resumed_at,
                    "duration_seconds": pause.duration_seconds,
                }
                for pause in pauses
            ],
        }

    @app.get("/api/tickets/{ticket_id}/messages", dependencies=admin)
    async def list_messages(ticket_id: str) -> dict[str, object]:
        rows = await helpdesk.message_service.list_messages(ticket_id)
        return {"items": [row.to_dict() for row in rows]}

    @app.post("/api/tickets/{ticket_id}/messages", status_code=201, dependencies=admin)
    async def post_message(
        ticket_id: str, body: MessageCreateBody, actor: Actor = Depends(_actor)
    ) -> dict[str, object]:
        message = await helpdesk.message_service.post(
            ticket_id,
            actor.id,
            body.body,
            _decode_attachments(body.attachments),
        )
        return message.to_dict()

    @app.patch("/api/messages/{message_id}", dependencies=admin)
    async def edit_message(
        message_id: str, body: MessageEditBody, actor: Actor = Depends(_actor)
    ) -> dict[str, object]:
        return (await helpdesk.message_service.edit(message_id, body.body, actor)).to_dict()

    @app.delete("/api/messages/{message_id}", dependencies=admin)
    async def delete_message(message_id: str, actor: Actor = Depends(_actor)) -> dict[str, object]:
        await helpdesk.message_service.delete(message_id, actor)
        return {"success": True}

    return app
