from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from database.base import Database
from database.models import (
    Attachment,
    TicketMessage,
    TicketPause,
    TicketRecord,
    WebhookLogRecord,
    WebhookRecord,
)


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _flag(value: bool) -> int:
    return 1 if value else 0


def _build_conditional_update(
    table: str,
    columns: frozenset[str],
    row_id: str,
    expected: Mapping[str, Any],
    changes: Mapping[str, Any],
) -> tuple[str, list[Any]]:
    unknown = (set(expected) | set(changes)) - columns
    if unknown:
        raise ValueError(f"Unknown {table} columns: {', '.join(sorted(unknown))}")
    set_parts: list[str] = []
    params: list[Any] = []
    for column, value in changes.items():
        set_parts.append(f"{column} = ?")
        params.append(_flag(value) if isinstance(value, bool) else value)
    where_parts = ["id = ?"]
    params.append(row_id)
    for column, value in expected.items():
        if value is None:
            where_parts.append(f"{column} IS NULL")
            continue
        where_parts.append(f"{column} = ?")
        params.append(_flag(value) if isinstance(value, bool) else value)
    query = f"UPDATE {table} SET {', '.join(set_parts)} WHERE {' AND '.join(where_parts)};"
    return query, params


class TicketCounterRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def next_ticket_number(self, day: str) -> int:
        row = await self.db.fetchone(
            """
            INSERT INTO ticket_counters(day, counter)
            VALUES (?, 1)
            ON CONFLICT(day) DO UPDATE SET counter = ticket_counters.counter + 1
            RETURNING counter;
            """,
            [day],
        )
        assert row is not None
        return int(row["counter"])


class TicketRepository:
    COLUMNS = frozenset(
        {
            "title",
            "description",
            "status",
            "priority",
            "category_id",
            "assigned_to",
            "assigned_at",
            "scheduled_at",
            "is_paused",
            "paused_at",
            "paused_seconds",
            "closed_at",
            "updated_at",
        }
    )

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, ticket: TicketRecord) -> None:
        await self.db.execute(
            """
            INSERT INTO tickets(
                id, ticket_number, ticket_day, title, description, status, priority,
                category_id, requester_id, assigned_to, assigned_at, form_submission_id,
                webhook_id, needs_approval, scheduled_at, is_paused, paused_at,
                paused_seconds, closed_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.id,
                ticket.ticket_number,
                ticket.ticket_day,
                ticket.title,
                ticket.description,
                ticket.status,
                ticket.priority,
                ticket.category_id,
                ticket.requester_id,
                ticket.assigned_to,
                ticket.assigned_at,
                ticket.form_submission_id,
                ticket.webhook_id,
                _flag(ticket.needs_approval),
                ticket.scheduled_at,
                _flag(ticket.is_paused),
                ticket.paused_at,
                ticket.paused_seconds,
                ticket.closed_at,
                ticket.created_at,
                ticket.updated_at,
            ],
        )

    async def get_by_id(self, ticket_id: str) -> TicketRecord | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE id = ?;", [ticket_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def list_tickets(self, status: str | None = None, limit: int = 100) -> list[TicketRecord]:
        if status:
            rows = await self.db.fetchall(
                """
                SELECT * FROM tickets
                WHERE status = ?
                ORDER BY created_at DESC
                LIMIT ?;
                """,
                [status, limit],
            )
        else:
            rows = await self.db.fetchall(
                "SELECT * FROM tickets ORDER BY created_at DESC LIMIT ?;",
                [limit],
            )
        return [self._row_to_ticket(row) for row in rows]

    async def list_due_scheduled(self, now_iso: str, limit: int = 500) -> list[TicketRecord]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM tickets
            WHERE status = 'scheduled' AND scheduled_at IS NOT NULL AND scheduled_at <= ?
            ORDER BY scheduled_at ASC
            LIMIT ?;
            """,
            [now_iso, limit],
        )
        return [self._row_to_ticket(row) for row in rows]

    async def conditional_update(
        self,
        ticket_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> bool:
        """Apply ``changes`` only if every ``expected`` column still matches.

        Returns False when another writer got there first.
        """
        query, params = _build_conditional_update("tickets", self.COLUMNS, ticket_id, expected, changes)
        return await self.db.execute(query, params) == 1

    async def promote_scheduled(self, ticket_id: str, to_status: str, now_iso: str) -> bool:
        updated = await self.db.execute(
            """
            UPDATE tickets
            SET status = ?, scheduled_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'scheduled' AND scheduled_at IS NOT NULL AND scheduled_at <= ?;
            """,
            [to_status, now_iso, ticket_id, now_iso],
        )
        return updated == 1

    async def resume(self, ticket_id: str, paused_at: str, paused_seconds: float, now_iso: str) -> bool:
        updated = await self.db.execute(
            """
            UPDATE tickets
            SET is_paused = 0, paused_at = NULL, paused_seconds = paused_seconds + ?, updated_at = ?
            WHERE id = ? AND is_paused = 1 AND paused_at = ?;
            """,
            [paused_seconds, now_iso, ticket_id, paused_at],
        )
        return updated == 1

    async def touch(self, ticket_id: str, now_iso: str) -> None:
        await self.db.execute(
            "UPDATE tickets SET updated_at = ? WHERE id = ?;",
            [now_iso, ticket_id],
        )

    async def delete(self, ticket_id: str) -> bool:
        deleted = await self.db.execute("DELETE FROM tickets WHERE id = ?;", [ticket_id])
        return deleted == 1

    def _row_to_ticket(self, row: dict[str, Any]) -> TicketRecord:
        return TicketRecord(
            id=row["id"],
            ticket_number=int(row["ticket_number"]),
            ticket_day=row["ticket_day"],
            title=row["title"],
            description=row["description"],
            status=row["status"],
            priority=row["priority"],
            requester_id=row["requester_id"],
            category_id=row["category_id"],
            assigned_to=row["assigned_to"],
            assigned_at=row["assigned_at"],
            form_submission_id=row["form_submission_id"],
            webhook_id=row["webhook_id"],
            needs_approval=bool(row["needs_approval"]),
            scheduled_at=row["scheduled_at"],
            is_paused=bool(row["is_paused"]),
            paused_at=row["paused_at"],
            paused_seconds=float(row["paused_seconds"] or 0.0),
            closed_at=row["closed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class PauseRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def open(self, pause_id: str, ticket_id: str, paused_at: str) -> None:
        await self.db.execute(
            "INSERT INTO ticket_pauses(id, ticket_id, paused_at) VALUES (?, ?, ?);",
            [pause_id, ticket_id, paused_at],
        )

    async def close_open(self, ticket_id: str, resumed_at: str, duration_seconds: float) -> None:
        await self.db.execute(
            """
            UPDATE ticket_pauses
            SET resumed_at = ?, duration_seconds = ?
            WHERE ticket_id = ? AND resumed_at IS NULL;
            """,
            [resumed_at, duration_seconds, ticket_id],
        )

    async def list_for_ticket(self, ticket_id: str) -> list[TicketPause]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM ticket_pauses
            WHERE ticket_id = ?
            ORDER BY paused_at ASC;
            """,
            [ticket_id],
        )
        return [
            TicketPause(
                id=row["id"],
                ticket_id=row["ticket_id"],
                paused_at=row["paused_at"],
                resumed_at=row["resumed_at"],
                duration_seconds=(
                    float(row["duration_seconds"]) if row["duration_seconds"] is not None else None
                ),
            )
            for row in rows
        ]


class MessageRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, message: TicketMessage) -> None:
        await self.db.execute(
            """
            INSERT INTO ticket_messages(id, ticket_id, author_id, body, is_system, event_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                message.id,
                message.ticket_id,
                message.author_id,
                message.body,
                _flag(message.is_system),
                _json_dump(message.event) if message.event is not None else None,
                message.created_at,
                message.updated_at,
            ],
        )

    async def add_attachment(self, attachment: Attachment) -> None:
        await self.db.execute(
            """
            INSERT INTO message_attachments(id, message_id, file_name, file_path, file_size, mime_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            [
                attachment.id,
                attachment.message_id,
                attachment.file_name,
                attachment.file_path,
                attachment.file_size,
                attachment.mime_type,
                attachment.created_at,
            ],
        )

    async def get(self, message_id: str) -> TicketMessage | None:
        row = await self.db.fetchone("SELECT * FROM ticket_messages WHERE id = ?;", [message_id])
        if not row:
            return None
        message = self._row_to_message(row)
        message.attachments = await self.list_attachments(message_id)
        return message

    async def list_for_ticket(self, ticket_id: str) -> list[TicketMessage]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM ticket_messages
            WHERE ticket_id = ?
            ORDER BY created_at ASC, id ASC;
            """,
            [ticket_id],
        )
        messages = [self._row_to_message(row) for row in rows]
        attachment_rows = await self.db.fetchall(
            """
            SELECT a.* FROM message_attachments a
            JOIN ticket_messages m ON m.id = a.message_id
            WHERE m.ticket_id = ?
            ORDER BY a.created_at ASC;
            """,
            [ticket_id],
        )
        by_message: dict[str, list[Attachment]] = {}
        for row in attachment_rows:
            by_message.setdefault(row["message_id"], []).append(self._row_to_attachment(row))
        for message in messages:
            message.attachments = by_message.get(message.id, [])
        return messages

    async def list_attachments(self, message_id: str) -> list[Attachment]:
        rows = await self.db.fetchall(
            "SELECT * FROM message_attachments WHERE message_id = ? ORDER BY created_at ASC;",
            [message_id],
        )
        return [self._row_to_attachment(row) for row in rows]

    async def list_attachment_paths_for_ticket(self, ticket_id: str) -> list[str]:
        rows = await self.db.fetchall(
            """
            SELECT a.file_path FROM message_attachments a
            JOIN ticket_messages m ON m.id = a.message_id
            WHERE m.ticket_id = ?;
            """,
            [ticket_id],
        )
        return [row["file_path"] for row in rows]

    async def update_body(self, message_id: str, body: str, now_iso: str) -> bool:
        updated = await self.db.execute(
            """
            UPDATE ticket_messages
            SET body = ?, updated_at = ?
            WHERE id = ? AND is_system = 0;
            """,
            [body, now_iso, message_id],
        )
        return updated == 1

    async def delete(self, message_id: str) -> bool:
        deleted = await self.db.execute("DELETE FROM ticket_messages WHERE id = ?;", [message_id])
        return deleted == 1

    def _row_to_message(self, row: dict[str, Any]) -> TicketMessage:
        return TicketMessage(
            id=row["id"],
            ticket_id=row["ticket_id"],
            author_id=row["author_id"],
            body=row["body"],
            is_system=bool(row["is_system"]),
            event=_json_load(row["event_json"], None),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_attachment(self, row: dict[str, Any]) -> Attachment:
        return Attachment(
            id=row["id"],
            message_id=row["message_id"],
            file_name=row["file_name"],
            file_path=row["file_path"],
            file_size=int(row["file_size"]),
            mime_type=row["mime_type"],
            created_at=row["created_at"],
        )


class WebhookRepository:
    COLUMNS = frozenset(
        {
            "name",
            "description",
            "secret_key",
            "active",
            "priority",
            "category_id",
            "assigned_to",
            "needs_approval",
            "updated_at",
        }
    )

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, webhook: WebhookRecord) -> None:
        await self.db.execute(
            """
            INSERT INTO webhooks(
                id, name, description, token, secret_key, active, priority, category_id,
                assigned_to, needs_approval, created_by, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                webhook.id,
                webhook.name,
                webhook.description,
                webhook.token,
                webhook.secret_key,
                _flag(webhook.active),
                webhook.priority,
                webhook.category_id,
                webhook.assigned_to,
                _flag(webhook.needs_approval),
                webhook.created_by,
                webhook.created_at,
                webhook.updated_at,
            ],
        )

    async def get_by_id(self, webhook_id: str) -> WebhookRecord | None:
        row = await self.db.fetchone("SELECT * FROM webhooks WHERE id = ?;", [webhook_id])
        if not row:
            return None
        return self._row_to_webhook(row)

    async def get_by_token(self, token: str) -> WebhookRecord | None:
        row = await self.db.fetchone("SELECT * FROM webhooks WHERE token = ?;", [token])
        if not row:
            return None
        return self._row_to_webhook(row)

    async def list_webhooks(self, created_by: str | None = None) -> list[WebhookRecord]:
        if created_by:
            rows = await self.db.fetchall(
                "SELECT * FROM webhooks WHERE created_by = ? ORDER BY created_at DESC;",
                [created_by],
            )
        else:
            rows = await self.db.fetchall("SELECT * FROM webhooks ORDER BY created_at DESC;")
        return [self._row_to_webhook(row) for row in rows]

    async def update(self, webhook_id: str, changes: Mapping[str, Any]) -> bool:
        query, params = _build_conditional_update("webhooks", self.COLUMNS, webhook_id, {}, changes)
        return await self.db.execute(query, params) == 1

    async def delete(self, webhook_id: str) -> bool:
        deleted = await self.db.execute("DELETE FROM webhooks WHERE id = ?;", [webhook_id])
        return deleted == 1

    async def record_call(self, webhook_id: str, success: bool) -> None:
        # One statement per call keeps total == success + error under concurrency.
        await self.db.execute(
            """
            UPDATE webhooks
            SET total_calls = total_calls + 1,
                success_calls = success_calls + ?,
                error_calls = error_calls + ?
            WHERE id = ?;
            """,
            [1 if success else 0, 0 if success else 1, webhook_id],
        )

    def _row_to_webhook(self, row: dict[str, Any]) -> WebhookRecord:
        return WebhookRecord(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            token=row["token"],
            secret_key=row["secret_key"],
            active=bool(row["active"]),
            priority=row["priority"],
            category_id=row["category_id"],
            assigned_to=row["assigned_to"],
            needs_approval=bool(row["needs_approval"]),
            created_by=row["created_by"],
            total_calls=int(row["total_calls"]),
            success_calls=int(row["success_calls"]),
            error_calls=int(row["error_calls"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class WebhookLogRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert(self, log: WebhookLogRecord) -> None:
        await self.db.execute(
            """
            INSERT INTO webhook_logs(
                id, webhook_id, token_hint, status, reason, response_code,
                error_message, payload, ticket_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                log.id,
                log.webhook_id,
                log.token_hint,
                log.status,
                log.reason,
                log.response_code,
                log.error_message,
                log.payload,
                log.ticket_id,
                log.created_at,
            ],
        )

    async def list_for_webhook(self, webhook_id: str, limit: int = 50) -> list[WebhookLogRecord]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM webhook_logs
            WHERE webhook_id = ?
            ORDER BY created_at DESC
            LIMIT ?;
            """,
            [webhook_id, limit],
        )
        return [self._row_to_log(row) for row in rows]

    async def list_unmatched(self, limit: int = 50) -> list[WebhookLogRecord]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM webhook_logs
            WHERE webhook_id IS NULL
            ORDER BY created_at DESC
            LIMIT ?;
            """,
            [limit],
        )
        return [self._row_to_log(row) for row in rows]

    async def status_counts(self, webhook_id: str) -> dict[str, int]:
        rows = await self.db.fetchall(
            """
            SELECT status, COUNT(*) AS count
            FROM webhook_logs
            WHERE webhook_id = ?
            GROUP BY status;
            """,
            [webhook_id],
        )
        return {row["status"]: int(row["count"]) for row in rows}

    def _row_to_log(self, row: dict[str, Any]) -> WebhookLogRecord:
        return WebhookLogRecord(
            id=row["id"],
            webhook_id=row["webhook_id"],
            token_hint=row["token_hint"],
            status=row["status"],
            reason=row["reason"],
            response_code=int(row["response_code"]) if row["response_code"] is not None else None,
            error_message=row["error_message"],
            payload=row["payload"],
            ticket_id=row["ticket_id"],
            created_at=row["created_at"],
        )
