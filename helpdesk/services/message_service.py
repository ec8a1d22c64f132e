from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from core.config import AttachmentConfig
from core.errors import MessageNotFoundError, PermissionDeniedError, TicketNotFoundError, ValidationError
from database.base import Database
from database.models import Actor, Attachment, ChangeEvent, TicketMessage
from database.repositories import MessageRepository, TicketRepository
from utils.constants import SYSTEM_AUTHOR_ID
from utils.time import parse_iso, to_iso, utc_now

LOGGER = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class AttachmentUpload:
    file_name: str
    content: bytes
    mime_type: str | None = None


class AttachmentStore:
    """Local filesystem storage for message attachments."""

    def __init__(self, config: AttachmentConfig) -> None:
        self.config = config
        self.base_dir = Path(config.storage_directory)

    @staticmethod
    def sanitize_file_name(name: str) -> str:
        cleaned = _UNSAFE_NAME.sub("_", Path(name).name).strip("._")
        return cleaned[:120] or "attachment"

    def _write(self, ticket_id: str, attachment_id: str, file_name: str, content: bytes) -> Path:
        target_dir = self.base_dir / ticket_id
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{attachment_id}-{self.sanitize_file_name(file_name)}"
        path.write_bytes(content)
        return path

    def _remove(self, paths: Iterable[str]) -> None:
        for raw_path in paths:
            try:
                Path(raw_path).unlink(missing_ok=True)
            except OSError:
                LOGGER.warning("Failed to remove attachment file %s", raw_path, exc_info=True)

    async def save(self, ticket_id: str, attachment_id: str, file_name: str, content: bytes) -> Path:
        return await asyncio.to_thread(self._write, ticket_id, attachment_id, file_name, content)

    async def remove(self, paths: Iterable[str]) -> None:
        await asyncio.to_thread(self._remove, list(paths))


class MessageService:
    def __init__(
        self,
        db: Database,
        ticket_repo: TicketRepository,
        message_repo: MessageRepository,
        store: AttachmentStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.ticket_repo = ticket_repo
        self.message_repo = message_repo
        self.store = store
        self.clock = clock

    async def _require_ticket(self, ticket_id: str) -> None:
        if await self.ticket_repo.get_by_id(ticket_id) is None:
            raise TicketNotFoundError()

    async def _require_message(self, message_id: str) -> TicketMessage:
        message = await self.message_repo.get(message_id)
        if message is None:
            raise MessageNotFoundError()
        return message

    @staticmethod
    def _check_author(message: TicketMessage, actor: Actor) -> None:
        if message.is_system:
            raise PermissionDeniedError("System messages cannot be changed.")
        if message.author_id != actor.id and not actor.is_privileged:
            raise PermissionDeniedError("Only the author or an agent can change this message.")

    async def post(
        self,
        ticket_id: str,
        author_id: str,
        body: str,
        attachments: Sequence[AttachmentUpload] | None = None,
    ) -> TicketMessage:
        author_id = (author_id or "").strip()
        body = (body or "").strip()
        uploads = list(attachments or [])
        if not author_id:
            raise ValidationError("Message author is required.")
        if author_id == SYSTEM_AUTHOR_ID:
            raise ValidationError("The system author is reserved.")
        if not body and not uploads:
            raise ValidationError("A message needs a body or at least one attachment.")
        for upload in uploads:
            if len(upload.content) > self.store.config.max_file_bytes:
                raise ValidationError(f"Attachment {upload.file_name!r} is too large.")
        await self._require_ticket(ticket_id)

        now_iso = to_iso(self.clock())
        message = TicketMessage(
            id=str(uuid4()),
            ticket_id=ticket_id,
            author_id=author_id,
            body=body,
            created_at=now_iso,
            updated_at=now_iso,
        )

        # Files land on disk before any row references them.
        written: list[Attachment] = []
        try:
            for upload in uploads:
                attachment_id = str(uuid4())
                path = await self.store.save(ticket_id, attachment_id, upload.file_name, upload.content)
                written.append(
                    Attachment(
                        id=attachment_id,
                        message_id=message.id,
                        file_name=upload.file_name,
                        file_path=str(path),
                        file_size=len(upload.content),
                        mime_type=upload.mime_type,
                        created_at=now_iso,
                    )
                )
            async with self.db.transaction():
                await self.message_repo.create(message)
                for attachment in written:
                    await self.message_repo.add_attachment(attachment)
                await self.ticket_repo.touch(ticket_id, now_iso)
        except Exception:
            await self.store.remove(attachment.file_path for attachment in written)
            raise

        message.attachments = written
        LOGGER.info(
            "Message posted",
            extra={"ticket_id": ticket_id, "actor_id": author_id},
        )
        return message

    async def post_system(self, ticket_id: str, event: ChangeEvent) -> TicketMessage:
        """Record a change event on the ticket thread.

        Callers run this inside the transaction that applied the change, so the
        event and the change commit or roll back together.
        """
        now_iso = to_iso(self.clock())
        message = TicketMessage(
            id=str(uuid4()),
            ticket_id=ticket_id,
            author_id=SYSTEM_AUTHOR_ID,
            body=event.describe(),
            is_system=True,
            event=event.to_dict(),
            created_at=now_iso,
            updated_at=now_iso,
        )
        await self.message_repo.create(message)
        return message

    async def edit(self, message_id: str, new_body: str, actor: Actor) -> TicketMessage:
        message = await self._require_message(message_id)
        self._check_author(message, actor)
        new_body = (new_body or "").strip()
        if not new_body and not message.attachments:
            raise ValidationError("Message body cannot be empty.")

        now = self.clock()
        created = parse_iso(message.created_at)
        if created is not None and now <= created:
            now = created + timedelta(microseconds=1)
        now_iso = to_iso(now)
        if not await self.message_repo.update_body(message_id, new_body, now_iso):
            raise MessageNotFoundError()
        message.body = new_body
        message.updated_at = now_iso
        return message

    async def delete(self, message_id: str, actor: Actor) -> None:
        message = await self._require_message(message_id)
        self._check_author(message, actor)
        now_iso = to_iso(self.clock())
        async with self.db.transaction():
            if not await self.message_repo.delete(message_id):
                raise MessageNotFoundError()
            await self.ticket_repo.touch(message.ticket_id, now_iso)
        await self.store.remove(attachment.file_path for attachment in message.attachments)
        LOGGER.info(
            "Message deleted",
            extra={"ticket_id": message.ticket_id, "actor_id": actor.id},
        )

    async def list_messages(self, ticket_id: str) -> list[TicketMessage]:
        await self._require_ticket(ticket_id)
        return await self.message_repo.list_for_ticket(ticket_id)
