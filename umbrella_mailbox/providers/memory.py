"""In-memory mailbox for tests and local development."""

from __future__ import annotations

import itertools
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..errors import MailboxError, NotFound
from ..models import AttachmentInfo, Message, ReplyAttachment
from .interface import MailboxProvider


@dataclass
class StoredAttachment:
    info: AttachmentInfo
    content: bytes


@dataclass
class SentReply:
    reply_id: str
    message_id: str
    body_html: str
    attachments: list[ReplyAttachment] = field(default_factory=list)


class InMemoryMailboxProvider(MailboxProvider):
    """A mailbox held in a dict.

    Failures are injected per operation with :meth:`fail_next`; each
    queued error is raised once, in order.  ``calls`` records every
    operation invoked, for ordering assertions.
    """

    def __init__(self) -> None:
        self.messages: dict[str, Message] = {}
        self.attachments: dict[str, dict[str, StoredAttachment]] = {}
        self.sent: list[SentReply] = []
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[MailboxError]] = {}
        self._reply_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Fixture helpers
    # ------------------------------------------------------------------

    def deliver(self, message: Message, attachments: Sequence[tuple[AttachmentInfo, bytes]] = ()) -> None:
        """Drop *message* into the mailbox as unread."""
        self.messages[message.id] = message.model_copy(update={"is_read": False})
        self.attachments[message.id] = {
            info.id: StoredAttachment(info=info, content=content) for info, content in attachments
        }

    def remove(self, message_id: str) -> None:
        self.messages.pop(message_id, None)
        self.attachments.pop(message_id, None)

    def fail_next(self, operation: str, error: MailboxError, *, times: int = 1) -> None:
        """Queue *error* to be raised by the next *times* calls to *operation*."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def _enter(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    # ------------------------------------------------------------------
    # MailboxProvider
    # ------------------------------------------------------------------

    async def list_unread(self) -> list[Message]:
        self._enter("list_unread", "")
        return [m.model_copy() for m in self.messages.values() if not m.is_read]

    async def mark_read(self, message_id: str) -> None:
        self._enter("mark_read", message_id)
        message = self.messages.get(message_id)
        if message is None:
            raise NotFound(f"message {message_id} not found")
        message.is_read = True

    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        self._enter("list_attachments", message_id)
        if message_id not in self.messages:
            raise NotFound(f"message {message_id} not found")
        return [a.info for a in self.attachments.get(message_id, {}).values()]

    async def fetch_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        self._enter("fetch_attachment_bytes", f"{message_id}/{attachment_id}")
        stored = self.attachments.get(message_id, {}).get(attachment_id)
        if message_id not in self.messages or stored is None:
            raise NotFound(f"attachment {message_id}/{attachment_id} not found")
        return stored.content

    async def send_reply(
        self,
        message_id: str,
        body_html: str,
        attachments: Sequence[ReplyAttachment],
    ) -> str:
        self._enter("send_reply", message_id)
        if message_id not in self.messages:
            raise NotFound(f"message {message_id} not found")
        reply_id = f"reply-{next(self._reply_ids)}"
        self.sent.append(
            SentReply(
                reply_id=reply_id,
                message_id=message_id,
                body_html=body_html,
                attachments=list(attachments),
            )
        )
        return reply_id

    async def health_check(self) -> dict[str, object]:
        return {"provider": "memory", "messages": len(self.messages)}
