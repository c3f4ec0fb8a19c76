"""Attachment downloads and threaded replies.

Both operations work on message identity only and never touch the
ingestion lease, so they can run alongside ingestion cycles.  Nothing
here retries: replies are not idempotent, and a blind resend could
deliver the same reply twice.
"""

from __future__ import annotations

from collections.abc import Awaitable, Iterator, Sequence
from dataclasses import dataclass
from typing import TypeVar

import structlog

from .errors import InvalidArgument, NotFound, PayloadTooLarge, provider_call
from .models import AttachmentInfo, OutgoingAttachment, ReplyAttachment
from .providers.interface import MailboxProvider

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class AttachmentDownload:
    """Attachment content plus the metadata a download response needs."""

    name: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)

    def chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        view = memoryview(self.content)
        for start in range(0, len(view), chunk_size):
            yield bytes(view[start : start + chunk_size])


class AttachmentReplyHandler:
    """Fetches attachment content on demand and sends replies."""

    def __init__(
        self,
        provider: MailboxProvider,
        *,
        max_attachment_bytes: int,
        provider_timeout: float = 60.0,
    ) -> None:
        self._provider = provider
        self._max_attachment_bytes = max_attachment_bytes
        self._provider_timeout = provider_timeout

    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        _require_id("message_id", message_id)
        return await self._call(self._provider.list_attachments(message_id))

    async def download_attachment(self, message_id: str, attachment_id: str) -> AttachmentDownload:
        """Return one attachment's bytes with its name and content type.

        Nothing is cached; each call goes to the provider.
        """
        _require_id("message_id", message_id)
        _require_id("attachment_id", attachment_id)

        infos = await self._call(self._provider.list_attachments(message_id))
        info = next((i for i in infos if i.id == attachment_id), None)
        if info is None:
            raise NotFound(f"attachment {attachment_id} not found on message {message_id}")

        content = await self._call(self._provider.fetch_attachment_bytes(message_id, attachment_id))
        logger.info(
            "attachment_downloaded",
            message_id=message_id,
            attachment_id=attachment_id,
            size=len(content),
        )
        return AttachmentDownload(name=info.name, content_type=info.content_type, content=content)

    async def reply(
        self,
        message_id: str,
        content: str,
        attachments: Sequence[OutgoingAttachment] = (),
    ) -> str:
        """Send an HTML reply in the thread of *message_id*; return the reply ID.

        All validation happens before the provider is called: an empty
        body raises :class:`InvalidArgument`, an attachment over the size
        limit raises :class:`PayloadTooLarge`.
        """
        _require_id("message_id", message_id)
        if not content or not content.strip():
            raise InvalidArgument("reply content must not be empty")

        prepared = [self._read_attachment(a) for a in attachments]
        reply_id = await self._call(self._provider.send_reply(message_id, content, prepared))
        logger.info(
            "reply_sent",
            message_id=message_id,
            reply_id=reply_id,
            attachments=len(prepared),
        )
        return reply_id

    def _read_attachment(self, attachment: OutgoingAttachment) -> ReplyAttachment:
        if not attachment.name:
            raise InvalidArgument("attachment name must not be empty")
        limit = self._max_attachment_bytes
        if isinstance(attachment.data, (bytes, bytearray)):
            content = bytes(attachment.data)
        else:
            # Read one byte past the limit to detect oversize without reading everything.
            content = attachment.data.read(limit + 1)
        if len(content) > limit:
            raise PayloadTooLarge(f"attachment {attachment.name!r} exceeds {limit} bytes")
        return ReplyAttachment(
            name=attachment.name,
            content_type=attachment.content_type or "application/octet-stream",
            content=content,
        )

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await provider_call(awaitable, self._provider_timeout)


def _require_id(field: str, value: str) -> None:
    if not value or not value.strip():
        raise InvalidArgument(f"{field} must not be empty")
