"""MailboxProvider: the ABC every mailbox backend implements."""

from __future__ import annotations

import abc
from collections.abc import Sequence

from ..models import AttachmentInfo, Message, ReplyAttachment


class MailboxProvider(abc.ABC):
    """Abstract capability over a remote mailbox.

    Implementations own their connection and credential lifecycle
    (token refresh, reconnects); callers only ever use the operations
    below.  Every operation raises errors from
    :mod:`umbrella_mailbox.errors`: ``NotFound`` for stale IDs,
    ``TransientError`` for network/throttling/timeouts, and
    ``FatalError`` for authentication failures.
    """

    async def start(self) -> None:
        """Open connections / acquire credentials.  Default: no-op."""

    async def stop(self) -> None:
        """Release connections.  Default: no-op."""

    @abc.abstractmethod
    async def list_unread(self) -> list[Message]:
        """Return unread messages.  Order is provider-defined."""
        ...

    @abc.abstractmethod
    async def mark_read(self, message_id: str) -> None:
        """Flag *message_id* as read upstream."""
        ...

    @abc.abstractmethod
    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        """Return attachment metadata (no content) for *message_id*."""
        ...

    @abc.abstractmethod
    async def fetch_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        """Return the raw content of one attachment."""
        ...

    @abc.abstractmethod
    async def send_reply(
        self,
        message_id: str,
        body_html: str,
        attachments: Sequence[ReplyAttachment],
    ) -> str:
        """Reply to *message_id* in its thread and return the reply ID."""
        ...

    async def health_check(self) -> dict[str, object]:
        """Return provider-specific health details for ``/health``."""
        return {}
