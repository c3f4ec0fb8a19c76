"""IMAP mailbox provider: stdlib imaplib/smtplib behind asyncio.to_thread.

Unread messages are found with ``UID SEARCH UNSEEN`` and fetched with
``BODY.PEEK[]`` so that listing never sets ``\\Seen`` as a side effect;
only :meth:`mark_read` does.  Replies go out over SMTP with
``In-Reply-To``/``References`` headers so clients thread them.
"""

from __future__ import annotations

import asyncio
import email.message
import email.utils
import imaplib
import smtplib
import ssl
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TypeVar

import structlog

from ..config import ImapConfig, SmtpConfig
from ..errors import FatalError, NotFound, TransientError
from ..mime import ParsedEmail, parse_email
from ..models import AttachmentInfo, Message, ReplyAttachment
from .interface import MailboxProvider

logger = structlog.get_logger()

T = TypeVar("T")

_UID_ID_PREFIX = "imap-uid-"


class ImapMailboxProvider(MailboxProvider):
    """Mailbox backed by an IMAP folder, replying through SMTP.

    ``imaplib`` connections are not thread-safe, so every blocking call
    is serialized by ``_lock`` and run with ``asyncio.to_thread()``.
    """

    def __init__(self, imap: ImapConfig, smtp: SmtpConfig) -> None:
        self._config = imap
        self._smtp = smtp
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()
        # provider message id -> IMAP UID, filled by list_unread
        self._uids: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._config.host:
            raise FatalError("imap provider requires a host")
        await self._run(self._noop_sync)
        logger.info("imap_connected", host=self._config.host, mailbox=self._config.mailbox)

    async def stop(self) -> None:
        if self._conn is not None:
            async with self._lock:
                await asyncio.to_thread(self._disconnect_sync)
            logger.info("imap_disconnected")

    def _connect_sync(self) -> None:
        if self._config.use_ssl:
            conn = imaplib.IMAP4_SSL(
                self._config.host, self._config.port, timeout=self._config.timeout_seconds
            )
        else:
            conn = imaplib.IMAP4(
                self._config.host, self._config.port, timeout=self._config.timeout_seconds
            )
        try:
            conn.login(self._config.username, self._config.password.get_secret_value())
        except imaplib.IMAP4.error as exc:
            raise FatalError(f"imap login rejected: {exc}", cause=exc) from exc
        status, _ = conn.select(self._config.mailbox)
        if status != "OK":
            raise FatalError(f"imap mailbox {self._config.mailbox!r} cannot be selected")
        self._conn = conn

    def _disconnect_sync(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def _run(self, fn: Callable[..., T], *args: object) -> T:
        """Run a blocking IMAP call, reconnecting first if the link dropped."""
        async with self._lock:
            try:
                if self._conn is None:
                    await asyncio.to_thread(self._connect_sync)
                return await asyncio.to_thread(fn, *args)
            except (imaplib.IMAP4.abort, OSError) as exc:
                # Connection is unusable; drop it so the next call reconnects.
                self._conn = None
                raise TransientError(f"imap connection lost: {exc}", cause=exc) from exc
            except imaplib.IMAP4.error as exc:
                raise TransientError(f"imap command failed: {exc}", cause=exc) from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _require_conn(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise FatalError("provider not started")
        return self._conn

    def _noop_sync(self) -> None:
        self._require_conn().noop()

    def _search_sync(self, *criteria: str) -> list[str]:
        status, data = self._require_conn().uid("SEARCH", None, *criteria)
        if status != "OK" or not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    def _fetch_sync(self, uid: str) -> bytes | None:
        status, msg_data = self._require_conn().uid("FETCH", uid, "(BODY.PEEK[])")
        if status != "OK" or not msg_data or not isinstance(msg_data[0], tuple):
            return None
        return msg_data[0][1]

    def _list_unread_sync(self) -> list[tuple[str, bytes]]:
        fetched: list[tuple[str, bytes]] = []
        for uid in self._search_sync("UNSEEN"):
            raw = self._fetch_sync(uid)
            if raw is not None:
                fetched.append((uid, raw))
        return fetched

    def _store_seen_sync(self, uid: str) -> bool:
        status, data = self._require_conn().uid("STORE", uid, "+FLAGS", "(\\Seen)")
        # A vanished UID yields OK with no untagged FETCH response.
        return status == "OK" and bool(data and data[0])

    def _send_smtp_sync(self, message: email.message.EmailMessage) -> None:
        with smtplib.SMTP(self._smtp.host, self._smtp.port, timeout=self._config.timeout_seconds) as smtp:
            if self._smtp.starttls:
                smtp.starttls(context=ssl.create_default_context())
            if self._smtp.username:
                smtp.login(self._smtp.username, self._smtp.password.get_secret_value())
            smtp.send_message(message)

    # ------------------------------------------------------------------
    # UID resolution
    # ------------------------------------------------------------------

    async def _resolve_uid(self, message_id: str) -> str:
        uid = self._uids.get(message_id)
        if uid is not None:
            return uid
        if message_id.startswith(_UID_ID_PREFIX):
            return message_id.removeprefix(_UID_ID_PREFIX)
        uids = await self._run(self._search_sync, "HEADER", "Message-ID", f'"{message_id}"')
        if not uids:
            raise NotFound(f"message {message_id} not found")
        self._uids[message_id] = uids[0]
        return uids[0]

    async def _fetch_parsed(self, message_id: str) -> ParsedEmail:
        uid = await self._resolve_uid(message_id)
        raw = await self._run(self._fetch_sync, uid)
        if raw is None:
            self._uids.pop(message_id, None)
            raise NotFound(f"message {message_id} not found")
        return parse_email(raw)

    # ------------------------------------------------------------------
    # MailboxProvider
    # ------------------------------------------------------------------

    async def list_unread(self) -> list[Message]:
        fetched = await self._run(self._list_unread_sync)
        messages: list[Message] = []
        for uid, raw in fetched:
            try:
                message = _to_message(uid, raw)
            except Exception:
                # Left unread upstream; the rest of the listing still goes through.
                logger.warning("imap_message_unparseable_skipped", uid=uid, exc_info=True)
                continue
            self._uids[message.id] = uid
            messages.append(message)
        logger.debug("imap_list_unread", count=len(messages))
        return messages

    async def mark_read(self, message_id: str) -> None:
        uid = await self._resolve_uid(message_id)
        if not await self._run(self._store_seen_sync, uid):
            self._uids.pop(message_id, None)
            raise NotFound(f"message {message_id} not found")

    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        parsed = await self._fetch_parsed(message_id)
        return [
            AttachmentInfo(
                id=att.id,
                name=att.filename,
                content_type=att.content_type,
                size=len(att.payload),
            )
            for att in parsed.attachments
        ]

    async def fetch_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        parsed = await self._fetch_parsed(message_id)
        for att in parsed.attachments:
            if att.id == attachment_id:
                return att.payload
        raise NotFound(f"attachment {message_id}/{attachment_id} not found")

    async def send_reply(
        self,
        message_id: str,
        body_html: str,
        attachments: Sequence[ReplyAttachment],
    ) -> str:
        original = await self._fetch_parsed(message_id)
        reply = build_reply(original, body_html, attachments, from_address=self._smtp.from_address)
        try:
            await asyncio.to_thread(self._send_smtp_sync, reply)
        except smtplib.SMTPAuthenticationError as exc:
            raise FatalError(f"smtp login rejected: {exc.smtp_code}", cause=exc) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientError(f"smtp send failed: {exc}", cause=exc) from exc
        logger.info("imap_reply_sent", message_id=message_id, attachments=len(attachments))
        return reply["Message-ID"]

    async def health_check(self) -> dict[str, object]:
        return {
            "provider": "imap",
            "imap_host": self._config.host,
            "imap_mailbox": self._config.mailbox,
            "imap_connected": self._conn is not None,
        }


def _to_message(uid: str, raw: bytes) -> Message:
    parsed = parse_email(raw)
    return Message(
        id=parsed.message_id or f"{_UID_ID_PREFIX}{uid}",
        sender=parsed.from_address,
        recipients=parsed.recipients,
        subject=parsed.subject,
        body=parsed.body_html,
        received_at=parsed.date or datetime.now(UTC),
    )


def build_reply(
    original: ParsedEmail,
    body_html: str,
    attachments: Sequence[ReplyAttachment],
    *,
    from_address: str,
) -> email.message.EmailMessage:
    """Compose a threaded HTML reply to *original*."""
    reply = email.message.EmailMessage()
    subject = original.subject
    reply["Subject"] = subject if subject.lower().startswith("re:") else f"Re: {subject}"
    reply["From"] = from_address
    reply["To"] = original.from_address
    reply["Date"] = email.utils.formatdate(localtime=False)
    reply["Message-ID"] = email.utils.make_msgid()
    if original.message_id:
        reply["In-Reply-To"] = original.message_id
        reply["References"] = " ".join([*original.references, original.message_id])

    reply.set_content(body_html, subtype="html")
    for attachment in attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        reply.add_attachment(
            attachment.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.name,
        )
    return reply
