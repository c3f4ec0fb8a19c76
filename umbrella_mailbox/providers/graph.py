"""Microsoft Graph mailbox provider over httpx.

Authentication is the OAuth2 client-credentials flow.  The access token
is cached and refreshed shortly before expiry, or once after a 401; none
of that is visible to callers.
"""

from __future__ import annotations

import asyncio
import base64
import html
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from ..config import GraphConfig
from ..errors import FatalError, classify
from ..models import AttachmentInfo, Message, ReplyAttachment
from .interface import MailboxProvider

logger = structlog.get_logger()

_MESSAGE_FIELDS = "id,subject,from,toRecipients,ccRecipients,receivedDateTime,body,isRead"


class GraphMailboxProvider(MailboxProvider):
    """Mailbox backed by the Microsoft Graph ``/users/{mailbox}`` API."""

    def __init__(self, config: GraphConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._access_token: str | None = None
        self._token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not (self._config.tenant_id and self._config.client_id and self._config.mailbox):
            raise FatalError("graph provider requires tenant_id, client_id and mailbox")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.timeout_seconds),
            transport=self._transport,
        )
        logger.info("graph_provider_started", mailbox=self._config.mailbox)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("graph_provider_stopped")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _token(self, *, force: bool = False) -> str:
        async with self._token_lock:
            token = self._access_token
            if force or token is None or time.monotonic() >= self._token_expiry:
                token = await self._authenticate()
            return token

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise FatalError("provider not started")
        return self._client

    async def _authenticate(self) -> str:
        client = self._http()
        url = self._config.token_url.format(tenant_id=self._config.tenant_id)
        try:
            resp = await client.post(
                url,
                data={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret.get_secret_value(),
                    "scope": self._config.scope,
                    "grant_type": "client_credentials",
                },
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            # A rejected credential is never transient, whatever the status code.
            if exc.response.status_code in (400, 401, 403):
                raise FatalError(f"token request rejected: HTTP {exc.response.status_code}", cause=exc) from exc
            raise classify(exc) from exc
        except httpx.HTTPError as exc:
            raise classify(exc) from exc

        data = resp.json()
        if not data.get("access_token"):
            raise FatalError("token endpoint returned no access_token")
        token: str = data["access_token"]
        self._access_token = token
        expires_in = float(data.get("expires_in", 3600))
        self._token_expiry = time.monotonic() + expires_in - self._config.token_refresh_margin_seconds
        logger.info("graph_token_refreshed", expires_in=expires_in)
        return token

    # ------------------------------------------------------------------
    # Request helper
    # ------------------------------------------------------------------

    def _user_path(self, suffix: str) -> str:
        return f"{self._config.base_url}/users/{_q(self._config.mailbox)}{suffix}"

    async def _send(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        client = self._http()
        try:
            return await client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise classify(exc) from exc

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        resp = await self._send(method, url, await self._token(), **kwargs)
        if resp.status_code == 401:
            logger.info("graph_token_rejected_refreshing")
            resp = await self._send(method, url, await self._token(force=True), **kwargs)
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise classify(exc) from exc
        return resp

    # ------------------------------------------------------------------
    # MailboxProvider
    # ------------------------------------------------------------------

    async def list_unread(self) -> list[Message]:
        url: str | None = self._user_path("/mailFolders/inbox/messages")
        params: dict[str, Any] | None = {
            "$filter": "isRead eq false",
            "$select": _MESSAGE_FIELDS,
            "$top": self._config.page_size,
        }
        messages: list[Message] = []
        while url:
            resp = await self._request("GET", url, params=params)
            payload = resp.json()
            for item in payload.get("value", []):
                if not item.get("id"):
                    logger.warning("graph_message_without_id_skipped")
                    continue
                try:
                    messages.append(_to_message(item))
                except Exception:
                    logger.warning("graph_message_unmappable_skipped", message_id=item.get("id"), exc_info=True)
            # nextLink already carries the query string
            url = payload.get("@odata.nextLink")
            params = None
        logger.debug("graph_list_unread", count=len(messages))
        return messages

    async def mark_read(self, message_id: str) -> None:
        await self._request(
            "PATCH",
            self._user_path(f"/messages/{_q(message_id)}"),
            json={"isRead": True},
        )

    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        resp = await self._request(
            "GET",
            self._user_path(f"/messages/{_q(message_id)}/attachments"),
            params={"$select": "id,name,contentType,size"},
        )
        return [
            AttachmentInfo(
                id=item["id"],
                name=item.get("name") or "unnamed",
                content_type=item.get("contentType") or "application/octet-stream",
                size=item.get("size"),
            )
            for item in resp.json().get("value", [])
        ]

    async def fetch_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        resp = await self._request(
            "GET",
            self._user_path(f"/messages/{_q(message_id)}/attachments/{_q(attachment_id)}/$value"),
        )
        return resp.content

    async def send_reply(
        self,
        message_id: str,
        body_html: str,
        attachments: Sequence[ReplyAttachment],
    ) -> str:
        # createReply → update body → attach files → send keeps the thread intact.
        draft = await self._request(
            "POST",
            self._user_path(f"/messages/{_q(message_id)}/createReply"),
        )
        draft_id = draft.json()["id"]
        draft_path = self._user_path(f"/messages/{_q(draft_id)}")

        await self._request(
            "PATCH",
            draft_path,
            json={"body": {"contentType": "html", "content": body_html}},
        )
        for attachment in attachments:
            await self._request(
                "POST",
                f"{draft_path}/attachments",
                json={
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": attachment.name,
                    "contentType": attachment.content_type,
                    "contentBytes": base64.b64encode(attachment.content).decode("ascii"),
                },
            )
        await self._request("POST", f"{draft_path}/send")
        logger.info(
            "graph_reply_sent",
            message_id=message_id,
            reply_id=draft_id,
            attachments=len(attachments),
        )
        return draft_id

    async def health_check(self) -> dict[str, object]:
        return {
            "provider": "graph",
            "mailbox": self._config.mailbox,
            "token_valid": self._access_token is not None and time.monotonic() < self._token_expiry,
        }


def _q(segment: str) -> str:
    return quote(segment, safe="")


def _address(recipient: dict[str, Any] | None) -> str:
    return ((recipient or {}).get("emailAddress") or {}).get("address") or ""


def _received_at(item: dict[str, Any]) -> datetime:
    """``receivedDateTime`` as an aware datetime; now (UTC) if absent or invalid."""
    value = item.get("receivedDateTime")
    if value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("graph_received_at_invalid", message_id=item.get("id"), value=value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


def _to_message(item: dict[str, Any]) -> Message:
    """Map a Graph message resource onto :class:`Message`."""
    sender = _address(item.get("from"))
    recipients = [
        _address(r) for r in [*(item.get("toRecipients") or []), *(item.get("ccRecipients") or [])]
    ]
    body = item.get("body") or {}
    content = body.get("content") or ""
    if (body.get("contentType") or "html").lower() != "html":
        content = f"<pre>{html.escape(content)}</pre>"
    return Message(
        id=item["id"],
        sender=sender,
        recipients=[r for r in recipients if r],
        subject=item.get("subject") or "",
        body=content,
        received_at=_received_at(item),
        is_read=False,
    )
