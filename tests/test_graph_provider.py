"""Tests for umbrella_mailbox.providers.graph."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime

import httpx
import pytest
import respx

from umbrella_mailbox.config import GraphConfig
from umbrella_mailbox.errors import FatalError, InvalidArgument, NotFound, TransientError
from umbrella_mailbox.models import ReplyAttachment
from umbrella_mailbox.providers.graph import GraphMailboxProvider

TOKEN_URL = "https://login.test/tenant-1/oauth2/v2.0/token"
USER = "https://graph.test/v1.0/users/desk%40example.com"


def _graph_message(message_id: str = "AAMk-1", **overrides) -> dict:
    item = {
        "id": message_id,
        "subject": "Daily report",
        "from": {"emailAddress": {"address": "ops@example.com"}},
        "toRecipients": [{"emailAddress": {"address": "desk@example.com"}}],
        "ccRecipients": [{"emailAddress": {"address": "audit@example.com"}}],
        "receivedDateTime": "2025-06-01T12:00:00Z",
        "body": {"contentType": "html", "content": "<table><tr><td>x</td></tr></table>"},
        "isRead": False,
    }
    item.update(overrides)
    return item


@pytest.fixture
async def provider(graph_config: GraphConfig):
    p = GraphMailboxProvider(graph_config)
    await p.start()
    yield p
    await p.stop()


def _mock_token(access_token: str = "tok-1", expires_in: int = 3600) -> respx.Route:
    return respx.post(TOKEN_URL).respond(
        200, json={"access_token": access_token, "expires_in": expires_in}
    )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_requires_credentials(self):
        with pytest.raises(FatalError):
            await GraphMailboxProvider(GraphConfig()).start()

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, graph_config: GraphConfig):
        await GraphMailboxProvider(graph_config).stop()  # should not raise

    @pytest.mark.asyncio
    async def test_calls_before_start_are_fatal(self, graph_config: GraphConfig):
        with pytest.raises(FatalError):
            await GraphMailboxProvider(graph_config).mark_read("m1")


class TestAuthentication:
    @pytest.mark.asyncio
    @respx.mock
    async def test_token_cached_across_calls(self, provider):
        token = _mock_token()
        respx.patch(f"{USER}/messages/m1").respond(200, json={})
        await provider.mark_read("m1")
        await provider.mark_read("m1")
        assert token.call_count == 1
        form = dict(x.split("=") for x in token.calls[0].request.content.decode().split("&"))
        assert form["grant_type"] == "client_credentials"
        assert form["client_id"] == "client-1"

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_after_401(self, provider):
        token = respx.post(TOKEN_URL).mock(
            side_effect=[
                httpx.Response(200, json={"access_token": "stale", "expires_in": 3600}),
                httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600}),
            ]
        )
        route = respx.patch(f"{USER}/messages/m1").mock(
            side_effect=[httpx.Response(401), httpx.Response(200, json={})]
        )
        await provider.mark_read("m1")
        assert token.call_count == 2
        assert route.calls[1].request.headers["Authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    @respx.mock
    async def test_persistent_401_is_fatal(self, provider):
        _mock_token()
        respx.patch(f"{USER}/messages/m1").respond(401)
        with pytest.raises(FatalError):
            await provider.mark_read("m1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_credentials_are_fatal(self, provider):
        respx.post(TOKEN_URL).respond(400, json={"error": "invalid_client"})
        with pytest.raises(FatalError):
            await provider.mark_read("m1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_token_endpoint_outage_is_transient(self, provider):
        respx.post(TOKEN_URL).respond(503)
        with pytest.raises(TransientError):
            await provider.mark_read("m1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_expiring_token_refreshed(self, provider):
        # expires_in below the refresh margin: every call re-authenticates.
        token = _mock_token(expires_in=60)
        respx.patch(f"{USER}/messages/m1").respond(200, json={})
        await provider.mark_read("m1")
        await provider.mark_read("m1")
        assert token.call_count == 2


class TestListUnread:
    @pytest.mark.asyncio
    @respx.mock
    async def test_maps_messages(self, provider):
        _mock_token()
        route = respx.get(f"{USER}/mailFolders/inbox/messages").respond(
            200, json={"value": [_graph_message()]}
        )

        [message] = await provider.list_unread()

        assert message.id == "AAMk-1"
        assert message.sender == "ops@example.com"
        assert message.recipients == ["desk@example.com", "audit@example.com"]
        assert message.received_at == datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        assert [r.cells for r in message.rows] == [["x"]]
        params = route.calls[0].request.url.params
        assert params["$filter"] == "isRead eq false"

    @pytest.mark.asyncio
    @respx.mock
    async def test_follows_next_link(self, provider):
        _mock_token()
        next_link = f"{USER}/mailFolders/inbox/messages?$skip=1"
        respx.get(f"{USER}/mailFolders/inbox/messages", params={"$skip": "1"}).respond(
            200, json={"value": [_graph_message("AAMk-2")]}
        )
        respx.get(f"{USER}/mailFolders/inbox/messages").respond(
            200, json={"value": [_graph_message("AAMk-1")], "@odata.nextLink": next_link}
        )

        messages = await provider.list_unread()

        assert [m.id for m in messages] == ["AAMk-1", "AAMk-2"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_text_body_wrapped(self, provider):
        _mock_token()
        respx.get(f"{USER}/mailFolders/inbox/messages").respond(
            200,
            json={"value": [_graph_message(body={"contentType": "text", "content": "a < b"})]},
        )
        [message] = await provider.list_unread()
        assert message.body == "<pre>a &lt; b</pre>"

    @pytest.mark.asyncio
    @respx.mock
    async def test_items_without_id_skipped(self, provider):
        _mock_token()
        respx.get(f"{USER}/mailFolders/inbox/messages").respond(
            200, json={"value": [_graph_message(id=""), _graph_message("AAMk-2")]}
        )
        messages = await provider.list_unread()
        assert [m.id for m in messages] == ["AAMk-2"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_item_skipped(self, provider):
        _mock_token()
        respx.get(f"{USER}/mailFolders/inbox/messages").respond(
            200,
            json={"value": [_graph_message("AAMk-bad", body="not-an-object"), _graph_message("AAMk-2")]},
        )
        messages = await provider.list_unread()
        assert [m.id for m in messages] == ["AAMk-2"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_fields_tolerated(self, provider):
        _mock_token()
        item = {"id": "AAMk-3", "from": None, "toRecipients": None, "body": None}
        respx.get(f"{USER}/mailFolders/inbox/messages").respond(
            200, json={"value": [item, _graph_message("AAMk-2")]}
        )
        before = datetime.now(UTC)

        messages = await provider.list_unread()

        assert [m.id for m in messages] == ["AAMk-3", "AAMk-2"]
        assert messages[0].sender == ""
        assert messages[0].body == ""
        assert messages[0].received_at >= before

    @pytest.mark.asyncio
    @respx.mock
    async def test_throttling_is_transient(self, provider):
        _mock_token()
        respx.get(f"{USER}/mailFolders/inbox/messages").respond(429)
        with pytest.raises(TransientError):
            await provider.list_unread()

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_error_is_transient(self, provider):
        _mock_token()
        respx.get(f"{USER}/mailFolders/inbox/messages").mock(side_effect=httpx.ConnectError("down"))
        with pytest.raises(TransientError):
            await provider.list_unread()


class TestMarkRead:
    @pytest.mark.asyncio
    @respx.mock
    async def test_patches_is_read(self, provider):
        _mock_token()
        route = respx.patch(f"{USER}/messages/m1").respond(200, json={})
        await provider.mark_read("m1")
        assert json.loads(route.calls[0].request.content) == {"isRead": True}

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_message_not_found(self, provider):
        _mock_token()
        respx.patch(f"{USER}/messages/gone").respond(404)
        with pytest.raises(NotFound):
            await provider.mark_read("gone")

    @pytest.mark.asyncio
    @respx.mock
    async def test_id_is_path_escaped(self, provider):
        _mock_token()
        route = respx.patch(f"{USER}/messages/a%2Fb%3D").respond(200, json={})
        await provider.mark_read("a/b=")
        assert route.called


class TestAttachments:
    @pytest.mark.asyncio
    @respx.mock
    async def test_list_attachments(self, provider):
        _mock_token()
        respx.get(f"{USER}/messages/m1/attachments").respond(
            200,
            json={
                "value": [
                    {"id": "a1", "name": "report.pdf", "contentType": "application/pdf", "size": 10},
                    {"id": "a2", "name": None, "contentType": None},
                ]
            },
        )
        infos = await provider.list_attachments("m1")
        assert infos[0].name == "report.pdf"
        assert infos[0].size == 10
        assert infos[1].name == "unnamed"
        assert infos[1].content_type == "application/octet-stream"

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_attachment_bytes(self, provider):
        _mock_token()
        respx.get(f"{USER}/messages/m1/attachments/a1/$value").respond(200, content=b"%PDF")
        assert await provider.fetch_attachment_bytes("m1", "a1") == b"%PDF"


class TestSendReply:
    @pytest.mark.asyncio
    @respx.mock
    async def test_create_update_attach_send(self, provider):
        _mock_token()
        create = respx.post(f"{USER}/messages/m1/createReply").respond(201, json={"id": "draft-1"})
        update = respx.patch(f"{USER}/messages/draft-1").respond(200, json={})
        attach = respx.post(f"{USER}/messages/draft-1/attachments").respond(201, json={})
        send = respx.post(f"{USER}/messages/draft-1/send").respond(202)

        reply_id = await provider.send_reply(
            "m1",
            "<p>Thanks</p>",
            [ReplyAttachment(name="out.txt", content_type="text/plain", content=b"hello")],
        )

        assert reply_id == "draft-1"
        assert create.called and send.called
        body = json.loads(update.calls[0].request.content)
        assert body == {"body": {"contentType": "html", "content": "<p>Thanks</p>"}}
        payload = json.loads(attach.calls[0].request.content)
        assert payload["name"] == "out.txt"
        assert base64.b64decode(payload["contentBytes"]) == b"hello"

    @pytest.mark.asyncio
    @respx.mock
    async def test_bad_request_is_invalid_argument(self, provider):
        _mock_token()
        respx.post(f"{USER}/messages/m1/createReply").respond(400)
        with pytest.raises(InvalidArgument):
            await provider.send_reply("m1", "<p>x</p>", [])


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_reports_token_state(self, provider):
        health = await provider.health_check()
        assert health["provider"] == "graph"
        assert health["token_valid"] is False
