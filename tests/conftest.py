"""Shared test fixtures for the mailbox pipeline test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from umbrella_mailbox.config import (
    GraphConfig,
    ImapConfig,
    LeaseConfig,
    PipelineConfig,
    RetryConfig,
    SmtpConfig,
    StoreConfig,
)
from umbrella_mailbox.db import Database
from umbrella_mailbox.lease import LeaseManager
from umbrella_mailbox.models import Message
from umbrella_mailbox.providers import InMemoryMailboxProvider
from umbrella_mailbox.store import MessageStore

TABLE_BODY = "<table><tr><th>H</th></tr><tr><td>D</td></tr></table>"


def make_message(
    message_id: str = "m1",
    *,
    body: str = TABLE_BODY,
    received_at: datetime | None = None,
    subject: str = "Daily report",
) -> Message:
    return Message(
        id=message_id,
        sender="ops@example.com",
        recipients=["desk@example.com"],
        subject=subject,
        body=body,
        received_at=received_at or datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
    )


@pytest.fixture
def message_factory() -> Callable[..., Message]:
    return make_message


# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------


@pytest.fixture
def store_config(tmp_path: Path) -> StoreConfig:
    # File-backed so concurrent sessions get their own connections.
    return StoreConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'mailbox.db'}")


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.05)


@pytest.fixture
def graph_config() -> GraphConfig:
    return GraphConfig(
        tenant_id="tenant-1",
        client_id="client-1",
        client_secret="s3cret",
        mailbox="desk@example.com",
        base_url="https://graph.test/v1.0",
        token_url="https://login.test/{tenant_id}/oauth2/v2.0/token",
    )


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
    )


@pytest.fixture
def smtp_config() -> SmtpConfig:
    return SmtpConfig(
        host="smtp.test.com",
        port=587,
        username="testuser",
        password="testpass",
        from_address="desk@example.com",
    )


@pytest.fixture
def pipeline_config(
    store_config: StoreConfig,
    retry_config: RetryConfig,
    graph_config: GraphConfig,
) -> PipelineConfig:
    return PipelineConfig(
        name="mailbox-test",
        poll_interval_seconds=0.05,
        provider_timeout_seconds=5.0,
        health_port=18080,
        log_json=False,
        graph=graph_config,
        store=store_config,
        retry=retry_config,
        lease=LeaseConfig(ttl_seconds=30.0, owner="worker-a"),
    )


# ------------------------------------------------------------------
# Components
# ------------------------------------------------------------------


@pytest.fixture
async def database(store_config: StoreConfig):
    db = Database(store_config)
    await db.create_schema()
    yield db
    await db.close()


@pytest.fixture
def store(database: Database) -> MessageStore:
    return MessageStore(database)


@pytest.fixture
def leases(database: Database) -> LeaseManager:
    return LeaseManager(database, LeaseConfig(ttl_seconds=30.0), owner="worker-a")


@pytest.fixture
def provider() -> InMemoryMailboxProvider:
    return InMemoryMailboxProvider()


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def build_html_email(
    *,
    subject: str = "Daily report",
    body_html: str = TABLE_BODY,
    message_id: str = "<m1@example.com>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with an HTML body and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = "Ops <ops@example.com>"
    msg["To"] = "desk@example.com"
    msg["Cc"] = "audit@example.com"
    msg["Message-ID"] = message_id
    msg["References"] = "<root@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0200"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText("plain fallback", "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def build_plain_email(*, body: str = "a < b", message_id: str = "") -> bytes:
    msg = MIMEText(body, "plain")
    msg["Subject"] = "Plain"
    msg["From"] = "ops@example.com"
    msg["To"] = "desk@example.com"
    if message_id:
        msg["Message-ID"] = message_id
    return msg.as_bytes()


@pytest.fixture
def html_eml_bytes() -> bytes:
    return build_html_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return build_plain_email()
